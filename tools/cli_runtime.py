#!/usr/bin/env python3
"""Shared runtime helpers for the recreate-package CLI."""

from __future__ import annotations

import importlib
import json
import os
import platform
import shutil
import stat
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def resolve_repo_root(script_file: str) -> Path:
    """Resolve repo root for source and PyInstaller-frozen execution."""
    meipass = getattr(sys, "_MEIPASS", None)
    if meipass:
        root = Path(meipass)
        if (root / "api").exists():
            return root
        if (root / "_internal" / "api").exists():
            return root / "_internal"
    return Path(script_file).resolve().parent.parent


def _module_version(module: str) -> Optional[str]:
    try:
        mod = importlib.import_module(module)
    except ImportError:
        return None
    return getattr(mod, "__version__", None)


def get_build_info(tool: str, repo_root: Path) -> Dict[str, Any]:
    api_dir = str(repo_root / "api")
    if api_dir not in sys.path:
        sys.path.insert(0, api_dir)
    from pkgrecreate import __version__

    return {
        "tool": tool,
        "recreate_version": __version__,
        "platform": platform.platform(),
        "system": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "frozen": bool(getattr(sys, "frozen", False)),
        "repo_root": str(repo_root),
        "components": {
            "zstandard": _module_version("zstandard"),
            "pydantic": _module_version("pydantic"),
            "yaml": _module_version("yaml"),
        },
    }


def _check(name: str, ok: bool, severity: str = "error", **extra: Any) -> Dict[str, Any]:
    row = {"name": name, "ok": bool(ok), "severity": severity}
    row.update(extra)
    return row


def summarize_checks(checks: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    checks = list(checks)
    errors = sum(1 for c in checks if not c.get("ok") and c.get("severity") == "error")
    warnings = sum(1 for c in checks if not c.get("ok") and c.get("severity") == "warning")
    return {
        "checks_total": len(checks),
        "checks_passed": sum(1 for c in checks if c.get("ok")),
        "errors": errors,
        "warnings": warnings,
        "ok": errors == 0,
    }


def group_or_world_writable(path: Path) -> bool:
    try:
        mode = path.stat().st_mode
    except OSError:
        return False
    return bool(mode & (stat.S_IWGRP | stat.S_IWOTH))


def _dir_check(name: str, path: Path) -> Dict[str, Any]:
    if not path.exists():
        return _check(name, True, severity="info", path=str(path), detail="will be created")
    if not path.is_dir():
        return _check(name, False, path=str(path), detail="not a directory")
    if not os.access(path, os.W_OK):
        return _check(name, False, path=str(path), detail="not writable")
    if group_or_world_writable(path):
        return _check(name, False, severity="warning", path=str(path), detail="group/world-writable")
    return _check(name, True, path=str(path))


def doctor_checks(
    *,
    tool: str,
    repo_root: Path,
    pacman_cmd: List[str],
    sudo_cmd: Optional[List[str]],
    work_root: Path,
    output_dir: Path,
) -> Dict[str, Any]:
    checks: List[Dict[str, Any]] = []

    pacman = shutil.which(pacman_cmd[0])
    checks.append(_check("pacman_available", pacman is not None, cmd=pacman_cmd[0], path=pacman))
    if sudo_cmd:
        sudo = shutil.which(sudo_cmd[0])
        checks.append(_check("sudo_available", sudo is not None, cmd=sudo_cmd[0], path=sudo))
    else:
        checks.append(_check("sudo_available", True, severity="info", detail="disabled (--no-sudo)"))

    components = get_build_info(tool, repo_root)["components"]
    checks.append(_check("zstandard_import", components["zstandard"] is not None, version=components["zstandard"]))
    checks.append(_check("pydantic_import", components["pydantic"] is not None, version=components["pydantic"]))
    checks.append(_dir_check("work_root", work_root))
    checks.append(_dir_check("output_dir", output_dir))

    return {
        "version": "recreate-cli-doctor-v1",
        "build": get_build_info(tool, repo_root),
        "checks": checks,
        "summary": summarize_checks(checks),
    }


def version_result(*, tool: str, repo_root: Path) -> Dict[str, Any]:
    return {
        "version": "recreate-cli-version-v1",
        "build": get_build_info(tool, repo_root),
    }


def write_json_private_default(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    try:
        path.chmod(0o600)
    except OSError:
        pass
