"""Layered configuration: defaults, config file, environment, CLI flags."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from pkgrecreate.contracts import RecreateConfig
from pkgrecreate.errors import ConfigError

ENV_OVERRIDES = {
    "RECREATE_WORK_ROOT": "work_root",
    "RECREATE_OUTPUT_DIR": "output_dir",
    "RECREATE_ZSTD_LEVEL": "zstd_level",
    "RECREATE_PACKAGER": "packager",
}


def parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"CONFIG_NOT_FOUND: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            import yaml

            obj = yaml.safe_load(raw)
        else:
            obj = json.loads(raw)
    except Exception as exc:
        raise ConfigError(f"CONFIG_PARSE_ERROR: {path}: {exc}") from exc
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(f"CONFIG_PARSE_ERROR: {path}: top level must be a mapping")
    return obj


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var, "").strip()
        if value:
            out[key] = value
    return out


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RecreateConfig:
    """Merge config layers; later layers win, ``None`` overrides are ignored."""
    data: Dict[str, Any] = {}
    if config_path is not None:
        data.update(parse_config_file(Path(config_path).expanduser()))
    data.update(env_overrides(environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    try:
        return RecreateConfig(**data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise ConfigError(f"CONFIG_INVALID: {loc}: {first.get('msg')}") from exc
