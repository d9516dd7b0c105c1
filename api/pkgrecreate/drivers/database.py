#!/usr/bin/env python3
"""
Package database driver
=======================
Structured queries against the host package database. The pacman
implementation shells out with an argument list (never ``shell=True``)
and a C locale so field labels are stable.
"""

import os
import subprocess
from typing import Dict, List, Optional

from pkgrecreate.contracts import InstalledEntry, InstalledFileSet
from pkgrecreate.errors import FileListingError, HostEnvironmentError, MetadataSynthesisError


class PackageDatabase:
    """Query contract consumed by the resolver and metadata synthesizer."""

    def is_installed(self, name: str) -> bool:
        raise NotImplementedError

    def list_files(self, name: str) -> InstalledFileSet:
        raise NotImplementedError

    def query_info(self, name: str) -> Dict[str, str]:
        raise NotImplementedError


def parse_info_output(text: str) -> Dict[str, str]:
    """
    Parse ``pacman -Qi`` output into ``{label: value}``.

    Indented lines without a label continue the previous field (pacman
    wraps long dependency lists).
    """
    fields: Dict[str, str] = {}
    last_key: Optional[str] = None
    for raw in text.splitlines():
        if not raw.strip():
            last_key = None
            continue
        if raw[0].isspace():
            if last_key is not None:
                fields[last_key] = f"{fields[last_key]}  {raw.strip()}".strip()
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            last_key = None
            continue
        last_key = key.strip()
        fields[last_key] = value.strip()
    return fields


def parse_file_list(name: str, text: str) -> InstalledFileSet:
    entries: List[InstalledEntry] = []
    seen = set()
    for line in text.splitlines():
        line = line.rstrip("\n")
        if not line.strip():
            continue
        kind = "dir" if line.endswith("/") else "file"
        path = line if line == "/" else line.rstrip("/")
        if path in seen:
            continue
        seen.add(path)
        entries.append(InstalledEntry(path=path, kind=kind))
    return InstalledFileSet(package=name, entries=entries)


class PacmanDatabase(PackageDatabase):
    def __init__(self, cmd: Optional[List[str]] = None, timeout: float = 120.0):
        self.cmd = list(cmd or ["pacman"])
        self.timeout = timeout

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env["LANG"] = "C"
        env["LC_ALL"] = "C"
        try:
            return subprocess.run(
                self.cmd + args,
                capture_output=True,
                text=True,
                check=False,
                env=env,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise HostEnvironmentError(
                f"Package database tool not found: {self.cmd[0]}",
                "Install pacman or set pacman_cmd in the config file",
            ) from exc
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise HostEnvironmentError(f"Package database query failed: {exc}") from exc

    def is_installed(self, name: str) -> bool:
        proc = self._run(["-Q", name])
        if proc.returncode == 0:
            return True
        err = (proc.stderr or "").strip()
        if proc.returncode == 1 and (not err or "not found" in err):
            return False
        raise HostEnvironmentError(
            f"'{' '.join(self.cmd)} -Q {name}' failed (exit {proc.returncode}): {err[:300]}"
        )

    def list_files(self, name: str) -> InstalledFileSet:
        proc = self._run(["-Qlq", name])
        if proc.returncode != 0:
            raise FileListingError(
                f"Error listing files of '{name}' (exit {proc.returncode}): {(proc.stderr or '').strip()[:300]}"
            )
        return parse_file_list(name, proc.stdout)

    def query_info(self, name: str) -> Dict[str, str]:
        proc = self._run(["-Qi", name])
        if proc.returncode != 0:
            raise MetadataSynthesisError(
                f"Error querying metadata of '{name}' (exit {proc.returncode}): {(proc.stderr or '').strip()[:300]}"
            )
        return parse_info_output(proc.stdout)
