"""Shared fixtures for the recreate-package test suite."""
import os
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

REPO_ROOT = Path(__file__).resolve().parent.parent
for _sub in ("api", "tools"):
    _p = str(REPO_ROOT / _sub)
    if _p not in sys.path:
        sys.path.insert(0, _p)

from pkgrecreate.config import load_config  # noqa: E402
from pkgrecreate.context import Reporter, RunContext, UserIdentity  # noqa: E402
from pkgrecreate.contracts import PackageRequest  # noqa: E402
from pkgrecreate.drivers.copier import DirectCopier  # noqa: E402
from pkgrecreate.drivers.database import PackageDatabase, parse_file_list  # noqa: E402

FIXED_BUILD_DATE = 1700000000

DEMO_INFO = {
    "Name": "demo",
    "Version": "1.2.3-1",
    "Description": "Demo package for tests",
    "Architecture": "x86_64",
    "URL": "https://example.org/demo",
    "Licenses": "MIT",
    "Depends On": "glibc  bash None",
}


class FakeDatabase(PackageDatabase):
    """In-memory package database: ``{name: (file_list_lines, info_fields)}``."""

    def __init__(self, packages: Optional[Dict[str, tuple]] = None):
        self.packages = dict(packages or {})
        self.calls: List[str] = []

    def add(self, name: str, files: Iterable[str], info: Optional[Dict[str, str]] = None) -> None:
        self.packages[name] = (list(files), dict(info or {"Name": name, "Version": "1.0-1"}))

    def is_installed(self, name: str) -> bool:
        self.calls.append(f"is_installed:{name}")
        return name in self.packages

    def list_files(self, name: str):
        self.calls.append(f"list_files:{name}")
        return parse_file_list(name, "\n".join(self.packages[name][0]))

    def query_info(self, name: str) -> Dict[str, str]:
        self.calls.append(f"query_info:{name}")
        return dict(self.packages[name][1])


class FlakyCopier(DirectCopier):
    """Direct copier that fails for selected source basenames."""

    name = "flaky"

    def __init__(self, fail_names: Iterable[str] = ()):
        self.fail_names = set(fail_names)
        self.copied: List[str] = []

    def copy_entry(self, src: Path, dest: Path) -> None:
        if src.name in self.fail_names:
            raise OSError(f"Permission denied: {src}")
        super().copy_entry(src, dest)
        self.copied.append(src.name)


def make_ctx(tmp_path: Path, name: str = "demo", **overrides) -> RunContext:
    settings = {
        "work_root": str(tmp_path / "work"),
        "output_dir": str(tmp_path / "out"),
        "source_root": str(tmp_path / "root"),
        "use_sudo": False,
        "zstd_level": 3,
        "arch": "x86_64",
    }
    settings.update(overrides)
    config = load_config(overrides=settings, environ={})
    identity = UserIdentity(name="tester", uid=os.getuid(), gid=os.getgid(), host="buildhost")
    return RunContext.create(
        PackageRequest(name=name),
        config,
        identity=identity,
        clock=lambda: FIXED_BUILD_DATE,
        reporter=Reporter(verbose=False),
    )


@pytest.fixture
def source_root(tmp_path):
    """Live filesystem stand-in holding the demo package's installed files."""
    root = tmp_path / "root"
    (root / "etc" / "demo").mkdir(parents=True)
    (root / "etc" / "demo" / "conf").write_bytes(b"key=value\n")
    (root / "var" / "lib" / "demo").mkdir(parents=True)
    return root


@pytest.fixture
def demo_db():
    db = FakeDatabase()
    db.add("demo", ["/etc/demo/conf", "/var/lib/demo/"], DEMO_INFO)
    return db


@pytest.fixture
def ctx(tmp_path, source_root):
    return make_ctx(tmp_path)


@pytest.fixture
def copier():
    return DirectCopier()
