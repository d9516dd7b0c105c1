"""Tests for the installed-set resolver and the pacman output parsers."""
from __future__ import annotations

import subprocess

import pytest

from conftest import FakeDatabase, make_ctx
from pkgrecreate.drivers.database import PacmanDatabase, parse_file_list, parse_info_output
from pkgrecreate.errors import (
    EmptyPackageError,
    FileListingError,
    HostEnvironmentError,
    PackageNotInstalled,
)
from pkgrecreate.resolver import resolve_installed_set


class TestResolve:
    def test_demo_returns_file_and_directory(self, ctx, demo_db):
        file_set = resolve_installed_set(ctx, demo_db)
        assert file_set.paths == ["/etc/demo/conf", "/var/lib/demo"]
        assert [e.kind for e in file_set.entries] == ["file", "dir"]

    def test_unknown_package(self, ctx):
        with pytest.raises(PackageNotInstalled) as exc:
            resolve_installed_set(ctx, FakeDatabase())
        assert "'demo' is not installed" in str(exc.value)

    def test_empty_package_rejected(self, ctx):
        db = FakeDatabase()
        db.add("demo", [])
        with pytest.raises(EmptyPackageError):
            resolve_installed_set(ctx, db)

    def test_empty_package_allowed(self, tmp_path):
        ctx = make_ctx(tmp_path, allow_empty=True)
        db = FakeDatabase()
        db.add("demo", [])
        assert len(resolve_installed_set(ctx, db)) == 0

    def test_logs_resolved_event(self, ctx, demo_db):
        resolve_installed_set(ctx, demo_db)
        events = [e["event"] for e in ctx.log.entries(ctx.run_id)]
        assert events == ["resolved"]


class TestParseFileList:
    def test_trailing_slash_marks_directory(self):
        fs = parse_file_list("demo", "/etc/\n/etc/demo/\n/etc/demo/conf\n")
        assert [(e.path, e.kind) for e in fs.entries] == [
            ("/etc", "dir"),
            ("/etc/demo", "dir"),
            ("/etc/demo/conf", "file"),
        ]

    def test_duplicates_and_blank_lines_dropped(self):
        fs = parse_file_list("demo", "/a\n\n/a\n/b\n")
        assert fs.paths == ["/a", "/b"]


class TestParseInfoOutput:
    def test_fields_and_continuation_lines(self):
        text = (
            "Name            : demo\n"
            "Version         : 1.0-1\n"
            "URL             : https://example.org\n"
            "Depends On      : glibc  bash  zlib\n"
            "                  openssl  curl\n"
            "Optional Deps   : None\n"
        )
        fields = parse_info_output(text)
        assert fields["Name"] == "demo"
        assert fields["URL"] == "https://example.org"
        assert fields["Depends On"].split() == ["glibc", "bash", "zlib", "openssl", "curl"]
        assert fields["Optional Deps"] == "None"

    def test_value_containing_colon_is_kept(self):
        fields = parse_info_output("Build Date      : Tue 01 Jan 2024 10:00:00 AM UTC\n")
        assert fields["Build Date"] == "Tue 01 Jan 2024 10:00:00 AM UTC"

    def test_empty_output(self):
        assert parse_info_output("") == {}


class TestPacmanDatabase:
    def _fake_run(self, monkeypatch, returncode, stdout="", stderr=""):
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["cmd"] = cmd
            seen["env"] = kwargs.get("env", {})
            return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)

        monkeypatch.setattr(subprocess, "run", fake_run)
        return seen

    def test_is_installed_true(self, monkeypatch):
        seen = self._fake_run(monkeypatch, 0, stdout="demo 1.0-1\n")
        assert PacmanDatabase().is_installed("demo") is True
        assert seen["cmd"] == ["pacman", "-Q", "demo"]
        assert seen["env"]["LC_ALL"] == "C"

    def test_is_installed_false_when_not_found(self, monkeypatch):
        self._fake_run(monkeypatch, 1, stderr="error: package 'demo' was not found\n")
        assert PacmanDatabase().is_installed("demo") is False

    def test_is_installed_unexpected_failure(self, monkeypatch):
        self._fake_run(monkeypatch, 1, stderr="error: could not lock database\n")
        with pytest.raises(HostEnvironmentError):
            PacmanDatabase().is_installed("demo")

    def test_missing_tool_is_environment_error(self):
        db = PacmanDatabase(cmd=["/nonexistent/pacman-binary"])
        with pytest.raises(HostEnvironmentError):
            db.is_installed("demo")

    def test_list_files_failure(self, monkeypatch):
        self._fake_run(monkeypatch, 1, stderr="error: boom\n")
        with pytest.raises(FileListingError):
            PacmanDatabase().list_files("demo")

    def test_list_files_parses_output(self, monkeypatch):
        seen = self._fake_run(monkeypatch, 0, stdout="/etc/demo/\n/etc/demo/conf\n")
        fs = PacmanDatabase(cmd=["pacman", "--dbpath", "/tmp/db"]).list_files("demo")
        assert seen["cmd"] == ["pacman", "--dbpath", "/tmp/db", "-Qlq", "demo"]
        assert fs.paths == ["/etc/demo", "/etc/demo/conf"]
