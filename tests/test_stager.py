"""Tests for the root stager: drift tolerance, sizes, special files, failure policy."""
from __future__ import annotations

import io
import os
import stat

import pytest

from conftest import FakeDatabase, FlakyCopier, make_ctx
from pkgrecreate.context import CancelToken, Reporter
from pkgrecreate.drivers.copier import DirectCopier
from pkgrecreate.errors import HostEnvironmentError, PartialStagingError, PipelineCancelled
from pkgrecreate.resolver import resolve_installed_set
from pkgrecreate.stager import safe_relative_path, stage_root


def _stage(ctx, db, copier):
    return stage_root(ctx, resolve_installed_set(ctx, db), copier)


class TestStageRoot:
    def test_demo_layout(self, ctx, demo_db, copier):
        staging = _stage(ctx, demo_db, copier)
        pkg = ctx.staging_dir
        assert (pkg / "etc" / "demo" / "conf").read_bytes() == b"key=value\n"
        assert (pkg / "var" / "lib" / "demo").is_dir()
        assert list((pkg / "var" / "lib" / "demo").iterdir()) == []
        assert staging.sorted_entries() == ["etc/demo/conf", "var/lib/demo"]
        assert staging.total_size == 10

    def test_vanished_entries_are_skipped(self, tmp_path, source_root, copier):
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/conf", "/etc/demo/gone", "/var/lib/demo/"])
        ctx = make_ctx(tmp_path)
        staging = _stage(ctx, db, copier)
        assert staging.sorted_entries() == ["etc/demo/conf", "var/lib/demo"]
        assert staging.skipped == [{"path": "/etc/demo/gone", "reason": "missing"}]
        assert staging.failures == []

    def test_filesystem_root_entry_is_reported_separately(self, tmp_path, source_root, copier):
        out = io.StringIO()
        db = FakeDatabase()
        db.add("demo", ["/", "/etc/demo/conf"])
        ctx = make_ctx(tmp_path)
        ctx.reporter = Reporter(stream=out)
        staging = _stage(ctx, db, copier)
        assert staging.sorted_entries() == ["etc/demo/conf"]
        assert staging.skipped == [{"path": "/", "reason": "filesystem_root"}]
        assert "[SKIP] / -- filesystem root is not packaged" in out.getvalue()
        assert "not on disk" not in out.getvalue()

    def test_records_live_permission_bits(self, tmp_path, source_root, copier):
        (source_root / "etc" / "demo" / "conf").chmod(0o640)
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/conf", "/var/lib/demo/"])
        ctx = make_ctx(tmp_path)
        staging = _stage(ctx, db, copier)
        assert staging.modes["etc/demo/conf"] == 0o640
        assert staging.mode_of("var/lib/demo", 0) == stat.S_IMODE((source_root / "var" / "lib" / "demo").stat().st_mode)
        assert staging.mode_of("not/staged", 0o644) == 0o644

    def test_unwritable_work_root_is_host_error(self, tmp_path, source_root, demo_db):
        blocker = tmp_path / "blocker"
        blocker.write_text("file in the way\n")
        file_set = resolve_installed_set(make_ctx(tmp_path), demo_db)
        ctx = make_ctx(tmp_path, work_root=str(blocker))
        with pytest.raises(HostEnvironmentError):
            stage_root(ctx, file_set, DirectCopier())

    def test_total_size_counts_only_regular_files(self, tmp_path, source_root, copier):
        (source_root / "etc" / "demo" / "big").write_bytes(b"x" * 1000)
        os.symlink("big", source_root / "etc" / "demo" / "link")
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/", "/etc/demo/big", "/etc/demo/conf", "/etc/demo/link", "/etc/demo/ghost"])
        ctx = make_ctx(tmp_path)
        staging = _stage(ctx, db, copier)
        assert staging.total_size == 1010

    def test_preserves_mode_and_mtime(self, tmp_path, source_root, copier):
        conf = source_root / "etc" / "demo" / "conf"
        conf.chmod(0o600)
        os.utime(conf, (1600000000, 1600000000))
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/conf"])
        ctx = make_ctx(tmp_path)
        _stage(ctx, db, copier)
        st = (ctx.staging_dir / "etc" / "demo" / "conf").stat()
        assert stat.S_IMODE(st.st_mode) == 0o600
        assert int(st.st_mtime) == 1600000000

    def test_directory_mtime_restored_after_children(self, tmp_path, source_root, copier):
        demo_dir = source_root / "etc" / "demo"
        os.utime(demo_dir, (1500000000, 1500000000))
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/", "/etc/demo/conf"])
        ctx = make_ctx(tmp_path)
        _stage(ctx, db, copier)
        assert int((ctx.staging_dir / "etc" / "demo").stat().st_mtime) == 1500000000

    @pytest.mark.skipif(os.name == "nt", reason="POSIX symlink/fifo semantics")
    def test_symlink_and_fifo_preserved(self, tmp_path, source_root, copier):
        os.symlink("../demo/conf", source_root / "etc" / "demo" / "conf.link")
        os.mkfifo(source_root / "etc" / "demo" / "pipe")
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/conf.link", "/etc/demo/pipe"])
        ctx = make_ctx(tmp_path)
        staging = _stage(ctx, db, copier)
        link = ctx.staging_dir / "etc" / "demo" / "conf.link"
        assert link.is_symlink()
        assert os.readlink(link) == "../demo/conf"
        assert stat.S_ISFIFO((ctx.staging_dir / "etc" / "demo" / "pipe").lstat().st_mode)
        assert staging.total_size == 0

    def test_staging_wiped_between_runs(self, ctx, demo_db, copier):
        _stage(ctx, demo_db, copier)
        stale = ctx.staging_dir / "stale.txt"
        stale.write_text("left over\n")
        _stage(ctx, demo_db, copier)
        assert not stale.exists()

    def test_root_ownership_mode(self, tmp_path, source_root, demo_db, copier):
        ctx = make_ctx(tmp_path, ownership="root")
        staging = _stage(ctx, demo_db, copier)
        owner = staging.owner_of("etc/demo/conf")
        assert (owner.uid, owner.gid, owner.uname) == (0, 0, "root")

    def test_preserve_ownership_records_live_owner(self, ctx, demo_db, copier, source_root):
        staging = _stage(ctx, demo_db, copier)
        st = (source_root / "etc" / "demo" / "conf").lstat()
        owner = staging.owner_of("etc/demo/conf")
        assert (owner.uid, owner.gid) == (st.st_uid, st.st_gid)

    def test_parallel_copy_keeps_file_list_order(self, tmp_path, source_root, copier):
        names = [f"f{i:02d}" for i in range(20)]
        for n in names:
            (source_root / "etc" / "demo" / n).write_text(n)
        db = FakeDatabase()
        db.add("demo", [f"/etc/demo/{n}" for n in reversed(names)])
        ctx = make_ctx(tmp_path, copy_workers=4)
        staging = _stage(ctx, db, copier)
        assert staging.entries == [f"etc/demo/{n}" for n in reversed(names)]
        assert staging.total_size == 60


class TestFailurePolicy:
    def _db(self, source_root):
        (source_root / "etc" / "demo" / "secret").write_text("s3cret")
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/secret", "/etc/demo/conf"])
        return db

    def test_failures_raise_by_default(self, tmp_path, source_root):
        ctx = make_ctx(tmp_path)
        with pytest.raises(PartialStagingError) as exc:
            _stage(ctx, self._db(source_root), FlakyCopier({"secret"}))
        assert exc.value.failures[0]["path"] == "/etc/demo/secret"
        assert exc.value.limit == 0

    def test_failures_within_threshold_tolerated(self, tmp_path, source_root):
        ctx = make_ctx(tmp_path, max_copy_failures=1)
        staging = _stage(ctx, self._db(source_root), FlakyCopier({"secret"}))
        assert staging.entries == ["etc/demo/conf"]
        assert len(staging.failures) == 1

    def test_fail_fast_stops_copy_loop(self, tmp_path, source_root):
        ctx = make_ctx(tmp_path, fail_fast=True, max_copy_failures=5)
        copier = FlakyCopier({"secret"})
        with pytest.raises(PartialStagingError):
            _stage(ctx, self._db(source_root), copier)
        assert copier.copied == []

    def test_path_traversal_is_a_failure(self, tmp_path, source_root, copier):
        db = FakeDatabase()
        db.add("demo", ["/etc/demo/conf", "/etc/../../outside"])
        ctx = make_ctx(tmp_path, max_copy_failures=1)
        staging = _stage(ctx, db, copier)
        assert staging.entries == ["etc/demo/conf"]
        assert "traversal" in staging.failures[0]["reason"]
        assert not (tmp_path / "outside").exists()

    def test_cancel_before_copy(self, tmp_path, source_root, demo_db, copier):
        ctx = make_ctx(tmp_path)
        ctx.cancel.cancel()
        with pytest.raises(PipelineCancelled) as exc:
            _stage(ctx, demo_db, copier)
        assert exc.value.stage == "file copy"


class TestSafeRelativePath:
    def test_strips_leading_slash(self):
        assert safe_relative_path("/usr/bin/demo") == "usr/bin/demo"

    def test_root_maps_to_empty(self):
        assert safe_relative_path("/") == ""

    @pytest.mark.parametrize("bad", ["relative/path", "/a/../../b"])
    def test_rejects_unsafe(self, bad):
        with pytest.raises(ValueError):
            safe_relative_path(bad)


def test_cancel_token_check():
    token = CancelToken()
    token.check("anything")
    token.cancel()
    assert token.cancelled
    with pytest.raises(PipelineCancelled):
        token.check("archive creation")
