"""
Root stager
===========
Mirror an installed file set into the staging root.

Directories become empty directories, everything else is copied through the
injected ``PrivilegedCopier`` without dereferencing symlinks. Entries that
vanished since the database was queried are skipped; copy failures are
collected and judged against ``max_copy_failures`` / ``fail_fast`` once the
loop is done.
"""
from __future__ import annotations

import grp
import posixpath
import pwd
import stat
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pkgrecreate.context import RunContext, fmt_iec
from pkgrecreate.contracts import InstalledEntry, InstalledFileSet, Ownership, ROOT_OWNERSHIP
from pkgrecreate.drivers.copier import PrivilegedCopier
from pkgrecreate.errors import HostEnvironmentError, PartialStagingError, PipelineCancelled


@dataclass
class StagingRoot:
    root: Path
    entries: List[str] = field(default_factory=list)
    ownership: Dict[str, Ownership] = field(default_factory=dict)
    modes: Dict[str, int] = field(default_factory=dict)
    total_size: int = 0
    skipped: List[Dict] = field(default_factory=list)
    failures: List[Dict] = field(default_factory=list)

    def sorted_entries(self) -> List[str]:
        return sorted(self.entries)

    def owner_of(self, rel: str) -> Ownership:
        return self.ownership.get(rel, ROOT_OWNERSHIP)

    def mode_of(self, rel: str, default: int) -> int:
        """Permission bits of the live entry, which a later chown may have cleared on the copy."""
        return self.modes.get(rel, default)


@dataclass
class _Outcome:
    rel: str
    status: str  # "file" | "dir" | "link" | "special" | "missing" | "root" | "failed"
    size: int = 0
    ownership: Optional[Ownership] = None
    mode: Optional[int] = None
    error: Optional[str] = None


@lru_cache(maxsize=256)
def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return ""


@lru_cache(maxsize=256)
def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return ""


def ownership_from_stat(st, mode: str = "preserve") -> Ownership:
    if mode == "root":
        return ROOT_OWNERSHIP
    return Ownership(
        uid=st.st_uid,
        gid=st.st_gid,
        uname=_user_name(st.st_uid),
        gname=_group_name(st.st_gid),
    )


def safe_relative_path(path: str) -> str:
    """Map an absolute database path to a staging-relative one."""
    if not path.startswith("/"):
        raise ValueError(f"not absolute: {path}")
    rel = posixpath.normpath(path).lstrip("/")
    if rel in ("", "."):
        return ""
    if any(part == ".." for part in path.split("/")):
        raise ValueError(f"path traversal: {path}")
    return rel


def _stage_one(
    ctx: RunContext,
    copier: PrivilegedCopier,
    entry: InstalledEntry,
    root: Path,
) -> _Outcome:
    ctx.cancel.check("file copy")
    try:
        rel = safe_relative_path(entry.path)
    except ValueError as exc:
        return _Outcome(rel=entry.path, status="failed", error=str(exc))
    if not rel:
        return _Outcome(rel="/", status="root", error="filesystem_root")

    src = ctx.config.source_root / rel
    dest = root / rel
    try:
        st = src.lstat()
    except FileNotFoundError:
        return _Outcome(rel=rel, status="missing")
    except OSError as exc:
        return _Outcome(rel=rel, status="failed", error=str(exc))

    owner = ownership_from_stat(st, ctx.config.ownership)
    mode = stat.S_IMODE(st.st_mode)
    try:
        if stat.S_ISDIR(st.st_mode):
            copier.make_dir(src, dest)
            return _Outcome(rel=rel, status="dir", ownership=owner, mode=mode)
        copier.copy_entry(src, dest)
    except OSError as exc:
        return _Outcome(rel=rel, status="failed", error=str(exc))

    if stat.S_ISREG(st.st_mode):
        return _Outcome(rel=rel, status="file", size=st.st_size, ownership=owner, mode=mode)
    if stat.S_ISLNK(st.st_mode):
        return _Outcome(rel=rel, status="link", ownership=owner, mode=mode)
    return _Outcome(rel=rel, status="special", ownership=owner, mode=mode)


def _abs(rel: str) -> str:
    return rel if rel.startswith("/") else f"/{rel}"


def _report(ctx: RunContext, outcome: _Outcome) -> None:
    path = _abs(outcome.rel)
    if outcome.status == "file":
        ctx.reporter.emit("COPY", f"Copied: {path} ({fmt_iec(outcome.size)})")
    elif outcome.status == "dir":
        ctx.reporter.emit("DIR", f"Created directory: {path}")
    elif outcome.status in ("link", "special"):
        ctx.reporter.emit("COPY", f"Copied {outcome.status}: {path}")
    elif outcome.status == "missing":
        ctx.reporter.emit("SKIP", f"{path} -- not on disk")
    elif outcome.status == "root":
        ctx.reporter.emit("SKIP", f"{path} -- filesystem root is not packaged")
    else:
        ctx.reporter.emit("FAIL", f"{path} -- {outcome.error}")


def stage_root(
    ctx: RunContext,
    file_set: InstalledFileSet,
    copier: PrivilegedCopier,
) -> StagingRoot:
    root = ctx.staging_dir
    staging = StagingRoot(root=root)
    limit = 0 if ctx.config.fail_fast else ctx.config.max_copy_failures

    ctx.reporter.emit("STAGE", f"Copying files to the packaging directory {root}")
    with copier.session(root, ctx.identity.uid, ctx.identity.gid):
        try:
            copier.remove_tree(root)
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise HostEnvironmentError(
                f"Cannot prepare staging directory {root}: {exc}",
                "Check permissions under the work root, or remove it by hand",
            ) from exc

        entries = list(file_set.entries)
        if ctx.config.copy_workers > 1 and len(entries) > 1:
            with ThreadPoolExecutor(max_workers=ctx.config.copy_workers) as pool:
                futures = [pool.submit(_stage_one, ctx, copier, e, root) for e in entries]
                try:
                    outcomes = [f.result() for f in futures]
                except PipelineCancelled:
                    for f in futures:
                        f.cancel()
                    raise
        else:
            outcomes = []
            for e in entries:
                outcome = _stage_one(ctx, copier, e, root)
                outcomes.append(outcome)
                if ctx.config.fail_fast and outcome.status == "failed":
                    break

        dirs: List[str] = []
        for outcome in outcomes:
            _report(ctx, outcome)
            if outcome.status in ("missing", "root"):
                staging.skipped.append({"path": _abs(outcome.rel), "reason": outcome.error or "missing"})
                continue
            if outcome.status == "failed":
                staging.failures.append({"path": _abs(outcome.rel), "reason": outcome.error})
                continue
            if outcome.rel in staging.ownership:
                continue
            staging.entries.append(outcome.rel)
            staging.ownership[outcome.rel] = outcome.ownership or ROOT_OWNERSHIP
            if outcome.mode is not None:
                staging.modes[outcome.rel] = outcome.mode
            staging.total_size += outcome.size
            if outcome.status == "dir":
                dirs.append(outcome.rel)

        # Directory mtimes move while children are copied in; restore them last.
        for rel in sorted(dirs, reverse=True):
            try:
                copier.sync_dir_attrs(ctx.config.source_root / rel, root / rel)
            except OSError as exc:
                staging.failures.append({"path": _abs(rel), "reason": str(exc)})

    ctx.reporter.emit("STAGE", f"Total size of copied files: {fmt_iec(staging.total_size)}")
    ctx.event(
        "staged",
        entries=len(staging.entries),
        total_size=staging.total_size,
        skipped=len(staging.skipped),
        failures=len(staging.failures),
    )
    if len(staging.failures) > limit:
        raise PartialStagingError(staging.failures, limit)
    return staging
