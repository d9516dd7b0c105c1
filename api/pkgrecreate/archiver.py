"""
Archiver
========
Write ``<name>-<version>-<arch>.pkg.tar.zst`` from the staged tree.

Member order is ``.PKGINFO``, ``.MTREE``, then the staged entries in manifest
order. Header ownership and permission bits come from the manifest and the
staging ownership map rather than the staged files, so an unprivileged build
still records root-owned entries and setuid bits survive the hand-back chown.
The archive is written to ``<archive>.part`` and renamed once complete.
"""
from __future__ import annotations

import contextlib
import os
import tarfile
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import zstandard as zstd

from common_zstd import make_cctx
from pkgrecreate.context import MTREE_NAME, PKGINFO_NAME, RunContext
from pkgrecreate.contracts import ManifestEntry, Ownership, PackageMetadata, ROOT_OWNERSHIP
from pkgrecreate.errors import ArchiveCreationError, PipelineCancelled
from pkgrecreate.stager import StagingRoot

# (arcname, staged path, recorded owner, permission bits, mtime override)
Member = Tuple[str, Path, Ownership, int, Optional[int]]


def archive_members(
    staging: StagingRoot,
    manifest: List[ManifestEntry],
    build_date: int,
) -> Iterator[Member]:
    yield PKGINFO_NAME, staging.root / PKGINFO_NAME, ROOT_OWNERSHIP, 0o644, build_date
    yield MTREE_NAME, staging.root / MTREE_NAME, ROOT_OWNERSHIP, 0o644, build_date
    for entry in manifest:
        yield entry.path, staging.root / entry.path, staging.owner_of(entry.path), entry.mode, None


def _tarinfo(
    tar: tarfile.TarFile,
    path: Path,
    arcname: str,
    owner: Ownership,
    mode: int,
    mtime: Optional[int],
) -> tarfile.TarInfo:
    info = tar.gettarinfo(str(path), arcname=arcname)
    if info is None:
        raise ArchiveCreationError(f"Cannot archive {arcname}: unsupported file type")
    info.uid = owner.uid
    info.gid = owner.gid
    info.uname = owner.uname
    info.gname = owner.gname
    info.mode = mode
    info.mtime = int(info.mtime) if mtime is None else mtime
    return info


def write_archive(
    ctx: RunContext,
    members: List[Member],
    out_path: Path,
    source_size: int = 0,
) -> None:
    cctx = make_cctx(
        level=ctx.config.zstd_level,
        threads=ctx.config.zstd_threads,
        enable_ldm=ctx.config.long_range,
        source_size=source_size,
    )
    with out_path.open("wb") as fh:
        with cctx.stream_writer(fh, closefd=False) as compressor:
            with tarfile.open(fileobj=compressor, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                for arcname, path, owner, mode, mtime in members:
                    ctx.cancel.check("archive creation")
                    info = _tarinfo(tar, path, arcname, owner, mode, mtime)
                    if info.isreg():
                        with path.open("rb") as f:
                            tar.addfile(info, f)
                    else:
                        tar.addfile(info)


def create_archive(
    ctx: RunContext,
    staging: StagingRoot,
    meta: PackageMetadata,
    manifest: List[ManifestEntry],
) -> Path:
    ctx.cancel.check("archive creation")
    final_path = ctx.output_dir / meta.archive_name()
    part_path = final_path.with_name(final_path.name + ".part")
    members = list(archive_members(staging, manifest, meta.build_date))

    ctx.reporter.emit("ARCHIVE", f"Creating the package {final_path.name}...")
    try:
        ctx.output_dir.mkdir(parents=True, exist_ok=True)
        write_archive(ctx, members, part_path, source_size=staging.total_size)
        os.replace(part_path, final_path)
    except PipelineCancelled:
        _discard(part_path)
        raise
    except ArchiveCreationError:
        _discard(part_path)
        raise
    except (OSError, tarfile.TarError, zstd.ZstdError) as exc:
        _discard(part_path)
        raise ArchiveCreationError(f"Error creating the package: {exc}") from exc

    ctx.event("archive_written", archive=str(final_path), members=len(members))
    return final_path


def _discard(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)
