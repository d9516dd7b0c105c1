"""Finalizer: verify the archive, then write its ``.md5`` sidecar."""

from __future__ import annotations

import hashlib
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import zstandard as zstd

from common_zstd import make_dctx
from pkgrecreate.context import MTREE_NAME, PKGINFO_NAME, RunContext, fmt_iec
from pkgrecreate.contracts import ChecksumRecord, ManifestEntry
from pkgrecreate.errors import ArchiveVerificationError, ChecksumError


@dataclass
class FinalizedPackage:
    archive: Path
    checksum_path: Path
    checksum: ChecksumRecord
    size: int
    members: Optional[int] = None


def md5_file(path: Path) -> str:
    hasher = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def list_archive_members(path: Path) -> List[str]:
    with path.open("rb") as fh:
        with make_dctx().stream_reader(fh) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                return [member.name for member in tar]


def verify_archive(path: Path, manifest: Optional[List[ManifestEntry]] = None, deep: bool = True) -> Optional[int]:
    if not path.is_file():
        raise ArchiveVerificationError(f"Package was not created: {path}")
    if path.stat().st_size == 0:
        raise ArchiveVerificationError(f"Package is empty: {path}")
    if not deep:
        return None

    try:
        names = list_archive_members(path)
    except (OSError, tarfile.TarError, zstd.ZstdError) as exc:
        raise ArchiveVerificationError(f"Package is unreadable: {path}: {exc}") from exc
    if names[:2] != [PKGINFO_NAME, MTREE_NAME]:
        raise ArchiveVerificationError(
            f"Package must start with {PKGINFO_NAME} and {MTREE_NAME}, found {names[:2]}"
        )
    if manifest is not None:
        missing = sorted({e.path for e in manifest} - set(names))
        if missing:
            raise ArchiveVerificationError(
                f"Package is missing {len(missing)} manifest entries, e.g. {missing[0]}"
            )
    return len(names)


def write_checksum(archive: Path) -> FinalizedPackage:
    try:
        record = ChecksumRecord(archive=archive.name, md5=md5_file(archive))
        sidecar = archive.with_name(archive.name + ".md5")
        sidecar.write_text(record.line(), encoding="utf-8")
        size = archive.stat().st_size
    except OSError as exc:
        raise ChecksumError(f"Error generating .md5 file: {exc}") from exc
    return FinalizedPackage(
        archive=archive,
        checksum_path=sidecar,
        checksum=record,
        size=size,
    )


def finalize(
    ctx: RunContext,
    archive: Path,
    manifest: Optional[List[ManifestEntry]] = None,
) -> FinalizedPackage:
    members = verify_archive(archive, manifest, deep=ctx.config.deep_verify)
    ctx.reporter.emit("CHECKSUM", "Generating .md5 file...")
    result = write_checksum(archive)
    result.members = members

    ctx.reporter.emit("OK", f"Package created successfully: {result.archive}")
    ctx.reporter.emit("OK", f".md5 file created: {result.checksum_path}")
    ctx.reporter.emit("OK", f"To install the package, run: sudo pacman -U {result.archive}")
    ctx.reporter.emit("OK", f"Size of created package: {fmt_iec(result.size)}")
    ctx.event("finalized", archive=str(archive), md5=result.checksum.md5, size=result.size)
    return result
