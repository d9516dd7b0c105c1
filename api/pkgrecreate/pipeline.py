#!/usr/bin/env python3
"""
Package reconstruction pipeline
===============================
Stages, each a hard gate for the next:
  1. Installed-set resolution  (resolver)
  2. Root staging              (stager, privileged copier)
  3. Metadata synthesis        (metadata -> .PKGINFO)
  4. Manifest                  (manifest -> .MTREE)
  5. Archive                   (archiver -> .pkg.tar.zst)
  6. Verification + checksum   (finalizer -> .md5)

The whole run holds the per-package staging lock. Cancellation removes the
staging tree; other failures leave it in place for inspection.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pkgrecreate.archiver import create_archive
from pkgrecreate.context import RunContext, StagingLock
from pkgrecreate.contracts import PackageMetadata
from pkgrecreate.drivers.copier import DirectCopier, PrivilegedCopier, SudoCopier, force_rmtree
from pkgrecreate.drivers.database import PackageDatabase, PacmanDatabase
from pkgrecreate.errors import PipelineCancelled, RecreateError
from pkgrecreate.finalizer import finalize
from pkgrecreate.manifest import write_manifest
from pkgrecreate.metadata import synthesize_metadata
from pkgrecreate.resolver import resolve_installed_set
from pkgrecreate.stager import stage_root


@dataclass
class PipelineResult:
    package: str
    run_id: str
    archive: Path
    checksum_path: Path
    md5: str
    archive_size: int
    metadata: PackageMetadata
    manifest_entries: int
    staged_entries: int
    staging_dir: Path
    skipped: List[Dict] = field(default_factory=list)
    failures: List[Dict] = field(default_factory=list)
    archive_members: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "run_id": self.run_id,
            "archive": str(self.archive),
            "checksum_path": str(self.checksum_path),
            "md5": self.md5,
            "archive_size": self.archive_size,
            "archive_members": self.archive_members,
            "metadata": self.metadata.model_dump(),
            "manifest_entries": self.manifest_entries,
            "staged_entries": self.staged_entries,
            "staging_dir": str(self.staging_dir),
            "skipped": self.skipped,
            "failures": self.failures,
        }


def default_database(ctx: RunContext) -> PackageDatabase:
    return PacmanDatabase(cmd=ctx.config.pacman_cmd)


def default_copier(ctx: RunContext) -> PrivilegedCopier:
    if ctx.config.use_sudo:
        return SudoCopier(sudo_cmd=ctx.config.sudo_cmd)
    return DirectCopier()


class RecreatePipeline:
    def __init__(
        self,
        ctx: RunContext,
        db: Optional[PackageDatabase] = None,
        copier: Optional[PrivilegedCopier] = None,
    ):
        self.ctx = ctx
        self.db = db or default_database(ctx)
        self.copier = copier or default_copier(ctx)

    def run(self) -> PipelineResult:
        ctx = self.ctx
        with StagingLock(ctx.lock_path):
            ctx.event("run_start", copier=self.copier.name, arch=ctx.architecture)
            ctx.reporter.emit("RECREATE", f"Recreating package '{ctx.name}'...")
            try:
                file_set = resolve_installed_set(ctx, self.db)
                staging = stage_root(ctx, file_set, self.copier)
                meta = synthesize_metadata(ctx, self.db, staging)
                manifest = write_manifest(ctx, staging)
                archive = create_archive(ctx, staging, meta, manifest)
                final = finalize(ctx, archive, manifest)
            except PipelineCancelled as exc:
                ctx.event("run_cancelled", stage=exc.stage)
                self.remove_staging()
                raise
            except RecreateError as exc:
                ctx.event("run_failed", error_type=exc.__class__.__name__, error=exc.message)
                raise

        return PipelineResult(
            package=ctx.name,
            run_id=ctx.run_id,
            archive=final.archive,
            checksum_path=final.checksum_path,
            md5=final.checksum.md5,
            archive_size=final.size,
            archive_members=final.members,
            metadata=meta,
            manifest_entries=len(manifest),
            staged_entries=len(staging.entries),
            staging_dir=staging.root,
            skipped=staging.skipped,
            failures=staging.failures,
        )

    def remove_staging(self) -> bool:
        """Delete the staging tree; returns False when it could not be removed."""
        staging_dir = self.ctx.staging_dir
        if not staging_dir.exists():
            return True
        try:
            force_rmtree(staging_dir)
        except OSError as exc:
            self.ctx.reporter.emit("WARN", f"Could not remove {staging_dir}: {exc}")
            return False
        self.ctx.event("staging_removed", path=str(staging_dir))
        return True
