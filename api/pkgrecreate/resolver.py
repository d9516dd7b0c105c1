"""Installed-set resolver: package name -> owned file list."""

from __future__ import annotations

from pkgrecreate.context import RunContext
from pkgrecreate.contracts import InstalledFileSet
from pkgrecreate.drivers.database import PackageDatabase
from pkgrecreate.errors import EmptyPackageError, PackageNotInstalled


def resolve_installed_set(ctx: RunContext, db: PackageDatabase) -> InstalledFileSet:
    name = ctx.name
    if not db.is_installed(name):
        raise PackageNotInstalled(name)

    ctx.reporter.emit("RESOLVE", f"Listing files installed by '{name}'...")
    file_set = db.list_files(name)
    if not file_set.entries and not ctx.config.allow_empty:
        raise EmptyPackageError(name)

    dirs = sum(1 for e in file_set.entries if e.kind == "dir")
    ctx.reporter.emit("RESOLVE", f"{len(file_set)} entries ({dirs} directories)")
    ctx.event("resolved", entries=len(file_set), directories=dirs)
    return file_set
