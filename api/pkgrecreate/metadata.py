"""Metadata synthesizer: database fields + run context -> ``.PKGINFO``."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from pkgrecreate import __version__
from pkgrecreate.context import RunContext
from pkgrecreate.contracts import PackageMetadata
from pkgrecreate.drivers.database import PackageDatabase
from pkgrecreate.errors import MetadataSynthesisError
from pkgrecreate.stager import StagingRoot

NONE_SENTINEL = "None"
GENERATOR_LINE = f"# Generated by recreate-package v{__version__}"


def split_dependencies(raw: str) -> List[str]:
    return [tok for tok in raw.split() if tok and tok != NONE_SENTINEL]


def _field(fields: Dict[str, str], label: str) -> str:
    value = (fields.get(label) or "").strip()
    return "" if value == NONE_SENTINEL else value


def build_metadata(ctx: RunContext, fields: Dict[str, str], total_size: int) -> PackageMetadata:
    if not fields:
        raise MetadataSynthesisError(
            f"Package database returned no metadata fields for '{ctx.name}'",
            "Check the output of: LANG=C pacman -Qi <package>",
        )
    db_name = _field(fields, "Name")
    if db_name and db_name != ctx.name:
        raise MetadataSynthesisError(
            f"Package database answered for '{db_name}' instead of '{ctx.name}'"
        )
    return PackageMetadata(
        name=ctx.name,
        version=_field(fields, "Version"),
        description=(fields.get("Description") or "").strip(),
        url=_field(fields, "URL"),
        build_date=ctx.clock(),
        packager=ctx.packager(),
        total_size=total_size,
        architecture=ctx.architecture,
        license=_field(fields, "Licenses"),
        dependencies=split_dependencies(fields.get("Depends On") or ""),
    )


def render_pkginfo(meta: PackageMetadata) -> str:
    lines = [
        GENERATOR_LINE,
        f"pkgname = {meta.name}",
        f"pkgver = {meta.version}",
        f"pkgdesc = {meta.description}",
        f"url = {meta.url}",
        f"builddate = {meta.build_date}",
        f"packager = {meta.packager}",
        f"size = {meta.total_size}",
        f"arch = {meta.architecture}",
        f"license = {meta.license}",
    ]
    lines.extend(f"depend = {dep}" for dep in meta.dependencies)
    return "\n".join(lines) + "\n"


def synthesize_metadata(
    ctx: RunContext,
    db: PackageDatabase,
    staging: StagingRoot,
) -> PackageMetadata:
    ctx.reporter.emit("PKGINFO", "Creating .PKGINFO file...")
    meta = build_metadata(ctx, db.query_info(ctx.name), staging.total_size)
    path: Path = ctx.pkginfo_path
    try:
        path.write_text(render_pkginfo(meta), encoding="utf-8")
        path.chmod(0o644)
    except OSError as exc:
        raise MetadataSynthesisError(f"Error creating .PKGINFO file: {exc}") from exc
    ctx.event(
        "metadata_written",
        version=meta.version,
        size=meta.total_size,
        depends=len(meta.dependencies),
    )
    return meta
