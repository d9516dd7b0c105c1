"""
Manifest builder
================
Content-addressed ``.MTREE`` for the staged tree.

One entry per staged entry in sorted path order. Regular files carry size,
MD5 and SHA-256; symlinks carry their target. Owner ids and permission bits
come from the staging maps recorded off the live files, so the manifest agrees
with the archive headers.
Output follows the bsdtar mtree dialect pacman reads: a ``/set`` default
line, then only the keywords that differ from it.
"""
from __future__ import annotations

import gzip
import hashlib
import os
import stat
from pathlib import Path
from typing import List, Tuple

from pkgrecreate.context import RunContext
from pkgrecreate.contracts import ManifestEntry
from pkgrecreate.errors import ManifestBuildError
from pkgrecreate.stager import StagingRoot

SET_TYPE = "file"
SET_UID = 0
SET_GID = 0
SET_MODE = 0o644
SET_LINE = f"/set type={SET_TYPE} uid={SET_UID} gid={SET_GID} mode={SET_MODE:o}"

_TYPE_BY_MODE = (
    (stat.S_ISREG, "file"),
    (stat.S_ISDIR, "dir"),
    (stat.S_ISLNK, "link"),
    (stat.S_ISFIFO, "fifo"),
    (stat.S_ISCHR, "char"),
    (stat.S_ISBLK, "block"),
    (stat.S_ISSOCK, "socket"),
)


def file_digests(path: Path) -> Tuple[str, str]:
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            md5.update(chunk)
            sha256.update(chunk)
    return md5.hexdigest(), sha256.hexdigest()


def mtree_escape(text: str) -> str:
    """Octal-escape everything outside printable ASCII, plus space, '#', '=' and backslash."""
    out = []
    for byte in text.encode("utf-8", "surrogateescape"):
        if 0x21 <= byte <= 0x7E and byte not in (0x23, 0x3D, 0x5C):
            out.append(chr(byte))
        else:
            out.append(f"\\{byte:03o}")
    return "".join(out)


def manifest_entry(staging: StagingRoot, rel: str) -> ManifestEntry:
    path = staging.root / rel
    try:
        st = path.lstat()
    except OSError as exc:
        raise ManifestBuildError(f"Staged entry vanished: {rel} ({exc})") from exc

    kind = next((name for test, name in _TYPE_BY_MODE if test(st.st_mode)), None)
    if kind is None:
        raise ManifestBuildError(f"Unsupported file type in staging root: {rel}")

    owner = staging.owner_of(rel)
    entry = {
        "path": rel,
        "type": kind,
        "uid": owner.uid,
        "gid": owner.gid,
        "mode": staging.mode_of(rel, stat.S_IMODE(st.st_mode)),
        "mtime": st.st_mtime_ns // 1_000_000_000,
        "mtime_nsec": st.st_mtime_ns % 1_000_000_000,
    }
    if kind == "file":
        try:
            md5, sha256 = file_digests(path)
        except OSError as exc:
            raise ManifestBuildError(f"Cannot read staged file {rel}: {exc}") from exc
        entry.update(size=st.st_size, md5=md5, sha256=sha256)
    elif kind == "link":
        try:
            entry["link"] = os.readlink(path)
        except OSError as exc:
            raise ManifestBuildError(f"Cannot read link {rel}: {exc}") from exc
    return ManifestEntry(**entry)


def build_manifest(staging: StagingRoot) -> List[ManifestEntry]:
    entries = [manifest_entry(staging, rel) for rel in staging.sorted_entries()]
    paths = [e.path for e in entries]
    if len(set(paths)) != len(paths) or len(paths) != len(staging.entries):
        raise ManifestBuildError(
            f"Manifest covers {len(set(paths))} unique paths but {len(staging.entries)} entries were staged"
        )
    return entries


def render_mtree_line(entry: ManifestEntry) -> str:
    parts = [f"./{mtree_escape(entry.path)}", f"time={entry.mtime}.{entry.mtime_nsec}"]
    if entry.mode != SET_MODE:
        parts.append(f"mode={entry.mode:o}")
    if entry.gid != SET_GID:
        parts.append(f"gid={entry.gid}")
    if entry.uid != SET_UID:
        parts.append(f"uid={entry.uid}")
    if entry.type != SET_TYPE:
        parts.append(f"type={entry.type}")
    if entry.type == "link":
        parts.append(f"link={mtree_escape(entry.link or '')}")
    if entry.type == "file":
        parts.append(f"size={entry.size}")
        parts.append(f"md5digest={entry.md5}")
        parts.append(f"sha256digest={entry.sha256}")
    return " ".join(parts)


def render_mtree(entries: List[ManifestEntry]) -> str:
    lines = ["#mtree", SET_LINE]
    lines.extend(render_mtree_line(e) for e in entries)
    return "\n".join(lines) + "\n"


def encode_mtree(text: str, compress: bool) -> bytes:
    data = text.encode("utf-8")
    if compress:
        return gzip.compress(data, compresslevel=9, mtime=0)
    return data


def write_manifest(ctx: RunContext, staging: StagingRoot) -> List[ManifestEntry]:
    ctx.reporter.emit("MTREE", "Creating .MTREE file...")
    entries = build_manifest(staging)
    payload = encode_mtree(render_mtree(entries), ctx.config.mtree_gzip)
    try:
        ctx.mtree_path.write_bytes(payload)
        ctx.mtree_path.chmod(0o644)
    except OSError as exc:
        raise ManifestBuildError(f"Error creating .MTREE file: {exc}") from exc
    ctx.event("manifest_written", entries=len(entries), bytes=len(payload), gzip=ctx.config.mtree_gzip)
    return entries
