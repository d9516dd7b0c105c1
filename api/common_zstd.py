#!/usr/bin/env python3
"""
Shared zstd compressor factory for package archives.

Centralizes level/threading/long-range defaults so the archiver and the
verification pass agree on window sizes.
"""

from __future__ import annotations

import math
import os
from typing import Optional

import zstandard as zstd

MAX_WINDOW_LOG = 27


def _adaptive_window_log(source_size: Optional[int]) -> int:
    """Choose a window log (20..27) large enough to span the whole payload."""
    if not source_size or source_size <= 0:
        return 25
    wl = int(math.ceil(math.log2(max(1, int(source_size)))))
    return max(20, min(MAX_WINDOW_LOG, wl))


def make_cctx(
    *,
    level: int = 19,
    threads: Optional[int] = -1,
    write_content_size: bool = True,
    write_checksum: bool = True,
    enable_ldm: bool = True,
    window_log: Optional[int] = None,
    source_size: Optional[int] = None,
) -> zstd.ZstdCompressor:
    """
    Build a zstd compressor with consistent defaults.

    - `threads=-1` means "all cores".
    - Long-distance matching widens the match window for mixed binary/text
      package payloads; `RECREATE_DISABLE_LDM=1` turns it off.
    """
    eff_threads = -1 if threads in (None, 0) else int(threads)
    if os.getenv("RECREATE_DISABLE_LDM", "").strip() == "1":
        enable_ldm = False

    if enable_ldm or window_log is not None:
        wl = int(window_log) if window_log is not None else _adaptive_window_log(source_size)
        params = zstd.ZstdCompressionParameters.from_level(
            int(level),
            source_size=int(source_size or 0),
            window_log=wl,
            enable_ldm=bool(enable_ldm),
            threads=eff_threads,
            write_checksum=int(write_checksum),
            write_content_size=int(write_content_size),
        )
        return zstd.ZstdCompressor(compression_params=params)

    return zstd.ZstdCompressor(
        level=int(level),
        threads=eff_threads,
        write_content_size=write_content_size,
        write_checksum=write_checksum,
    )


def make_dctx() -> zstd.ZstdDecompressor:
    return zstd.ZstdDecompressor(max_window_size=1 << MAX_WINDOW_LOG)
