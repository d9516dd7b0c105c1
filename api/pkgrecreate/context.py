"""Run context threaded through every pipeline stage."""

from __future__ import annotations

import fcntl
import getpass
import os
import platform
import socket
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

from pkgrecreate.contracts import PackageRequest, RecreateConfig
from pkgrecreate.errors import HostEnvironmentError, PipelineCancelled, StagingBusyError
from pkgrecreate.run_log import RunLog

PKGINFO_NAME = ".PKGINFO"
MTREE_NAME = ".MTREE"
LOCK_NAME = ".stage.lock"
RUN_LOG_NAME = "run_log.jsonl"


def fmt_iec(n: int) -> str:
    """Format like ``numfmt --to=iec-i --suffix=B --format=%.2f``."""
    value = float(n)
    for unit in ("", "Ki", "Mi", "Gi", "Ti", "Pi"):
        if abs(value) < 1024.0 or unit == "Pi":
            return f"{value:.2f}{unit}B"
        value /= 1024.0
    return f"{value:.2f}PiB"


def _epoch_now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class UserIdentity:
    name: str
    uid: int
    gid: int
    host: str

    @classmethod
    def current(cls) -> "UserIdentity":
        return cls(
            name=getpass.getuser(),
            uid=os.getuid(),
            gid=os.getgid(),
            host=socket.gethostname(),
        )

    def packager(self) -> str:
        return f"{self.name} <{self.name}@{self.host}>"


class CancelToken:
    """Coarse cancellation flag checked at copy and archive boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelled(stage)


class Reporter:
    """Tagged human progress lines, e.g. ``[COPY] /etc/demo/conf (10.00B)``."""

    def __init__(self, verbose: bool = True, stream: Optional[TextIO] = None):
        self.verbose = verbose
        self._stream = stream
        self._lock = threading.Lock()

    def emit(self, tag: str, message: str) -> None:
        if not self.verbose:
            return
        with self._lock:
            print(f"[{tag}] {message}", file=self._stream or sys.stdout)


class StagingLock:
    """Exclusive per-package lock on the staging directory."""

    def __init__(self, lock_path: Path):
        self._lock_path = lock_path
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            self._fd = os.open(str(self._lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as exc:
            raise HostEnvironmentError(
                f"Cannot create staging lock {self._lock_path}: {exc}",
                "Point --work-root at a writable directory",
            ) from exc

        try:
            fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(self._fd)
            self._fd = None
            raise StagingBusyError(
                f"Staging directory is locked by another run: {self._lock_path}",
                "Wait for the other run to finish",
            )
        os.ftruncate(self._fd, 0)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        os.write(self._fd, f"{os.getpid()}:{stamp}\n".encode())

    def release(self) -> None:
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None

    def __enter__(self) -> "StagingLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


@dataclass
class RunContext:
    request: PackageRequest
    config: RecreateConfig
    identity: UserIdentity
    architecture: str
    clock: Callable[[], int] = field(default=_epoch_now)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    cancel: CancelToken = field(default_factory=CancelToken)
    reporter: Reporter = field(default_factory=Reporter)
    log: Optional[RunLog] = None

    def __post_init__(self) -> None:
        if self.log is None:
            self.log = RunLog(self.work_dir / RUN_LOG_NAME, run_id=self.run_id)

    @classmethod
    def create(
        cls,
        request: PackageRequest,
        config: RecreateConfig,
        *,
        identity: Optional[UserIdentity] = None,
        clock: Optional[Callable[[], int]] = None,
        reporter: Optional[Reporter] = None,
        cancel: Optional[CancelToken] = None,
    ) -> "RunContext":
        kwargs: dict = {}
        if clock is not None:
            kwargs["clock"] = clock
        if reporter is not None:
            kwargs["reporter"] = reporter
        if cancel is not None:
            kwargs["cancel"] = cancel
        return cls(
            request=request,
            config=config,
            identity=identity or UserIdentity.current(),
            architecture=config.arch or platform.machine(),
            **kwargs,
        )

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def work_dir(self) -> Path:
        return self.config.work_root / self.request.name

    @property
    def staging_dir(self) -> Path:
        return self.work_dir / "pkg"

    @property
    def pkginfo_path(self) -> Path:
        return self.staging_dir / PKGINFO_NAME

    @property
    def mtree_path(self) -> Path:
        return self.staging_dir / MTREE_NAME

    @property
    def lock_path(self) -> Path:
        return self.work_dir / LOCK_NAME

    @property
    def output_dir(self) -> Path:
        return self.config.output_dir

    def packager(self) -> str:
        return self.config.packager or self.identity.packager()

    def event(self, event: str, **details: Any) -> None:
        if self.log is not None:
            self.log.append(event, package=self.name, **details)
