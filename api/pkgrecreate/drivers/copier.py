#!/usr/bin/env python3
"""
Privileged copier
=================
Attribute-preserving copies of live files into the staging root.

``DirectCopier`` copies in-process and is enough when the invoking user can
read every installed file. ``SudoCopier`` shells out through sudo for each
operation; its privileged session is opened before the copy loop and closed
right after it, handing the staging tree back to the invoking user.
"""

import contextlib
import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional

from pkgrecreate.errors import HostEnvironmentError


def _owner_rwx(path) -> None:
    mode = stat.S_IMODE(os.lstat(path).st_mode)
    if (mode & stat.S_IRWXU) != stat.S_IRWXU:
        os.chmod(path, mode | stat.S_IRWXU)


def force_rmtree(path: Path) -> None:
    """Remove a staged tree, including directories staged read-only (e.g. 0555)."""
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink()
        return
    if not path.exists():
        return
    _owner_rwx(path)
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            sub = os.path.join(dirpath, name)
            if not os.path.islink(sub):
                _owner_rwx(sub)
    shutil.rmtree(path)


class PrivilegedCopier:
    name = "base"

    @contextlib.contextmanager
    def session(self, staging_root: Path, owner_uid: int, owner_gid: int) -> Iterator[None]:
        yield

    def make_dir(self, src: Path, dest: Path) -> None:
        raise NotImplementedError

    def copy_entry(self, src: Path, dest: Path) -> None:
        raise NotImplementedError

    def sync_dir_attrs(self, src: Path, dest: Path) -> None:
        raise NotImplementedError

    def remove_tree(self, path: Path) -> None:
        raise NotImplementedError


class DirectCopier(PrivilegedCopier):
    name = "direct"

    def make_dir(self, src: Path, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)

    def copy_entry(self, src: Path, dest: Path) -> None:
        st = src.lstat()
        dest.parent.mkdir(parents=True, exist_ok=True)
        if os.path.lexists(dest):
            dest.unlink()

        if stat.S_ISREG(st.st_mode) or stat.S_ISLNK(st.st_mode):
            shutil.copy2(src, dest, follow_symlinks=False)
        elif stat.S_ISFIFO(st.st_mode):
            os.mkfifo(dest, stat.S_IMODE(st.st_mode))
            shutil.copystat(src, dest, follow_symlinks=False)
        elif stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode) or stat.S_ISSOCK(st.st_mode):
            os.mknod(dest, st.st_mode, st.st_rdev)
            shutil.copystat(src, dest, follow_symlinks=False)
        else:
            raise OSError(f"unsupported file type: {src}")

        if os.geteuid() == 0:
            os.lchown(dest, st.st_uid, st.st_gid)

    def sync_dir_attrs(self, src: Path, dest: Path) -> None:
        shutil.copystat(src, dest, follow_symlinks=False)
        if os.geteuid() == 0:
            st = src.lstat()
            os.lchown(dest, st.st_uid, st.st_gid)

    def remove_tree(self, path: Path) -> None:
        force_rmtree(path)


class SudoCopier(PrivilegedCopier):
    name = "sudo"

    def __init__(self, sudo_cmd: Optional[List[str]] = None, timeout: float = 300.0):
        self.sudo_cmd = list(sudo_cmd or ["sudo"])
        self.timeout = timeout

    def _sudo(self, args: List[str]) -> None:
        cmd = self.sudo_cmd + args
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise HostEnvironmentError(
                f"Privilege tool not found: {self.sudo_cmd[0]}",
                "Install sudo or run with --no-sudo",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise OSError(f"'{' '.join(cmd)}' timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            raise OSError(f"'{' '.join(cmd)}' failed (exit {proc.returncode}): {proc.stderr.strip()[:300]}")

    @contextlib.contextmanager
    def session(self, staging_root: Path, owner_uid: int, owner_gid: int) -> Iterator[None]:
        try:
            self._sudo(["-v"])
        except OSError as exc:
            raise HostEnvironmentError(f"Could not acquire privileges: {exc}") from exc
        try:
            yield
        finally:
            try:
                if staging_root.exists():
                    self._sudo(["chown", "-R", f"{owner_uid}:{owner_gid}", str(staging_root)])
            finally:
                subprocess.run(self.sudo_cmd + ["-k"], capture_output=True, check=False)

    def make_dir(self, src: Path, dest: Path) -> None:
        self._sudo(["mkdir", "-p", str(dest)])

    def copy_entry(self, src: Path, dest: Path) -> None:
        self._sudo(["mkdir", "-p", str(dest.parent)])
        self._sudo(["cp", "-a", "-T", str(src), str(dest)])

    def sync_dir_attrs(self, src: Path, dest: Path) -> None:
        self._sudo(["chmod", f"--reference={src}", str(dest)])
        self._sudo(["touch", "-h", f"--reference={src}", str(dest)])

    def remove_tree(self, path: Path) -> None:
        if os.path.lexists(path):
            self._sudo(["rm", "-rf", "--one-file-system", str(path)])
