"""
File locking and atomic replacement primitives.

Every metrics file is guarded by an advisory ``flock`` taken on a sibling
``<name>.lock`` file rather than on the data file itself. Rotation replaces
data files by rename, and a lock held on the sibling survives the rename,
so a waiting writer never ends up appending to a file that was swapped out
from under it.

Components:
- shared_lock / exclusive_lock: context managers over the sibling lock
- atomic_replace: write a temp file next to the target, then rename it over
- OwnershipCache: per-process memo of files already chowned
- DaemonLock: single-instance lock with PID tracking and stale detection
"""

from __future__ import annotations

import contextlib
import fcntl
import grp
import os
import pwd
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from watcher_metrics.errors import LockHeldError, StorageUnavailableError
from watcher_metrics.logging import get_logger

logger = get_logger(__name__)

LOCK_SUFFIX = ".lock"
DEFAULT_FILE_MODE = 0o644


def lock_path_for(path: str | Path) -> Path:
    """Return the sibling lock file guarding ``path``."""
    path = Path(path)
    return path.with_name(path.name + LOCK_SUFFIX)


@contextmanager
def _flocked(path: str | Path, *, exclusive: bool, blocking: bool) -> Iterator[None]:
    lock_file = lock_path_for(path)
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_file, os.O_RDWR | os.O_CREAT, DEFAULT_FILE_MODE)
    except OSError as e:
        raise StorageUnavailableError(
            f"Unable to open lock file: {e}",
            details={"path": str(lock_file)},
        ) from e

    try:
        operation = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        if not blocking:
            operation |= fcntl.LOCK_NB
        try:
            fcntl.flock(fd, operation)
        except BlockingIOError as e:
            raise LockHeldError(
                "Lock is held by another process",
                details={"path": str(lock_file)},
            ) from e
        except OSError as e:
            raise StorageUnavailableError(
                f"Unable to acquire lock: {e}",
                details={"path": str(lock_file)},
            ) from e

        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@contextmanager
def shared_lock(path: str | Path) -> Iterator[None]:
    """
    Hold a shared (reader) lock on ``path`` for the duration of the block.

    Blocks until no exclusive holder remains.

    Raises:
        StorageUnavailableError: If the lock file cannot be opened or locked.
    """
    with _flocked(path, exclusive=False, blocking=True):
        yield


@contextmanager
def exclusive_lock(path: str | Path, *, blocking: bool = True) -> Iterator[None]:
    """
    Hold an exclusive (writer) lock on ``path`` for the duration of the block.

    Args:
        path: The data file being guarded.
        blocking: When False, fail immediately if another holder exists.

    Raises:
        StorageUnavailableError: If the lock file cannot be opened or locked.
        LockHeldError: If ``blocking`` is False and the lock is held.
    """
    with _flocked(path, exclusive=True, blocking=blocking):
        yield


def atomic_replace(path: str | Path, data: bytes) -> bool:
    """
    Replace ``path`` with ``data`` so readers see either old or new content.

    The payload is written and fsynced to a temp file in the same directory,
    then renamed over the target. The rename is the only mutation of the
    target; if anything fails before it, the original file is untouched and
    the temp file is removed.

    Args:
        path: File to replace (created if missing).
        data: Complete new file content.

    Returns:
        True if the file was replaced, False on any I/O failure.
    """
    path = Path(path)
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        try:
            mode = path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = DEFAULT_FILE_MODE
        os.chmod(tmp_name, mode)

        os.replace(tmp_name, path)
        return True
    except OSError as e:
        logger.warning(
            "Atomic replace failed",
            extra={"path": str(path), "error": str(e)},
        )
        if tmp_name is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
        return False


class OwnershipCache:
    """
    Remembers which paths have already been chowned in this process.

    Collectors write the same handful of files thousands of times; the chown
    only needs to happen once per path per process lifetime.

    Example:
        >>> ownership = OwnershipCache(user="fpp", group="fpp")
        >>> ownership.ensure("/var/lib/watcher-metrics/ping/raw.log")
    """

    def __init__(self, user: str | None = None, group: str | None = None) -> None:
        self.user = user
        self.group = group
        self._verified: set[str] = set()

    def _resolve_ids(self) -> tuple[int, int]:
        uid = -1
        gid = -1
        if self.user:
            try:
                uid = pwd.getpwnam(self.user).pw_uid
            except KeyError:
                logger.warning("Owner user not found", extra={"user": self.user})
        if self.group:
            try:
                gid = grp.getgrnam(self.group).gr_gid
            except KeyError:
                logger.warning("Owner group not found", extra={"group": self.group})
        return uid, gid

    def ensure(self, path: str | Path, *, force: bool = False) -> bool:
        """
        Chown ``path`` to the configured owner once per process.

        Args:
            path: File or directory to fix up.
            force: Re-apply even if already verified.

        Returns:
            True if the path exists and was handled, False otherwise.
        """
        key = str(path)
        if not force and key in self._verified:
            return True
        if not os.path.exists(key):
            return False

        if self.user or self.group:
            uid, gid = self._resolve_ids()
            if uid != -1 or gid != -1:
                try:
                    os.chown(key, uid, gid)
                except OSError as e:
                    logger.debug(
                        "Unable to change file ownership",
                        extra={"path": key, "error": str(e)},
                    )

        self._verified.add(key)
        return True

    def is_verified(self, path: str | Path) -> bool:
        """Return True if ``path`` has been handled in this process."""
        return str(path) in self._verified

    def reset(self) -> None:
        """Forget every verified path."""
        self._verified.clear()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DaemonLock:
    """
    Single-instance lock for long-running collector and rollup daemons.

    The lock file records the holder's PID. If the lock cannot be taken and
    the recorded PID no longer exists, the lock is treated as stale, cleared
    and retried once.

    Example:
        >>> lock = DaemonLock("rollupd", lock_dir="/tmp")
        >>> lock.acquire()
        >>> try:
        ...     run_daemon()
        ... finally:
        ...     lock.release()
    """

    LOCK_PREFIX = "watcher-metrics-"

    def __init__(self, name: str, lock_dir: str | Path = "/tmp") -> None:
        self.name = name
        self.path = Path(lock_dir) / f"{self.LOCK_PREFIX}{name}.lock"
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        """True while this instance holds the lock."""
        return self._fd is not None

    def _try_lock(self) -> bool:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, DEFAULT_FILE_MODE)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        os.fsync(fd)
        self._fd = fd
        return True

    def acquire(self) -> None:
        """
        Acquire the lock without blocking.

        Raises:
            LockHeldError: If a live process already holds the lock.
            StorageUnavailableError: If the lock file cannot be opened.
        """
        if self.held:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._try_lock():
                return

            stale_pid = self.pid()
            if stale_pid is not None and not _pid_alive(stale_pid):
                logger.info(
                    "Clearing stale daemon lock",
                    extra={"daemon": self.name, "stale_pid": stale_pid},
                )
                with contextlib.suppress(FileNotFoundError):
                    self.path.unlink()
                if self._try_lock():
                    logger.info(
                        "Acquired daemon lock after clearing stale lock",
                        extra={"daemon": self.name},
                    )
                    return
        except OSError as e:
            raise StorageUnavailableError(
                f"Unable to open daemon lock file: {e}",
                details={"path": str(self.path)},
            ) from e

        raise LockHeldError(
            "Another instance is already running",
            details={"daemon": self.name, "pid": self.pid()},
        )

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self._fd is None:
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    def pid(self) -> int | None:
        """Return the PID recorded in the lock file, if any."""
        try:
            content = self.path.read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    def is_running(self) -> bool:
        """Return True if the recorded holder process is alive."""
        pid = self.pid()
        return pid is not None and _pid_alive(pid)

    def __enter__(self) -> DaemonLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
