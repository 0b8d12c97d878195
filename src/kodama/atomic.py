"""Crash-safe file writes and advisory marker-file locks.

A reader never observes a partially written file: content goes to a temp file
in the destination directory, is fsynced, and is renamed over the target.
Writers of the same path are serialized through ``<path>.lock``, a marker
file created with O_EXCL that holds the owner's PID. The marker is visible on
disk, so it also serializes separate ``kc`` processes.

Stale-lock detection checks the owner PID with ``os.kill(pid, 0)``. PIDs can
be reused, so this is a liveness heuristic for a single machine, not a
correctness guarantee.
"""

import errno
import logging
import os
import re
import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Union

from .errors import AtomicWriteError, LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
DEFAULT_LOCK_TIMEOUT = 0.5
DEFAULT_LOCK_RETRIES = 5

# Age after which leftovers are swept at startup
ORPHAN_TMP_MAX_AGE_SECONDS = 60 * 60
STALE_LOCK_MAX_AGE_SECONDS = 60 * 60

# A lock file with no PID yet may be mid-creation by another process
_EMPTY_LOCK_GRACE_SECONDS = 1.0

_TMP_NAME_RE = re.compile(r"\.tmp\.[0-9a-f]{32}$")
_STALE_MARKER_RE = re.compile(r"\.lock\.stale\.[0-9a-f]{32}$")


def _tmp_name_for(path: Path) -> Path:
    return path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")


def is_same_filesystem(path1: Path, path2: Path) -> bool:
    """Check whether two existing paths live on the same device.

    Returns False when either path cannot be inspected.
    """
    try:
        return os.stat(path1).st_dev == os.stat(path2).st_dev
    except OSError as e:
        logger.debug(f"Could not determine filesystem: {e}")
        return False


def get_existing_parent(path: Path) -> Optional[Path]:
    """Return the nearest ancestor of ``path`` that exists."""
    for parent in path.parents:
        if parent.exists():
            return parent
    return None


def fsync_directory(directory: Path) -> bool:
    """Best-effort fsync of a directory's metadata.

    Some filesystems (and platforms) refuse to open or fsync directories; that
    is never fatal.
    """
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError as e:
        logger.debug(f"Directory fsync unsupported for {directory.name}: {e}")
        return False
    try:
        os.fsync(fd)
        return True
    except OSError as e:
        logger.debug(f"Directory fsync failed for {directory.name}: {e}")
        return False
    finally:
        os.close(fd)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def _read_pid(marker: Path) -> Optional[int]:
    try:
        text = marker.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return int(text) if text.isdigit() else None


def _marker_is_stale(marker: Path, max_age: Optional[float] = None) -> bool:
    try:
        age = time.time() - marker.stat().st_mtime
    except FileNotFoundError:
        return False
    except OSError:
        return True
    if max_age is not None and age > max_age:
        return True

    pid = _read_pid(marker)
    if pid is None:
        return age > _EMPTY_LOCK_GRACE_SECONDS
    return not _pid_alive(pid)


class FileLock:
    """Advisory lock represented by an exclusive-create marker file.

    Usable as a context manager; raises LockTimeoutError on timeout.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        retries: int = DEFAULT_LOCK_RETRIES,
    ):
        self.target = Path(path)
        self.lock_path = self.target.with_name(self.target.name + LOCK_SUFFIX)
        self.timeout = timeout
        self.retries = max(1, retries)
        self.acquired = False

    def __enter__(self) -> "FileLock":
        if not self.acquire():
            raise LockTimeoutError(self.target.name)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def acquire(self) -> bool:
        """Try to take the lock, retrying until the timeout elapses.

        Returns:
            True if acquired, False on timeout
        """
        deadline = time.monotonic() + self.timeout
        pause = self.timeout / self.retries
        self.lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if self.is_stale():
                    self.force_release()
                    # Stale lock cleared, retry right away
                    if time.monotonic() < deadline:
                        continue
                    return False
                if time.monotonic() + pause > deadline:
                    return False
                time.sleep(pause)
                continue
            except OSError as e:
                logger.debug(f"Lock acquisition error for {self.target.name}: {e}")
                return False

            try:
                os.write(fd, str(os.getpid()).encode("ascii"))
            finally:
                os.close(fd)
            self.acquired = True
            return True

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self.acquired:
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.debug(f"Lock for {self.target.name} already released")
        self.acquired = False

    def read_owner(self) -> Optional[int]:
        return _read_pid(self.lock_path)

    def is_stale(self) -> bool:
        """True if the lock's recorded owner process no longer exists."""
        return _marker_is_stale(self.lock_path)

    def force_release(self, max_age: Optional[float] = None) -> bool:
        """Remove a stale lock by moving it aside first, then deleting.

        The rename succeeds for exactly one contender, so two processes never
        both delete a lock that a third has just recreated. Between the stale
        check and the rename another process may have recreated the lock, so
        the moved marker is checked again; a live (or still empty, fresh)
        marker is linked back into place, which never overwrites a lock taken
        in the meantime. If one was, the moved owner loses its lock: the
        remaining gap of this scheme.

        Args:
            max_age: Also release a marker older than this many seconds,
                whatever its owner

        Returns:
            True if the lock was removed
        """
        marker = self.lock_path.with_name(f"{self.lock_path.name}.stale.{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, marker)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug(f"Could not move stale lock for {self.target.name}: {e}")
            return False

        try:
            if not _marker_is_stale(marker, max_age):
                try:
                    os.link(marker, self.lock_path)
                    logger.debug(f"Lock for {self.target.name} was retaken, put it back")
                except FileExistsError:
                    logger.debug(f"Lock for {self.target.name} was retaken twice, could not put it back")
                except OSError as e:
                    logger.debug(f"Could not put back lock for {self.target.name}: {e}")
                return False
        finally:
            marker.unlink(missing_ok=True)
        logger.debug(f"Released stale lock for {self.target.name}")
        return True


def _describe(path: Path, debug: bool) -> str:
    return str(path) if debug else path.name


def _replace_locked(path: Path, data: bytes, debug: bool, mode: int) -> None:
    """Write-temp, fsync, rename. Caller must hold the lock for ``path``."""
    tmp_path = _tmp_name_for(path)
    renamed = False
    try:
        existing_parent = get_existing_parent(path)
        if path.exists() and existing_parent is not None:
            if not is_same_filesystem(existing_parent, path):
                logger.warning(
                    f"{path.name} is on a different filesystem than {existing_parent.name}; "
                    "rename may not be atomic"
                )

        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        fsync_directory(path.parent)
        os.replace(tmp_path, path)
        renamed = True
        fsync_directory(path.parent)

    except OSError as e:
        raise AtomicWriteError(
            f"Failed to write {_describe(path, debug)}: {e.strerror or e.__class__.__name__}"
        ) from e
    finally:
        if not renamed:
            tmp_path.unlink(missing_ok=True)


def write_atomic(
    path: Path,
    content: Union[str, bytes],
    *,
    debug: bool = False,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    mode: int = 0o600,
) -> None:
    """Atomically replace ``path`` with ``content``.

    Args:
        path: Destination file
        content: Full new content (str is encoded as UTF-8)
        debug: Include full paths in error messages
        lock_timeout: Seconds to wait for the advisory lock
        mode: Permission bits for the new file

    Raises:
        LockTimeoutError: If the lock is held by a live process past the timeout
        AtomicWriteError: If any step fails; the temp file is removed and the
            destination keeps its previous content
    """
    path = Path(path)
    data = content.encode("utf-8") if isinstance(content, str) else content

    with FileLock(path, timeout=lock_timeout):
        _replace_locked(path, data, debug, mode)


def update_atomic(
    path: Path,
    transform: Callable[[Optional[bytes]], Union[str, bytes]],
    *,
    debug: bool = False,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    mode: int = 0o600,
) -> None:
    """Read-modify-write ``path`` under one lock.

    ``transform`` receives the current bytes (None if the file is missing) and
    returns the full new content. Used for the event log and the trash index,
    where two writers must not both read the same old content.
    """
    path = Path(path)

    with FileLock(path, timeout=lock_timeout):
        try:
            current: Optional[bytes] = path.read_bytes()
        except FileNotFoundError:
            current = None
        except OSError as e:
            raise AtomicWriteError(
                f"Failed to read {_describe(path, debug)}: {e.strerror or e.__class__.__name__}"
            ) from e
        content = transform(current)
        data = content.encode("utf-8") if isinstance(content, str) else content
        _replace_locked(path, data, debug, mode)


def relocate_file(src: Path, dst: Path, *, debug: bool = False) -> None:
    """Move ``src`` to ``dst`` with a single rename, refusing to overwrite.

    The destination is locked for the duration so a concurrent writer cannot
    slip a file in between the existence check and the rename.

    Raises:
        FileExistsError: If ``dst`` already exists
        FileNotFoundError: If ``src`` is missing
        AtomicWriteError: If the rename crosses filesystems
    """
    src = Path(src)
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    with FileLock(dst):
        if dst.exists():
            raise FileExistsError(errno.EEXIST, "Destination already exists", _describe(dst, debug))
        try:
            os.rename(src, dst)
        except OSError as e:
            if e.errno == errno.EXDEV:
                raise AtomicWriteError(
                    f"Cannot move {_describe(src, debug)} across filesystems"
                ) from e
            raise
        fsync_directory(dst.parent)
        if src.parent != dst.parent:
            fsync_directory(src.parent)


def cleanup_orphans(
    directory: Path,
    tmp_max_age: float = ORPHAN_TMP_MAX_AGE_SECONDS,
    lock_max_age: float = STALE_LOCK_MAX_AGE_SECONDS,
) -> int:
    """Remove leftovers of interrupted writes from ``directory``.

    Deletes temp files from ``write_atomic`` older than ``tmp_max_age``, moved-
    aside stale lock markers, and lock files that are older than
    ``lock_max_age`` or whose owner is dead.

    Returns:
        Number of files removed
    """
    if not directory.is_dir():
        return 0

    cleaned = 0
    now = time.time()

    for entry in directory.iterdir():
        name = entry.name
        try:
            if _TMP_NAME_RE.search(name) or _STALE_MARKER_RE.search(name):
                if now - entry.stat().st_mtime > tmp_max_age:
                    entry.unlink()
                    cleaned += 1
                    logger.debug(f"Cleaned orphaned temp file: {name}")
            elif name.endswith(LOCK_SUFFIX):
                lock = FileLock(entry.with_name(name[: -len(LOCK_SUFFIX)]))
                too_old = now - entry.stat().st_mtime > lock_max_age
                if (too_old or lock.is_stale()) and lock.force_release(lock_max_age):
                    cleaned += 1
                    logger.debug(f"Cleaned stale lock file: {name}")
        except OSError as e:
            # Individual file errors are non-critical
            logger.debug(f"Could not clean {name}: {e}")

    return cleaned
