"""
Config Root Lock - One in-flight transaction per configuration root

Two layers:
- an in-process threading.Lock per resolved root (callers in this process
  queue up on it without polling)
- an exclusive flock on a lock file next to the root ({root}.lock), for
  other agent processes

The lock file sits OUTSIDE the root because the root itself is renamed
during promotion. It is never unlinked: the kernel drops the flock when the
holder closes it or dies, so a crashed holder never leaves a lock behind and
no staleness check is needed. While held, the file records pid/host/owner of
the holder for diagnostics; it is truncated on release.
"""

from pathlib import Path
import fcntl
import json
import os
import socket
import threading
import time
from datetime import datetime
from typing import Dict, Optional
import logging

from .errors import LockAcquisitionError

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_process_locks: Dict[str, threading.Lock] = {}


def _process_lock(root: Path) -> threading.Lock:
    key = str(root)
    with _registry_lock:
        lock = _process_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _process_locks[key] = lock
        return lock


class ConfigRootLock:
    """
    Mutual exclusion over a configuration root.

    Usage:
        with ConfigRootLock(root).hold(fingerprint):
            ...
    """

    def __init__(
        self,
        config_root: Path,
        timeout_seconds: Optional[float] = None,
        poll_seconds: float = 0.5
    ):
        """
        Args:
            config_root: Live configuration root
            timeout_seconds: Max wait, None = block until free
            poll_seconds: Retry interval for the file lock
        """
        self.config_root = Path(config_root).resolve()
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.lock_file = self.config_root.with_name(f"{self.config_root.name}.lock")
        self._thread_lock = _process_lock(self.config_root)
        self._fd: Optional[int] = None
        self.holder: Optional[dict] = None

    def acquire(self, owner: str):
        """
        Block until both layers are held.

        Raises:
            LockAcquisitionError: If timeout_seconds elapses first, or the
                lock file cannot be opened
        """
        deadline = None if self.timeout_seconds is None else time.monotonic() + self.timeout_seconds

        wait = -1 if deadline is None else max(0.0, deadline - time.monotonic())
        if not self._thread_lock.acquire(timeout=wait):
            raise LockAcquisitionError(f"timed out waiting for {self.config_root} (in-process)")

        try:
            try:
                fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
            except OSError as e:
                raise LockAcquisitionError(f"cannot open lock file {self.lock_file}: {e}")

            try:
                while not self._try_flock(fd):
                    if deadline is not None and time.monotonic() >= deadline:
                        info = self.read() or {}
                        raise LockAcquisitionError(
                            f"could not lock {self.config_root} after {self.timeout_seconds}s; "
                            f"held by {info.get('owner', 'unknown')} (pid {info.get('pid')})"
                        )
                    time.sleep(self.poll_seconds)
            except BaseException:
                os.close(fd)
                raise
        except BaseException:
            self._thread_lock.release()
            raise

        self._fd = fd
        self._write_holder(owner)
        logger.debug(f"Lock acquired on {self.config_root} for {owner}")

    def release(self):
        try:
            if self._fd is not None:
                try:
                    os.ftruncate(self._fd, 0)
                except OSError as e:
                    logger.warning(f"Could not clear lock file {self.lock_file}: {e}")
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
        finally:
            self._fd = None
            self.holder = None
            self._thread_lock.release()

    def hold(self, owner: str) -> "_Held":
        return _Held(self, owner)

    def read(self) -> Optional[dict]:
        """Holder metadata, None if free or unreadable."""
        try:
            with open(self.lock_file, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            return None

    def _try_flock(self, fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    def _write_holder(self, owner: str):
        metadata = {
            "owner": owner,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.utcnow().isoformat(),
        }
        try:
            os.ftruncate(self._fd, 0)
            os.lseek(self._fd, 0, os.SEEK_SET)
            os.write(self._fd, json.dumps(metadata, indent=2).encode('utf-8'))
        except OSError as e:
            # Metadata is informational; the flock is what excludes
            logger.warning(f"Could not record holder in {self.lock_file}: {e}")
        self.holder = metadata


class _Held:
    """Context manager returned by ConfigRootLock.hold()."""

    def __init__(self, lock: ConfigRootLock, owner: str):
        self.lock = lock
        self.owner = owner

    def __enter__(self):
        self.lock.acquire(self.owner)
        return self.lock

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.lock.release()
        return False
