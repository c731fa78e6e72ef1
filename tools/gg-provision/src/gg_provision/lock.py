"""Single-run guard for a runtime root."""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from .errors import RunLockedError

logger = logging.getLogger(__name__)


class RunLock:
    """Exclusive, non-blocking ``flock`` held for the duration of a run.

    The lock is released by the kernel when the process dies, so a killed
    run never blocks the next one.
    """

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = Path(lock_file)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        """Check if this instance holds the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            RunLockedError: If another process holds it
            OSError: If the lock file cannot be created
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise RunLockedError("another provisioning run is active", str(self.lock_file)) from e
        except OSError:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired run lock %s", self.lock_file)

    def release(self) -> None:
        """Drop the lock if held."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released run lock %s", self.lock_file)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
