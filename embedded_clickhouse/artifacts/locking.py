"""Cross-thread and cross-process install locks for the artifact cache."""

import fcntl
import threading
import time
from pathlib import Path
from typing import Callable, Dict, IO, Optional

from ..core.enums import LockState
from ..core.errors import InstallLockTimeoutError
from ..core.log import get_logger

logger = get_logger(__name__)

# flock is per open file description, so threads of one process must also
# be serialized in-process; one lock object per lock file path
_thread_locks: Dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = _thread_locks[key] = threading.Lock()
        return lock


class InstallLock:
    """Exclusive advisory lock on one cache key.

    Held by at most one thread in one process at a time. Acquisition polls a
    non-blocking ``flock`` until ``timeout`` expires.
    """

    def __init__(
        self,
        lock_path: Path,
        timeout: float = 600.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._lock_file: Optional[IO[str]] = None
        self._thread_lock: Optional[threading.Lock] = None
        self.state = LockState.UNLOCKED

    def acquire(self) -> None:
        """Acquire the lock or raise InstallLockTimeoutError."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self._clock()

        thread_lock = _thread_lock_for(self.lock_path)
        if not thread_lock.acquire(timeout=self.timeout):
            raise self._timeout_error()
        self._thread_lock = thread_lock

        try:
            while True:
                lock_file = open(self.lock_path, "a+", encoding="utf-8")
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    lock_file.close()
                    if self._clock() - started >= self.timeout:
                        raise self._timeout_error() from None
                    self._sleep(self.poll_interval)
                    continue
                except OSError:
                    lock_file.close()
                    raise
                self._lock_file = lock_file
                break
        except BaseException:
            self._thread_lock = None
            thread_lock.release()
            raise

        self.state = LockState.LOCKED
        logger.debug("Acquired install lock %s", self.lock_path)

    def release(self) -> None:
        """Release the lock; releasing an unheld lock is a no-op."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
            except OSError as e:
                logger.debug("Error unlocking %s: %s", self.lock_path, e)
            finally:
                self._lock_file.close()
                self._lock_file = None
        if self._thread_lock is not None:
            self._thread_lock.release()
            self._thread_lock = None
        if self.state is LockState.LOCKED:
            logger.debug("Released install lock %s", self.lock_path)
        self.state = LockState.UNLOCKED

    def _timeout_error(self) -> InstallLockTimeoutError:
        return InstallLockTimeoutError(
            f"Timed out after {self.timeout}s waiting for install lock {self.lock_path.name}",
            timeout=self.timeout,
            details={"lock": str(self.lock_path)},
        )

    def __enter__(self) -> "InstallLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False
