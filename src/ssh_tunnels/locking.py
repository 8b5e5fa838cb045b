"""Per-host advisory locks.

Concurrent invocations against the same host serialize on
``locks/<host>.lock`` for the ensure, forward and persist steps, so two
``add`` calls cannot hand out the same port or half-apply each other's batch.
"""

import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .common.exceptions import LockTimeoutError
from .common.logging import get_logger
from .common.utils import safe_filename

logger = get_logger(__name__)

_POLL_INTERVAL = 0.1


class HostLock:
    """Advisory flock on a per-host lock file."""

    def __init__(self, locks_dir: Path, timeout: float = 30.0):
        self.locks_dir = locks_dir
        self.timeout = timeout

    def path_for(self, host_id: str) -> Path:
        return self.locks_dir / f"{safe_filename(host_id)}.lock"

    @contextmanager
    def hold(self, host_id: str) -> Iterator[None]:
        """Hold the lock for ``host_id`` for the duration of the block.

        Raises:
            LockTimeoutError: If another process keeps the lock past the timeout
        """
        self.locks_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        lock_path = self.path_for(host_id)
        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            deadline = time.monotonic() + self.timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Timed out waiting for lock on host {host_id}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            logger.debug("Acquired host lock", host=host_id)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Released host lock", host=host_id)
        finally:
            os.close(fd)


class NullLock:
    """Lock with the HostLock interface that never blocks."""

    @contextmanager
    def hold(self, host_id: str) -> Iterator[None]:
        yield
