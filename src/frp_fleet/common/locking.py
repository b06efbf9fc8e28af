"""Advisory file locks serializing concurrent frp-fleet invocations."""

import fcntl
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from ..exceptions import OperationTimeoutError, PermissionDeniedError, StorageError
from .deadline import Deadline
from .logging import get_logger

logger = get_logger(__name__)

LOCK_POLL_INTERVAL = 0.05


@contextmanager
def file_lock(path: Path, deadline: Deadline | None = None) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``path`` for the duration of the block.

    The lock is polled non-blockingly so that waiting observes the deadline.

    Raises:
        OperationTimeoutError: If the lock is still held elsewhere when the deadline expires
        PermissionDeniedError: If the lock file cannot be opened
    """
    deadline = deadline or Deadline.never()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle: IO[str] = open(path, "a+")
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot open lock file {path}: {e}") from e
    except OSError as e:
        raise StorageError(f"Cannot open lock file {path}: {e}") from e

    try:
        waited = False
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if not waited:
                    logger.debug("Waiting for lock", path=str(path))
                    waited = True
                if deadline.expired():
                    raise OperationTimeoutError(
                        f"Timed out waiting for lock {path}; another frp-fleet invocation holds it"
                    ) from None
                time.sleep(deadline.bound(LOCK_POLL_INTERVAL))
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()
