"""Cooperative deadlines for blocking operations."""

import time
from types import TracebackType
from typing import Literal

from ..exceptions import OperationTimeoutError
from .logging import get_logger

logger = get_logger(__name__)


class Deadline:
    """Absolute point in time by which an operation must finish.

    Blocking loops call :meth:`check` between steps and use :meth:`bound` to
    cap their own waits, so expiry cancels work cooperatively.
    """

    def __init__(self, timeout: float | None):
        self.timeout = timeout
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def bound(self, seconds: float) -> float:
        """Cap a wait so that it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return seconds
        return min(seconds, remaining)

    def check(self, operation: str = "operation") -> None:
        """Raise if the deadline has passed.

        Raises:
            OperationTimeoutError: If the deadline expired
        """
        if self.expired():
            logger.warning("Deadline exceeded", operation=operation, timeout=self.timeout)
            raise OperationTimeoutError(f"{operation} timed out after {self.timeout:.1f}s")

    def __enter__(self) -> "Deadline":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        if exc_type is None and self.expired():
            logger.debug("Operation finished at or past its deadline", timeout=self.timeout)
        return False

