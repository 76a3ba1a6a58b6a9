"""Per-call time budget and cancellation checks."""

import threading
import time
from typing import Optional

from .errors import OperationCancelledError, OperationTimeoutError


class Deadline:
    """Tracks the remaining budget of a caller-supplied timeout.

    A ``timeout`` of None means no limit; ``remaining()`` then returns None so
    it can be passed straight through to blocking calls.
    """

    def __init__(self, timeout: Optional[float] = None, cancel: Optional[threading.Event] = None):
        self.timeout = timeout
        self.cancel = cancel
        self._expires = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        left = self._expires - time.monotonic()
        if left <= 0:
            raise OperationTimeoutError(
                f"Operation exceeded its {self.timeout}s budget", timeout=self.timeout
            )
        return left

    def check(self) -> None:
        """Raise if the caller cancelled or the budget is spent."""
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelledError("Operation cancelled by caller")
        self.remaining()
