from __future__ import annotations

import threading
import time
from typing import Optional

from harbormaster.core.errors import DeadlineExceededError, OperationCancelledError


class OperationContext:
    """
    Cancellation flag plus optional deadline for one logical operation.

    The dispatch layer creates one per request; every engine call checks it
    first so that a disconnected or timed-out caller stops issuing work.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._cancelled = threading.Event()
        self.deadline: Optional[float] = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def background(cls) -> "OperationContext":
        return cls()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelledError("operation cancelled by caller")
        if self.expired:
            raise DeadlineExceededError("operation deadline exceeded")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        return self._cancelled.wait(timeout)
