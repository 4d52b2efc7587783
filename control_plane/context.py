"""
Request-scoped deadline and cancellation token.

Ingress creates one RequestContext per request. Stores call check() at
entry; long scans poll expired() and return partial results.
"""

import threading
import time
from typing import Optional

from .errors import DeadlineExceeded, RequestCancelled


class RequestContext:
    """Deadline plus cooperative cancellation flag."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds else None
        )
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "RequestContext":
        """A context with no deadline."""
        return cls(None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        if self._deadline is None:
            return False
        return time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise if the request was cancelled or its deadline passed."""
        if self.cancelled:
            raise RequestCancelled("request cancelled")
        if self.expired():
            raise DeadlineExceeded("request deadline exceeded")


def ensure_context(ctx: Optional[RequestContext]) -> RequestContext:
    return ctx if ctx is not None else RequestContext.background()
