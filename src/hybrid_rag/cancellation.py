from __future__ import annotations
from typing import Optional
import threading
import time

from .errors import Canceled


class CancelToken:
    """
    Cancellation signal with an optional deadline.

    Passed to every blocking call. A child token is cancelled when its parent
    is, but cancelling a child leaves the parent untouched.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["CancelToken"] = None,
    ):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline

    def child(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken(timeout=timeout, parent=self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self.cancelled:
            raise Canceled(f"{what} cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True if cancelled meanwhile."""
        end = time.monotonic() + max(0.0, seconds)
        while not self.cancelled:
            left = end - time.monotonic()
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            if left <= 0:
                break
            # poll so parent cancellation is observed too
            self._event.wait(min(left, 0.05))
        return self.cancelled


def ensure_token(token: Optional[CancelToken]) -> CancelToken:
    return token if token is not None else CancelToken()
