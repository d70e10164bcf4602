"""Cancellation token shared by every suspending operation."""

import threading
from typing import Callable, Optional


class CancellationToken:
    """Thread-safe cancellation flag that doubles as an interruptible sleep.

    An optional ``external_check`` callable is polled on every wait, which
    lets cancellation requested by another process (through the deployment
    store) reach a running deployment.
    """

    def __init__(self, external_check: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self._external_check = external_check
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._external_check and self._external_check():
            self.cancel("cancel requested through deployment store")
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        if self.cancelled:
            return True
        if timeout > 0:
            self._event.wait(timeout)
        return self.cancelled
