"""Cooperative cancellation."""
import threading
from typing import Optional


class CancellationToken:
    """
    Flag shared between a caller and a running operation.

    The operation checks it between units of work; a unit that has already
    started is allowed to finish. Safe to cancel from another thread.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
