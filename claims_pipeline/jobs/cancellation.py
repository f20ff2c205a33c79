"""
Cooperative cancellation for background jobs.
"""

import threading


class JobCancelled(Exception):
    """Raised inside a job when its cancellation token has been set."""


class CancellationToken:
    """
    Flag checked by runners between batches.

    A batch that has started always commits or rolls back before the
    token is looked at again.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by request") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self.reason or "cancelled")
