import asyncio
from typing import Optional


class JobCancelledError(Exception):
    pass


class CancellationToken:
    """
    Cooperative cancellation flag handed to everything that runs for one job.
    Work checks it before each side effect and at every suspension point.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason)
