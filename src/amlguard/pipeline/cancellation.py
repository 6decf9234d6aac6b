"""
Cooperative cancellation for detection runs.

Graph traversals call ``check()`` on every expansion; the token is shared by
all detectors in one run and may be cancelled from the event loop thread
while detectors run in worker threads.
"""

import threading
import time
from typing import Optional

from amlguard.errors import OperationCancelled


class CancellationToken:
    """Cancellation flag with an optional deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def check(self) -> None:
        """Raise OperationCancelled if the run should stop."""
        if self.cancelled:
            raise OperationCancelled(self.reason)


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.check()
