"""
Cancellation handle shared by every stage of a pull
"""

import signal
import threading
from contextlib import contextmanager
from typing import Optional

from stax.errors import Cancelled


class CancellationToken:
    """
    A one-shot cancellation signal. The coordinator owns the token; stages
    poll it between units of work and pass it to blocking calls.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise Cancelled(stage)

    def wait(self, timeout: float) -> bool:
        """
        Sleeps up to timeout seconds; returns True if cancelled meanwhile
        """
        return self._event.wait(timeout)


@contextmanager
def cancel_on_interrupt(token: CancellationToken):
    """
    Routes SIGINT to the token for the duration of the block.
    Only installs the handler from the main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum, frame):
        print("\n⚠️ Interrupt received, cancelling...")
        token.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)
