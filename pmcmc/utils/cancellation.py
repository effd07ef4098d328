"""Cooperative cancellation for sweeps and chains.

Sweeps check the token before every model step and chains before every
iteration; nothing is interrupted mid-step.
"""

import threading

from ..errors import SweepCancelled


class CancellationToken:
    """Thread-safe flag that stops a running sweep or chain at the next check."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "sweep") -> None:
        if self._event.is_set():
            raise SweepCancelled(f"Cancelled during {where}")
