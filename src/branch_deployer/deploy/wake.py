"""Coalescing wake-up signal between task producers and the dispatcher."""

from __future__ import annotations

import threading


class WakeSignal:
    """Single-slot notification.

    ``notify`` never blocks; repeated notifications before the dispatcher
    consumes one collapse into a single wake. ``wait`` always returns once
    the timeout elapses, so a signal raised before the waiter arrived is
    still observed on the next iteration at the latest.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._pending = False

    def notify(self) -> None:
        with self._condition:
            self._pending = True
            self._condition.notify_all()

    def wait(self, timeout: float | None) -> bool:
        """Block until notified or ``timeout`` seconds pass.

        Returns True when a notification was consumed, False on timeout.
        """

        with self._condition:
            if not self._pending:
                self._condition.wait_for(lambda: self._pending, timeout=timeout)
            notified = self._pending
            self._pending = False
            return notified

    @property
    def is_pending(self) -> bool:
        with self._condition:
            return self._pending
