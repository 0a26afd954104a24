"""Cooperative pause and cancellation shared by the coordinator and copy engine."""

import threading
import time
from typing import Optional

from .errors import ExtractionCancelled


class RunControl:
    """
    Pause/cancel token checked at every suspension point.

    A paused caller blocks on a condition variable, not a sleep loop.
    Cancellation wakes paused callers and takes priority over pause, so a
    paused run can be cancelled without resuming it first.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._paused = False
        self._cancelled = False

    @property
    def is_paused(self) -> bool:
        with self._condition:
            return self._paused

    @property
    def is_cancelled(self) -> bool:
        with self._condition:
            return self._cancelled

    def pause(self) -> bool:
        """Request a pause. Returns False if already paused or cancelled."""
        with self._condition:
            if self._paused or self._cancelled:
                return False
            self._paused = True
            return True

    def resume(self) -> bool:
        """Lift a pause. Returns False if not paused."""
        with self._condition:
            if not self._paused:
                return False
            self._paused = False
            self._condition.notify_all()
            return True

    def cancel(self) -> bool:
        """Request cancellation. Returns False if already requested."""
        with self._condition:
            if self._cancelled:
                return False
            self._cancelled = True
            self._condition.notify_all()
            return True

    def raise_if_cancelled(self) -> None:
        with self._condition:
            if self._cancelled:
                raise ExtractionCancelled("Extraction cancelled")

    def checkpoint(self, timeout: Optional[float] = None) -> float:
        """
        Suspension point: block while paused, raise once cancelled.

        Args:
            timeout: Give up waiting after this many seconds (None waits forever)

        Returns:
            Seconds spent paused, so per-file timers can exclude them

        Raises:
            ExtractionCancelled: If cancellation was requested
        """
        with self._condition:
            if self._cancelled:
                raise ExtractionCancelled("Extraction cancelled")
            if not self._paused:
                return 0.0

            started = time.monotonic()
            self._condition.wait_for(
                lambda: self._cancelled or not self._paused, timeout=timeout
            )
            waited = time.monotonic() - started

            if self._cancelled:
                raise ExtractionCancelled("Extraction cancelled while paused")
            return waited
