"""Deadline-bound cancellation scope for background job processing.

A job keeps working after its HTTP response has been sent, so it cannot share
the request's lifetime. Each accepted job gets a fresh ``ProcessingContext``
with its own deadline; every stage checks it before doing external work and
passes ``context.is_cancelled`` down to collaborators as their ``should_cancel``.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from dubbing.errors import CANCEL_REQUESTED, PipelineError


CancelCheck = Callable[[], bool]

DEADLINE_EXCEEDED = "deadline exceeded"


class ProcessingContext:
    def __init__(self, timeout_seconds: float | None = None, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason = ""
        self._deadline: float | None = None
        if timeout_seconds is not None and timeout_seconds > 0:
            self._deadline = clock() + float(timeout_seconds)

    @property
    def reason(self) -> str:
        self.is_cancelled()
        with self._lock:
            return self._reason

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the scope. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = str(reason or "cancelled")
            self._event.set()
            return True

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled, the deadline passes, or ``timeout`` elapses."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.is_cancelled()

    def raise_if_cancelled(self, stage: str) -> None:
        if self.is_cancelled():
            raise PipelineError(stage, CANCEL_REQUESTED, f"processing cancelled: {self.reason}")
