from __future__ import annotations

import logging
import threading
from typing import Callable


logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Owned background thread that runs ``callback`` every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], object]):
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self._callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> bool:
        if self.interval_seconds <= 0:
            return False
        with self._lock:
            if self.running:
                return True
            self._stop = threading.Event()
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self._thread.start()
        logger.debug("[DEBUG] sweeper started name=%s interval=%.3fs", self.name, self.interval_seconds)
        return True

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            logger.debug("[DEBUG] sweeper stopped name=%s", self.name)

    def _loop(self) -> None:
        stop = self._stop
        while not stop.wait(self.interval_seconds):
            try:
                self._callback()
            except Exception:
                logger.exception("[DEBUG] sweeper callback failed name=%s", self.name)
