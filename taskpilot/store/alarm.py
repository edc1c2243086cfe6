"""One-shot dispatch alarm, one per store."""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from loguru import logger


class Alarm(Protocol):
    def arm(self, delay: float) -> None: ...

    def cancel(self) -> None: ...


class ThreadingAlarm:
    """
    A single pending timer. Arming while a timer is pending keeps whichever
    deadline is earlier, so a long reap interval never postpones a dispatch.
    """

    def __init__(self, callback: Callable[[], object], name: str = "dispatch"):
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._deadline: float | None = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def arm(self, delay: float) -> None:
        deadline = time.monotonic() + delay
        with self._lock:
            if self._timer is not None and self._deadline is not None and self._deadline <= deadline:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(delay, self._fire)
            self._timer.daemon = True
            self._timer.name = f"alarm-{self._name}"
            self._deadline = deadline
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._deadline = None

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            self._deadline = None
        try:
            self._callback()
        except Exception:
            logger.exception(f"[STORE] Alarm handler for {self._name} failed")
