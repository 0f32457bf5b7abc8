"""
Global shutdown broadcast.

Every relay subscribes its close callback; trigger() fires all of them once.
A subscriber that arrives after the trigger is fired immediately, so a relay
created while the process is tearing down never outlives it.
"""

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger("gamerelay.shutdown")


class ShutdownSignal:
    """One-shot broadcast signal with callback fan-out."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[], object]] = []

    def subscribe(self, callback: Callable[[], object]) -> bool:
        """
        Register a callback for the broadcast.

        Returns:
            False if the signal had already fired; the callback has then
            been invoked synchronously.
        """
        with self._lock:
            if not self._event.is_set():
                self._subscribers.append(callback)
                return True
        callback()
        return False

    def unsubscribe(self, callback: Callable[[], object]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def trigger(self) -> bool:
        """Fire the broadcast. Only the first call has an effect."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            subscribers, self._subscribers = self._subscribers, []

        for callback in subscribers:
            try:
                callback()
            except Exception as e:
                logger.error(f"[SHUTDOWN] Subscriber failed: {e}")
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
