"""
Change-event plumbing: a subscribable stream and a trailing-edge throttle.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .models import ChangeEvent

logger = logging.getLogger("sopsfs.events")

Listener = Callable[[List[ChangeEvent]], None]


class Subscription:
    """Handle returned by ``EventEmitter.subscribe``; dispose to stop listening."""

    def __init__(self, emitter: "EventEmitter", listener: Listener) -> None:
        self._emitter = emitter
        self._listener = listener

    def dispose(self) -> None:
        self._emitter._remove(self._listener)


class EventEmitter:
    """Delivers batches of change events to every subscribed listener.

    Listener exceptions are logged and do not stop delivery to the
    remaining listeners.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Subscription:
        with self._lock:
            self._listeners.append(listener)
        return Subscription(self, listener)

    def _remove(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def fire(self, events: List[ChangeEvent]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(events)
            except Exception:
                logger.exception("Change listener failed")

    def dispose(self) -> None:
        with self._lock:
            self._listeners.clear()


class Throttle:
    """Trailing-edge throttle around *callback*.

    The first call arms a single-shot timer; calls made while it is armed
    are absorbed. When the timer fires, *callback* runs once and sees the
    state accumulated during the whole window.

    Args:
        interval: Coalescing window in seconds.
        callback: Zero-argument function to run at the end of the window.
    """

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def __call__(self) -> None:
        with self._lock:
            if self._timer is not None:
                return
            self._generation += 1
            self._timer = threading.Timer(self.interval, self._fire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
            self._timer = None
        self._callback()

    def flush(self) -> None:
        """Run a pending callback now instead of waiting for the timer."""
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            self._callback()

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
