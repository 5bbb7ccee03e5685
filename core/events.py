"""
ParkWise – error channel

Failures that happen away from the caller (a live query dropped by the
database, a write rejected after the UI moved on) are published here so the
dashboards can surface them without blocking.
"""
from __future__ import annotations
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List

from loguru import logger

PERMISSION_ERROR = "permission-error"
WRITE_ERROR      = "write-error"

Handler = Callable[[Exception], None]


class ErrorEmitter:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it again."""
        with self._lock:
            self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler):
        with self._lock:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

    def emit(self, event: str, error: Exception):
        with self._lock:
            handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                handler(error)
            except Exception:
                logger.exception(f"Error handler for '{event}' raised")


class RecentErrors:
    """Bounded feed of reported errors, newest first."""

    def __init__(self, emitter: ErrorEmitter, maxlen: int = 50):
        self._items: Deque[dict] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._unsubscribe = [
            emitter.on(event, self._recorder(event))
            for event in (PERMISSION_ERROR, WRITE_ERROR)
        ]

    def _recorder(self, event: str) -> Handler:
        def record(error: Exception):
            item = {
                "event": event,
                "kind": type(error).__name__,
                "message": str(error),
                "path": getattr(error, "path", ""),
                "operation": getattr(error, "operation", ""),
                "at": datetime.now(timezone.utc).isoformat(),
            }
            with self._lock:
                self._items.appendleft(item)
        return record

    def items(self) -> List[dict]:
        with self._lock:
            return list(self._items)

    def clear(self):
        with self._lock:
            self._items.clear()

    def close(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []


error_emitter = ErrorEmitter()
