"""
In-process status events for the surrounding application.

The sync manager emits ``sync:start``, ``sync:success`` and ``sync:error``;
UI layers subscribe to whatever they need.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

SYNC_START = "sync:start"
SYNC_SUCCESS = "sync:success"
SYNC_ERROR = "sync:error"

Payload = Dict[str, Any]
Handler = Callable[[str, Payload], None]


class EventEmitter:
    """Topic-based event emitter ("*" subscribes to everything)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler. Returns a function that unsubscribes it."""
        with self._lock:
            self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

    def emit(self, event: str, payload: Payload = None) -> None:
        handlers: List[Handler] = []
        with self._lock:
            handlers.extend(self._handlers.get(event, []))
            handlers.extend(self._handlers.get("*", []))
        for handler in handlers:
            try:
                handler(event, payload or {})
            except Exception as exc:
                logger.error("Event handler failed for '%s': %s", event, exc)
