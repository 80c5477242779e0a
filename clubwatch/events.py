from __future__ import annotations
import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

ALERT_TRIGGERED    = "alert.triggered"
ALERT_RESOLVED     = "alert.resolved"
ALERT_ACKNOWLEDGED = "alert.acknowledged"

Handler = Callable[[Dict[str, Any]], None]

class EventHub:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, event: str, handler: Handler) -> None:
        with self._lock: self._handlers[event].append(handler)
        log.debug(f"Subscribed {getattr(handler, '__name__', handler)!s} to '{event}'")

    def unsubscribe(self, event: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler); return True
        return False

    def publish(self, event: str, payload: Dict[str, Any]) -> int:
        with self._lock: handlers = list(self._handlers.get(event, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(payload); delivered += 1
            except Exception as e:
                log.error(f"Handler for '{event}' failed: {e}", exc_info=True)
        return delivered
