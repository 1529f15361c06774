from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable


logger = logging.getLogger(__name__)


JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_CANCELLED = "job.cancelled"
VERSION_PUBLISHED = "version.published"
VERSION_ARCHIVED = "version.archived"
CONFLICT_CREATED = "conflict.created"
CONFLICT_RESOLVED = "conflict.resolved"

Subscriber = Callable[[str, dict[str, Any]], None]


class EventBus:
    """In-process fan-out of domain events to an external dispatcher.

    Delivery is best-effort: a failing subscriber is logged and skipped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._closed = False

    def subscribe(self, event_name: str, handler: Subscriber) -> None:
        """Register ``handler`` for ``event_name`` (``"*"`` receives everything)."""
        with self._lock:
            self._subscribers[event_name].append(handler)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Event bus closed; dropping %s", event_name)
                return
            handlers = list(self._subscribers.get(event_name, ())) + list(self._subscribers.get("*", ()))

        logger.debug("Emitting %s %s", event_name, payload)
        for handler in handlers:
            try:
                handler(event_name, payload)
            except Exception:
                logger.exception("Event subscriber failed for %s", event_name)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()
