from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Iterator

from services.repository import Scope


logger = logging.getLogger(__name__)


class ScopeLeases:
    """In-process generation leases, one holder per (school, year, term)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders: dict[Scope, uuid.UUID] = {}

    def try_acquire(self, scope: Scope, job_id: uuid.UUID) -> bool:
        with self._lock:
            holder = self._holders.get(scope)
            if holder is not None and holder != job_id:
                logger.info("Lease for %s held by job %s; rejecting job %s", scope, holder, job_id)
                return False
            self._holders[scope] = job_id
            return True

    def release(self, scope: Scope, job_id: uuid.UUID) -> None:
        with self._lock:
            if self._holders.get(scope) == job_id:
                del self._holders[scope]

    def holder(self, scope: Scope) -> uuid.UUID | None:
        with self._lock:
            return self._holders.get(scope)


class VersionLocks:
    """Single-writer lock per schedule version."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[uuid.UUID, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, version_id: uuid.UUID) -> Iterator[None]:
        with self._guard:
            lock = self._locks[version_id]
        with lock:
            yield

    @contextmanager
    def hold_many(self, *version_ids: uuid.UUID | None) -> Iterator[None]:
        """Hold several version locks, always acquired in id order."""

        ordered = sorted({v for v in version_ids if v is not None}, key=str)
        with ExitStack() as stack:
            for vid in ordered:
                stack.enter_context(self.hold(vid))
            yield
