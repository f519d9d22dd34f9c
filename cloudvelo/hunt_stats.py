"""Batched updates of hunt statistics.

Many collections update the same hunt record at once. Counts are gathered
in memory per hunt and written to the database as a single update once a
hunt has been idle for a short time.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

UpdateIndex = Callable[[str, str, str, str], None]

UPDATE_PAINLESS_QUERY = """
ctx._source.scheduled += params.scheduled ;
ctx._source.completed += params.completed ;
ctx._source.errors += params.errors ;
"""


class HuntStatsUpdater:
    """Accumulates counters for one hunt."""

    def __init__(self, hunt_id: str, org_id: str, update_index: UpdateIndex):
        self.hunt_id = hunt_id
        self.org_id = org_id
        self._update_index = update_index
        self._lock = threading.Lock()
        self.scheduled = 0
        self.errors = 0
        self.completed = 0

    def inc_scheduled(self) -> None:
        with self._lock:
            self.scheduled += 1

    def inc_error(self) -> None:
        with self._lock:
            self.errors += 1

    def inc_completed(self) -> None:
        with self._lock:
            self.completed += 1

    @staticmethod
    def _render(scheduled: int, completed: int, errors: int) -> str:
        return json.dumps({
            "script": {
                "source": UPDATE_PAINLESS_QUERY,
                "lang": "painless",
                "params": {
                    "scheduled": str(scheduled),
                    "completed": str(completed),
                    "errors": str(errors),
                },
            }
        })

    def build_query(self) -> str:
        """Return the update script for the current counters."""
        with self._lock:
            return self._render(self.scheduled, self.completed, self.errors)

    def flush(self) -> None:
        """Write the counters to the hunts index and reset them."""
        # Keep the lock short: the database call can take a while.
        with self._lock:
            query = self._render(self.scheduled, self.completed, self.errors)
            self.scheduled = 0
            self.completed = 0
            self.errors = 0
        self._update_index(self.org_id, "hunts", self.hunt_id, query)


class HuntStatsManager:
    """Hands out updaters per hunt and flushes them once idle for ``ttl``."""

    def __init__(self, org_id: str, update_index: UpdateIndex,
                 ttl: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.org_id = org_id
        self.ttl = ttl
        self._update_index = update_index
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[HuntStatsUpdater, float]] = {}

    def __enter__(self) -> "HuntStatsManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.purge()

    @staticmethod
    def _flush(updater: HuntStatsUpdater) -> None:
        try:
            updater.flush()
        except Exception as exc:  # noqa: BLE001 - flushing must not stop others
            logger.error("HuntStatsUpdater: %s", exc)

    def update(self, hunt_id: str) -> HuntStatsUpdater:
        """Return the updater for ``hunt_id``, creating one if needed."""
        now = self._clock()
        expired = None
        with self._lock:
            entry = self._entries.get(hunt_id)
            if entry is not None:
                updater, expires_at = entry
                if expires_at > now:
                    self._entries[hunt_id] = (updater, now + self.ttl)
                    return updater
                expired = updater
            updater = HuntStatsUpdater(hunt_id, self.org_id,
                                       self._update_index)
            self._entries[hunt_id] = (updater, now + self.ttl)

        if expired is not None:
            self._flush(expired)
        return updater

    def expire_stale(self) -> int:
        """Flush and drop every idle updater; return how many were flushed."""
        now = self._clock()
        with self._lock:
            stale = [hunt_id for hunt_id, (_, expires_at)
                     in self._entries.items() if expires_at <= now]
            updaters = [self._entries.pop(hunt_id)[0] for hunt_id in stale]
        for updater in updaters:
            self._flush(updater)
        return len(updaters)

    def purge(self) -> None:
        """Flush and drop every updater."""
        with self._lock:
            updaters = [updater for updater, _ in self._entries.values()]
            self._entries.clear()
        for updater in updaters:
            self._flush(updater)