"""Age-bounded read cache that refreshes itself in the background."""

from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from logging import getLogger
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

log = getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CacheState(StrEnum):
    EMPTY = "empty"
    POPULATING = "populating"
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class CacheRead[V]:
    value: V | None
    is_stale: bool
    state: CacheState
    loaded_at: datetime | None = None


@dataclass(slots=True)
class _Slot[V]:
    value: V | None = None
    loaded_at: datetime | None = None
    refreshing: bool = False
    invalidated: bool = False


class StalenessCache[K: Hashable, V]:
    """Serve the best-known value immediately and refresh stale keys asynchronously.

    ``get`` never waits on the refresh callable. A read of a missing, invalidated or
    expired key is flagged ``is_stale`` and schedules one refresh on the executor;
    further stale reads coalesce onto that in-flight refresh. A failed refresh keeps
    the previous value and lets the next read try again.
    """

    def __init__(
        self,
        *,
        refresh: Callable[[K], V],
        ttl: timedelta,
        executor: Executor | None = None,
        max_workers: int = 4,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._refresh = refresh
        self._ttl = ttl
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="regwatch-resync"
        )
        self._clock = clock
        self._slots: dict[K, _Slot[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> CacheRead[V]:
        with self._lock:
            slot = self._slots.setdefault(key, _Slot())
            stale = self._is_stale(slot)
            schedule = stale and not slot.refreshing
            if schedule:
                slot.refreshing = True
            read = CacheRead(
                value=slot.value,
                is_stale=stale,
                state=self._state_of(slot),
                loaded_at=slot.loaded_at,
            )
        if schedule:
            self._schedule(key)
        return read

    def put(self, key: K, value: V, *, loaded_at: datetime | None = None) -> None:
        with self._lock:
            slot = self._slots.setdefault(key, _Slot())
            slot.value = value
            slot.loaded_at = loaded_at or self._clock()
            slot.invalidated = False

    def invalidate(self, key: K) -> None:
        """Mark ``key`` stale; the value keeps being served until a refresh lands."""

        with self._lock:
            slot = self._slots.get(key)
            if slot is not None:
                slot.invalidated = True

    def state(self, key: K) -> CacheState:
        with self._lock:
            slot = self._slots.get(key)
            return CacheState.EMPTY if slot is None else self._state_of(slot)

    def refreshing(self) -> list[K]:
        with self._lock:
            return [key for key, slot in self._slots.items() if slot.refreshing]

    def close(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _is_stale(self, slot: _Slot[V]) -> bool:
        if slot.value is None or slot.loaded_at is None or slot.invalidated:
            return True
        return self._clock() - slot.loaded_at > self._ttl

    def _state_of(self, slot: _Slot[V]) -> CacheState:
        if slot.refreshing:
            return CacheState.POPULATING
        if slot.value is None:
            return CacheState.EMPTY
        return CacheState.STALE if self._is_stale(slot) else CacheState.FRESH

    def _schedule(self, key: K) -> None:
        try:
            self._executor.submit(self._run_refresh, key)
        except RuntimeError:
            # executor already shut down
            log.warning("Cannot schedule refresh for %r; cache is closed", key)
            with self._lock:
                self._slots[key].refreshing = False

    def _run_refresh(self, key: K) -> None:
        try:
            value = self._refresh(key)
        except Exception:
            log.exception("Background refresh failed for %r", key)
            with self._lock:
                self._slots[key].refreshing = False
            return
        with self._lock:
            slot = self._slots[key]
            slot.value = value
            slot.loaded_at = self._clock()
            slot.refreshing = False
            slot.invalidated = False
        log.debug("Refreshed cache entry %r", key)
