from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from regwatch.domain.staleness import CacheRead, CacheState, StalenessCache
from tests.helpers.executors import RecordingExecutor
from tests.helpers.registry import FixedClock

if TYPE_CHECKING:
    from collections.abc import Callable

TTL = timedelta(hours=12)


def _cache(
    refresh: Callable[[str], str],
    clock: FixedClock,
) -> tuple[StalenessCache[str, str], RecordingExecutor]:
    executor = RecordingExecutor()
    cache = StalenessCache(refresh=refresh, ttl=TTL, executor=executor, clock=clock)
    return cache, executor


def test_concurrent_stale_reads_schedule_one_refresh(clock: FixedClock) -> None:
    cache, executor = _cache(lambda key: f"fresh {key}", clock)
    cache.put("0301", "old", loaded_at=clock() - timedelta(hours=13))
    barrier = threading.Barrier(10)
    reads: list[CacheRead[str]] = []
    reads_lock = threading.Lock()

    def reader() -> None:
        barrier.wait()
        read = cache.get("0301")
        with reads_lock:
            reads.append(read)

    threads = [threading.Thread(target=reader) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(executor.submitted) == 1
    assert len(reads) == 10
    assert all(read.is_stale for read in reads)
    assert {read.value for read in reads} == {"old"}
    assert cache.refreshing() == ["0301"]


def test_completed_refresh_serves_fresh_value(clock: FixedClock) -> None:
    cache, executor = _cache(lambda key: f"fresh {key}", clock)
    cache.put("0301", "old", loaded_at=clock() - timedelta(hours=13))
    cache.get("0301")

    executor.run_pending()
    read = cache.get("0301")

    assert read.value == "fresh 0301"
    assert read.is_stale is False
    assert read.state is CacheState.FRESH
    assert read.loaded_at == clock()
    assert executor.submitted == []
    assert cache.refreshing() == []


def test_entry_within_ttl_is_not_refreshed(clock: FixedClock) -> None:
    cache, executor = _cache(lambda key: key, clock)
    cache.put("0301", "value")

    clock.advance(TTL)
    read = cache.get("0301")

    assert read.is_stale is False
    assert executor.submitted == []

    clock.advance(timedelta(seconds=1))
    assert cache.get("0301").is_stale is True


def test_failed_refresh_keeps_value_and_allows_retry(
    clock: FixedClock, caplog: pytest.LogCaptureFixture
) -> None:
    calls: list[str] = []

    def refresh(key: str) -> str:
        calls.append(key)
        raise RuntimeError("registry database unavailable")

    cache, executor = _cache(refresh, clock)
    cache.put("0301", "old", loaded_at=clock() - timedelta(days=1))
    cache.get("0301")

    executor.run_pending()
    retry = cache.get("0301")

    assert calls == ["0301"]
    assert retry.value == "old"
    assert retry.is_stale is True
    assert len(executor.submitted) == 1
    assert "Background refresh failed" in caplog.text


def test_invalidate_marks_value_stale_until_refreshed(clock: FixedClock) -> None:
    cache, executor = _cache(lambda key: f"reloaded {key}", clock)
    cache.put("0301", "value")

    cache.invalidate("0301")
    read = cache.get("0301")

    assert read.value == "value"
    assert read.is_stale is True
    executor.run_pending()
    assert cache.get("0301").value == "reloaded 0301"


def test_missing_key_reports_populating(clock: FixedClock) -> None:
    cache, executor = _cache(lambda key: key, clock)

    assert cache.state("4601") is CacheState.EMPTY
    read = cache.get("4601")

    assert read.value is None
    assert read.is_stale is True
    assert read.state is CacheState.POPULATING
    assert len(executor.submitted) == 1


def test_owned_executor_runs_refresh_in_background(clock: FixedClock) -> None:
    done = threading.Event()

    def refresh(key: str) -> str:
        done.set()
        return key.upper()

    cache: StalenessCache[str, str] = StalenessCache(refresh=refresh, ttl=TTL, clock=clock)
    try:
        cache.get("oslo")
        assert done.wait(timeout=5)
    finally:
        cache.close(wait=True)

    assert cache.get("oslo").value == "OSLO"


def test_closed_cache_stops_scheduling(
    clock: FixedClock, caplog: pytest.LogCaptureFixture
) -> None:
    cache: StalenessCache[str, str] = StalenessCache(refresh=str.upper, ttl=TTL, clock=clock)
    cache.close(wait=True)

    read = cache.get("oslo")

    assert read.is_stale is True
    assert cache.refreshing() == []
    assert "cache is closed" in caplog.text
