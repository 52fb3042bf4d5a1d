from __future__ import annotations

import asyncio
from collections import Counter
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from regwatch.adapters.registry import PaginatedFetcher, normalize_record
from regwatch.config import SyncConfig
from regwatch.domain.detection import MovementDetector
from regwatch.domain.errors import MergeConflictError, StorageUnavailableError
from regwatch.domain.history import HistoryMerger, MergeResult
from regwatch.domain.model import (
    Confidence,
    Gap,
    GapReason,
    Partition,
    RiskLevel,
    RunStatus,
    SyncDomain,
    SyncWatermark,
)
from regwatch.domain.orchestrator import SyncOrchestrator, delta_watermark_key, prioritize_gaps
from tests.helpers.registry import (
    BASE_DATE,
    FakeRegistryApi,
    FixedClock,
    InMemoryRegistryStore,
    registry_record,
    spread_records,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from regwatch.domain.model import AddressRecord, Entity
    from regwatch.domain.ports import RegistryUnitOfWork
    from regwatch.domain.runs import SyncRun

END_2000 = date(2000, 12, 31)
JURISDICTIONS = ("J1", "J2", "J3", "J4", "J5")
CONFIG = SyncConfig(conflict_retry_delay_seconds=0)
JURISDICTION_DOMAIN = SyncDomain(
    registered_from=BASE_DATE, registered_to=END_2000, jurisdictions=JURISDICTIONS
)


def _orchestrator(
    api: FakeRegistryApi,
    store: InMemoryRegistryStore,
    clock: FixedClock,
    *,
    fetcher_cap: int | None = None,
    supports_modified_since: bool = False,
    unit_of_work_factory: Callable[[], RegistryUnitOfWork] | None = None,
    merger: HistoryMerger | None = None,
    detector: MovementDetector | None = None,
    config: SyncConfig = CONFIG,
) -> SyncOrchestrator:
    fetcher = PaginatedFetcher(
        client=api,
        capacity_cap=fetcher_cap or api.capacity_cap,
        page_size=1_000,
        supports_modified_since=supports_modified_since,
    )
    return SyncOrchestrator(
        source=fetcher,
        normalizer=normalize_record,
        unit_of_work_factory=unit_of_work_factory or store.unit_of_work,
        merger=merger,
        detector=detector,
        config=config,
        clock=clock,
    )


def _jurisdiction_records(per_jurisdiction: int = 100) -> list[dict[str, object]]:
    return [
        record
        for jurisdiction in JURISDICTIONS
        for record in spread_records(
            per_jurisdiction, jurisdiction=jurisdiction, prefix=jurisdiction
        )
    ]


def _key(jurisdiction: str | None, start: date = BASE_DATE, end: date = END_2000) -> str:
    return Partition(jurisdiction_id=jurisdiction, registered_from=start, registered_to=end).key


def _full(
    orchestrator: SyncOrchestrator,
    domain: SyncDomain,
    *,
    resume_since: datetime | None = None,
) -> SyncRun:
    return asyncio.run(orchestrator.run_full_population(domain, resume_since=resume_since))


def _partial_run(
    store: InMemoryRegistryStore, clock: FixedClock
) -> tuple[FakeRegistryApi, SyncOrchestrator, SyncRun]:
    api = FakeRegistryApi(_jurisdiction_records(), failing={_key("J3")})
    orchestrator = _orchestrator(api, store, clock)
    return api, orchestrator, _full(orchestrator, JURISDICTION_DOMAIN)


def test_full_population_splits_large_domain_under_cap(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api = FakeRegistryApi(spread_records(25_000))
    orchestrator = _orchestrator(api, store, clock)

    domain = SyncDomain(registered_from=BASE_DATE, registered_to=date(2007, 12, 31))

    run = _full(orchestrator, domain)

    assert run.status is RunStatus.SUCCESS
    assert len(run.partitions_completed) >= 3
    seen = [store.watermarks.items[key].records_seen for key in run.partitions_completed]
    assert all(count < 9_000 for count in seen)
    assert sum(seen) == 25_000
    assert len(store.entities.items) == 25_000
    assert run.entities_created == 25_000
    assert run.gaps == []


def test_failing_jurisdiction_leaves_partial_run_and_gap(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    _, _, run = _partial_run(store, clock)

    assert run.status is RunStatus.PARTIAL
    assert set(run.partitions_failed) == {_key("J3")}
    assert "transient failure" in run.partitions_failed[_key("J3")]
    assert set(store.watermarks.items) == {_key(j) for j in ("J1", "J2", "J4", "J5")}
    (gap,) = store.gaps.pending()
    assert gap.partition_key == _key("J3")
    assert gap.reason is GapReason.TRANSIENT_FAILURE
    assert gap.cursor == 0
    assert len(store.entities.items) == 400


def test_resume_skips_partitions_with_fresh_watermarks(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api, orchestrator, _ = _partial_run(store, clock)
    resume_since = clock()
    api.failing.clear()
    api.page_calls.clear()

    run = _full(
        orchestrator,
        JURISDICTION_DOMAIN,
        resume_since=resume_since,
    )

    assert run.status is RunStatus.SUCCESS
    assert sorted(run.partitions_skipped) == sorted(_key(j) for j in ("J1", "J2", "J4", "J5"))
    assert run.partitions_completed == [_key("J3")]
    assert {key for key, _ in api.page_calls} == {_key("J3")}
    assert len(store.entities.items) == 500


def test_gap_fill_resolves_recovered_gap(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api, orchestrator, _ = _partial_run(store, clock)
    api.failing.clear()

    run = asyncio.run(orchestrator.run_gap_fill())

    assert run.status is RunStatus.SUCCESS
    assert store.gaps.pending() == []
    assert _key("J3") in run.partitions_completed
    assert _key("J3") in store.watermarks.items
    assert len(store.entities.items) == 500


def test_gap_fill_keeps_failing_gap_and_counts_attempt(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    _, orchestrator, _ = _partial_run(store, clock)

    run = asyncio.run(orchestrator.run_gap_fill())

    assert run.status is RunStatus.FAILED
    (gap,) = store.gaps.pending()
    assert gap.attempts == 1
    assert gap.resolved_at is None


def test_failed_count_becomes_gap_without_aborting_run(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api = FakeRegistryApi(_jurisdiction_records(), failing_counts={_key("J3")})
    orchestrator = _orchestrator(api, store, clock)

    run = _full(orchestrator, JURISDICTION_DOMAIN)

    assert run.status is RunStatus.PARTIAL
    assert run.error is None
    assert sorted(run.partitions_completed) == sorted(_key(j) for j in ("J1", "J2", "J4", "J5"))
    assert len(store.entities.items) == 400
    (gap,) = store.gaps.pending()
    assert gap.partition_key == _key("J3")
    assert gap.reason is GapReason.TRANSIENT_FAILURE
    assert "count probe failed" in gap.detail

    api.failing_counts.clear()
    filled = asyncio.run(orchestrator.run_gap_fill())

    assert filled.status is RunStatus.SUCCESS
    assert store.gaps.pending() == []
    assert len(store.entities.items) == 500


def test_cap_refusal_during_fetch_triggers_resplit(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    # the planner believes in 10k, the upstream actually refuses past 3k
    api = FakeRegistryApi(spread_records(5_000), capacity_cap=3_000)
    orchestrator = _orchestrator(api, store, clock, fetcher_cap=10_000)
    domain = SyncDomain(registered_from=BASE_DATE, registered_to=date(2001, 12, 31))

    run = _full(orchestrator, domain)

    assert run.status is RunStatus.SUCCESS
    assert len(store.entities.items) == 5_000
    assert _key(None, BASE_DATE, date(2001, 12, 31)) not in run.partitions_completed
    assert len(run.partitions_completed) >= 2
    assert store.gaps.pending() == []
    # records merged before the refusal are counted once, by the halves
    assert run.records_processed == 5_000
    assert run.entities_created == 5_000


def test_incremental_without_watermark_fails(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    orchestrator = _orchestrator(FakeRegistryApi(spread_records(10)), store, clock)

    run = asyncio.run(orchestrator.run_incremental_delta())

    assert run.status is RunStatus.FAILED
    assert "full population" in run.partitions_failed[delta_watermark_key(None)]
    assert store.entities.items == {}


def test_incremental_filters_client_side_when_upstream_cannot(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    since = datetime(2024, 5, 1, tzinfo=UTC)
    records = spread_records(99)
    records.append(registry_record("M1", last_modified=datetime(2024, 5, 20, tzinfo=UTC)))
    orchestrator = _orchestrator(FakeRegistryApi(records), store, clock)

    run = asyncio.run(orchestrator.run_incremental_delta(since))

    assert run.status is RunStatus.SUCCESS
    assert run.records_processed == 1
    assert run.records_filtered == 99
    assert list(store.entities.items) == ["M1"]
    watermark = store.watermarks.items[delta_watermark_key(None)]
    assert watermark.last_successful_run == clock()
    assert watermark.last_cursor == since.isoformat()


def test_incremental_pushes_filter_upstream_and_resumes_from_watermark(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    since = datetime(2024, 5, 1, tzinfo=UTC)
    store.watermarks.set(SyncWatermark(partition_key=_key(None), last_successful_run=since))
    records = spread_records(99)
    records.append(registry_record("M1", last_modified=datetime(2024, 5, 20, tzinfo=UTC)))
    api = FakeRegistryApi(records)
    orchestrator = _orchestrator(api, store, clock, supports_modified_since=True)

    run = asyncio.run(orchestrator.run_incremental_delta())

    assert run.status is RunStatus.SUCCESS
    assert run.records_processed == 1
    assert run.records_filtered == 0
    assert all(key.startswith("delta/") for key in api.count_calls)
    assert store.watermarks.items[delta_watermark_key(None)].last_cursor == since.isoformat()


def test_scoped_incremental_falls_back_to_nationwide_watermark(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api = FakeRegistryApi(_jurisdiction_records(10))
    orchestrator = _orchestrator(api, store, clock)
    _full(orchestrator, SyncDomain(registered_from=BASE_DATE, registered_to=END_2000))
    full_run_at = clock()
    clock.advance(timedelta(days=1))
    api.add(registry_record("M1", jurisdiction="J1", last_modified=clock()))

    run = asyncio.run(orchestrator.run_incremental_delta(jurisdictions=["J1"]))

    assert run.status is RunStatus.SUCCESS
    assert run.partitions_failed == {}
    assert run.records_processed == 1
    assert "M1" in store.entities.items
    watermark = store.watermarks.items[delta_watermark_key("J1")]
    assert watermark.last_cursor == full_run_at.isoformat()


def test_delta_watermark_counts_only_its_own_scope(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    since = datetime(2024, 5, 1, tzinfo=UTC)
    modified = datetime(2024, 5, 20, tzinfo=UTC)
    records = [
        registry_record("A1", jurisdiction="J1", last_modified=modified),
        registry_record("A2", jurisdiction="J1", last_modified=modified),
        registry_record("B1", jurisdiction="J2", last_modified=modified),
    ]
    orchestrator = _orchestrator(FakeRegistryApi(records), store, clock)

    run = asyncio.run(orchestrator.run_incremental_delta(since, jurisdictions=["J1", "J2"]))

    assert run.status is RunStatus.SUCCESS
    assert run.records_processed == 3
    assert store.watermarks.items[delta_watermark_key("J1")].records_seen == 2
    assert store.watermarks.items[delta_watermark_key("J2")].records_seen == 1


def test_normalization_errors_are_counted_not_fatal(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    broken = registry_record("broken")
    broken["entityId"] = "   "
    orchestrator = _orchestrator(FakeRegistryApi([*spread_records(10), broken]), store, clock)

    run = _full(orchestrator, SyncDomain(registered_from=BASE_DATE, registered_to=END_2000))

    assert run.status is RunStatus.SUCCESS
    assert run.normalization_errors == 1
    assert run.records_processed == 10


def test_cancelled_run_skips_remaining_partitions(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    orchestrator = _orchestrator(FakeRegistryApi(_jurisdiction_records()), store, clock)

    async def run_cancelled() -> SyncRun:
        cancel = asyncio.Event()
        cancel.set()
        return await orchestrator.run_full_population(JURISDICTION_DOMAIN, cancel=cancel)

    run = asyncio.run(run_cancelled())

    assert run.status is RunStatus.CANCELLED
    assert len(run.partitions_skipped) == len(JURISDICTIONS)
    assert store.entities.items == {}


def test_unreachable_storage_aborts_run(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    def unavailable() -> RegistryUnitOfWork:
        raise StorageUnavailableError("database is locked")

    orchestrator = _orchestrator(
        FakeRegistryApi(_jurisdiction_records(10)),
        store,
        clock,
        unit_of_work_factory=unavailable,
        config=SyncConfig(worker_concurrency=1),
    )

    run = _full(orchestrator, JURISDICTION_DOMAIN)

    assert run.status is RunStatus.FAILED
    assert run.error is not None
    assert run.error.startswith("storage unavailable")
    assert len(run.partitions_skipped) == len(JURISDICTIONS) - 1


class ConflictingMerger(HistoryMerger):
    def __init__(
        self,
        *,
        conflicted: set[str],
        unit_of_work_factory: Callable[[], RegistryUnitOfWork],
        clock: Callable[[], datetime],
    ) -> None:
        super().__init__(unit_of_work_factory=unit_of_work_factory, clock=clock)
        self.conflicted = conflicted
        self.attempts: Counter[str] = Counter()

    def merge(
        self,
        entity: Entity,
        addresses: Sequence[AddressRecord],
        *,
        observed_at: datetime | None = None,
    ) -> MergeResult:
        if entity.entity_id in self.conflicted:
            self.attempts[entity.entity_id] += 1
            raise MergeConflictError("two current business addresses", entity_id=entity.entity_id)
        return super().merge(entity, addresses, observed_at=observed_at)


def test_repeated_merge_conflict_is_recorded_for_reconciliation(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    merger = ConflictingMerger(
        conflicted={"E000003"}, unit_of_work_factory=store.unit_of_work, clock=clock
    )
    orchestrator = _orchestrator(FakeRegistryApi(spread_records(10)), store, clock, merger=merger)

    run = _full(orchestrator, SyncDomain(registered_from=BASE_DATE, registered_to=END_2000))

    assert run.status is RunStatus.PARTIAL
    assert run.conflicts == ["E000003"]
    assert merger.attempts["E000003"] == 2
    assert len(store.entities.items) == 9


def test_changed_address_triggers_movement_detection(
    store: InMemoryRegistryStore, clock: FixedClock
) -> None:
    api = FakeRegistryApi([registry_record("E1", jurisdiction="J1")])
    detector = MovementDetector(unit_of_work_factory=store.unit_of_work, clock=clock)
    orchestrator = _orchestrator(api, store, clock, detector=detector)
    domain = SyncDomain(registered_from=BASE_DATE, registered_to=END_2000)
    _full(orchestrator, domain)

    clock.advance(timedelta(days=30))
    api.replace(
        registry_record(
            "E1",
            jurisdiction="J2",
            jurisdiction_name="Bergen",
            street="Bryggen 1",
            postal_code="5003",
        )
    )
    run = _full(orchestrator, domain)

    assert run.entities_changed == 1
    assert run.alerts_written == 1
    (alert,) = store.alerts.items.values()
    assert (alert.from_jurisdiction, alert.to_jurisdiction) == ("J1", "J2")
    assert alert.transition_date == clock()
    assert alert.confidence is Confidence.MEDIUM
    assert alert.risk_level is RiskLevel.MEDIUM


def test_prioritize_gaps_prefers_recent_then_dense() -> None:
    def gap(name: str, end: date | None, estimated: int) -> Gap:
        return Gap(
            partition_key=name,
            registered_from=date(2020, 1, 1) if end else None,
            registered_to=end,
            reason=GapReason.CAP_EXCEEDED,
            estimated_records=estimated,
        )

    old = gap("old", date(2020, 1, 31), 5_000)
    sparse = gap("sparse", date(2023, 12, 31), 10)
    dense = gap("dense", date(2023, 12, 31), 1_000)
    unbounded = gap("unbounded", None, 1)

    ordered = prioritize_gaps([old, sparse, dense, unbounded])

    assert [item.partition_key for item in ordered] == ["unbounded", "dense", "sparse", "old"]
