"""Sync orchestration: full population, incremental delta and gap-fill runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, date, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from regwatch.config.sync import SyncConfig
from regwatch.domain.errors import (
    MergeConflictError,
    NormalizationError,
    RegistrySyncError,
    StorageUnavailableError,
    WatermarkPersistError,
)
from regwatch.domain.history import EntityLocks, HistoryMerger, MergeResult
from regwatch.domain.model import (
    GapReason,
    Partition,
    RunKind,
    RunPhase,
    SyncDomain,
    SyncWatermark,
)
from regwatch.domain.model.sync import DELTA_PREFIX
from regwatch.domain.planning import PartitionPlanner
from regwatch.domain.runs import SyncEvent, SyncRun

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from regwatch.domain.detection import MovementDetector
    from regwatch.domain.model import Gap, NormalizedEntity
    from regwatch.domain.ports import (
        FetchOutcome,
        RawRecord,
        RegistrySource,
        RegistryUnitOfWork,
        WatermarkRepository,
    )

    type Normalizer = Callable[[RawRecord], NormalizedEntity]

log = getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def prioritize_gaps(gaps: Iterable[Gap]) -> list[Gap]:
    """Most recent slices first, then the densest ones."""

    def sort_key(gap: Gap) -> tuple[int, float, str]:
        recency = (gap.registered_to or date.max).toordinal()
        return (-recency, -gap.density, gap.partition_key)

    return sorted(gaps, key=sort_key)


def delta_watermark_key(jurisdiction_id: str | None) -> str:
    return f"{DELTA_PREFIX}{jurisdiction_id or '*'}"


@dataclass(slots=True)
class _Tally:
    """Records merged and filtered by one partition or one incremental scope."""

    processed: int = 0
    filtered: int = 0

    def add(self, other: _Tally) -> None:
        self.processed += other.processed
        self.filtered += other.filtered


class SyncOrchestrator:
    """Drive planner, fetcher, normaliser, merger and detector for one kind of run.

    Every public ``run_*`` coroutine returns the :class:`SyncRun` it reported into.
    Partition failures are isolated and listed on the run; only an unreachable store
    aborts the whole run.
    """

    def __init__(
        self,
        *,
        source: RegistrySource,
        normalizer: Normalizer,
        unit_of_work_factory: Callable[[], RegistryUnitOfWork],
        detector: MovementDetector | None = None,
        merger: HistoryMerger | None = None,
        planner: PartitionPlanner | None = None,
        config: SyncConfig | None = None,
        entity_locks: EntityLocks | None = None,
        gap_fill_source: RegistrySource | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._normalize = normalizer
        self._unit_of_work_factory = unit_of_work_factory
        self._config = config or SyncConfig()
        self._detector = detector
        self._merger = merger or HistoryMerger(
            unit_of_work_factory=unit_of_work_factory, clock=clock
        )
        self._planner = planner or PartitionPlanner(source=source, config=self._config, clock=clock)
        self._locks = entity_locks or EntityLocks()
        self._gap_fill_source = gap_fill_source or source
        self._clock = clock

    # Public entry points -------------------------------------------------------

    async def run_full_population(
        self,
        domain: SyncDomain,
        *,
        resume_since: datetime | None = None,
        run: SyncRun | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncRun:
        run = run or SyncRun(kind=RunKind.FULL)
        cancel = cancel or asyncio.Event()
        log.info(
            "Starting full population run %s: jurisdictions=%s range=%s..%s resume_since=%s",
            run.id,
            list(domain.jurisdictions) or "*",
            domain.registered_from,
            domain.registered_to,
            resume_since,
        )

        async def body() -> None:
            run.enter_phase(RunPhase.PLANNING)
            plan = await self._planner.plan(domain, self._source.capacity_cap)
            for gap in plan.gaps:
                await self._record_gap(run, gap)
            partitions = plan.partitions
            if resume_since is not None:
                partitions = await self._skip_completed(partitions, resume_since, run)
            run.partitions_planned = len(partitions)

            run.enter_phase(RunPhase.SYNCING)
            await self._run_pool(
                partitions,
                lambda partition: self._sync_partition(
                    partition, run=run, source=self._source, write_watermark=True
                ),
                run=run,
                cancel=cancel,
            )

        return await self._execute(run, cancel, body)

    async def run_incremental_delta(
        self,
        since: datetime | None = None,
        *,
        jurisdictions: Sequence[str] = (),
        run: SyncRun | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncRun:
        run = run or SyncRun(kind=RunKind.INCREMENTAL)
        cancel = cancel or asyncio.Event()
        started_at = self._clock()
        scopes: list[str | None] = list(dict.fromkeys(jurisdictions)) or [None]
        log.info("Starting incremental run %s: scopes=%s since=%s", run.id, scopes, since)

        async def sync_scope(scope: str | None) -> bool:
            scope_since = since or await asyncio.to_thread(self._resolve_since, scope)
            scope_key = delta_watermark_key(scope)
            if scope_since is None:
                run.partition_failed(scope_key, "no watermark yet; run a full population first")
                return False

            domain = SyncDomain(
                registered_from=self._config.earliest_registration,
                registered_to=started_at.date(),
                jurisdictions=(scope,) if scope else (),
            )
            server_side = self._source.supports_modified_since
            plan = await self._planner.plan(
                domain,
                self._source.capacity_cap,
                modified_since=scope_since if server_side else None,
            )
            for gap in plan.gaps:
                await self._record_gap(run, gap)
            run.partitions_planned += len(plan.partitions)

            filter_since = None if server_side else scope_since
            tally = _Tally()
            completed = True
            for partition in plan.partitions:
                if cancel.is_set():
                    run.partition_skipped(partition.key)
                    completed = False
                    continue
                completed &= await self._sync_partition(
                    partition,
                    run=run,
                    source=self._source,
                    write_watermark=False,
                    filter_since=filter_since,
                    tally=tally,
                )
            if completed and not plan.gaps:
                await self._write_watermark(
                    SyncWatermark(
                        partition_key=scope_key,
                        last_successful_run=started_at,
                        last_cursor=scope_since.isoformat(),
                        records_seen=tally.processed,
                    )
                )
            return completed

        async def body() -> None:
            run.enter_phase(RunPhase.SYNCING)
            await self._run_pool(scopes, sync_scope, run=run, cancel=cancel)

        return await self._execute(run, cancel, body)

    async def run_gap_fill(
        self,
        gaps: Sequence[Gap] | None = None,
        *,
        run: SyncRun | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncRun:
        run = run or SyncRun(kind=RunKind.GAP_FILL)
        cancel = cancel or asyncio.Event()

        async def fill(gap: Gap) -> bool:
            recorded_before = len(run.gaps)
            plan = await self._planner.plan_partitions(
                [gap.partition], self._gap_fill_source.capacity_cap
            )
            completed = True
            for partition in plan.partitions:
                completed &= await self._sync_partition(
                    partition, run=run, source=self._gap_fill_source, write_watermark=True
                )
            for child_gap in plan.gaps:
                if child_gap.partition_key != gap.partition_key:
                    await self._record_gap(run, child_gap)
                completed = False

            if completed:
                resolved_at = self._clock()
                await self._in_unit_of_work(
                    lambda repositories: repositories.gaps.resolve(gap.partition_key, resolved_at)
                )
                run.partition_completed(gap.partition_key)
            elif not any(
                pending.partition_key == gap.partition_key
                for pending in run.gaps[recorded_before:]
            ):
                # bumps the attempt counter of the stored gap
                gap.detail = "still incomplete after gap fill"
                await self._record_gap(run, gap)
            return completed

        async def body() -> None:
            run.enter_phase(RunPhase.PLANNING)
            pending = (
                list(gaps)
                if gaps is not None
                else await self._in_unit_of_work(lambda repositories: repositories.gaps.pending())
            )
            ordered = prioritize_gaps(pending)
            run.partitions_planned = len(ordered)
            log.info("Gap-fill run %s: %s pending gaps", run.id, len(ordered))
            run.enter_phase(RunPhase.SYNCING)
            await self._run_pool(ordered, fill, run=run, cancel=cancel)

        return await self._execute(run, cancel, body)

    # Run plumbing --------------------------------------------------------------

    async def _execute(
        self,
        run: SyncRun,
        cancel: asyncio.Event,
        body: Callable[[], Awaitable[None]],
    ) -> SyncRun:
        try:
            await body()
        except StorageUnavailableError as exc:
            log.error("Run %s aborted, storage unavailable: %s", run.id, exc)  # noqa: TRY400
            run.finish(error=f"storage unavailable: {exc}")
            return run
        except RegistrySyncError as exc:
            log.error("Run %s failed: %s", run.id, exc)  # noqa: TRY400
            run.finish(error=f"{type(exc).__name__}: {exc}")
            return run
        except asyncio.CancelledError:
            run.finish(cancelled=True)
            raise
        except Exception as exc:
            run.finish(error=f"{type(exc).__name__}: {exc}")
            raise

        status = run.finish(cancelled=cancel.is_set())
        log.info(
            "Run %s (%s) finished %s: partitions ok=%s failed=%s skipped=%s gaps=%s "
            "records=%s created=%s changed=%s alerts=%s errors=%s conflicts=%s",
            run.id,
            run.kind,
            status,
            len(run.partitions_completed),
            len(run.partitions_failed),
            len(run.partitions_skipped),
            len(run.gaps),
            run.records_processed,
            run.entities_created,
            run.entities_changed,
            run.alerts_written,
            run.normalization_errors,
            len(run.conflicts),
        )
        return run

    async def _run_pool[T](
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[bool]],
        *,
        run: SyncRun,
        cancel: asyncio.Event,
    ) -> None:
        semaphore = asyncio.Semaphore(self._config.worker_concurrency)
        abort = asyncio.Event()
        failures: list[StorageUnavailableError] = []

        async def guarded(item: T) -> None:
            async with semaphore:
                if cancel.is_set() or abort.is_set():
                    run.partition_skipped(_describe(item))
                    return
                try:
                    await worker(item)
                except StorageUnavailableError as exc:
                    failures.append(exc)
                    abort.set()
                except Exception as exc:
                    log.exception("Unexpected failure while syncing %s", _describe(item))
                    run.partition_failed(_describe(item), f"{type(exc).__name__}: {exc}")

        await asyncio.gather(*(guarded(item) for item in items))
        if failures:
            raise failures[0]

    async def _sync_partition(
        self,
        partition: Partition,
        *,
        run: SyncRun,
        source: RegistrySource,
        write_watermark: bool,
        filter_since: datetime | None = None,
        tally: _Tally | None = None,
    ) -> bool:
        started_at = self._clock()
        counted = _Tally()
        stream = source.fetch(partition, events=run)
        async for raw in stream:
            normalized = self._normalize_or_count(raw, run)
            if normalized is None:
                continue
            if filter_since is not None and not _modified_since(normalized, filter_since):
                counted.filtered += 1
                continue
            await self._merge_and_detect(normalized, run)
            counted.processed += 1

        outcome = stream.outcome
        gap = outcome.gap
        if gap is not None and gap.reason is GapReason.CAP_EXCEEDED and partition.can_split(
            self._config.min_partition_days
        ):
            # the halves fetch these records again and count them there
            log.debug("Discarding counts of %s before re-split: %s", partition.key, counted)
            return await self._resplit(
                partition,
                run=run,
                source=source,
                write_watermark=write_watermark,
                filter_since=filter_since,
                tally=tally,
            )

        run.records_processed += counted.processed
        run.records_filtered += counted.filtered
        if tally is not None:
            tally.add(counted)

        if gap is not None:
            await self._record_gap(run, gap)
        if outcome.failed:
            run.partition_failed(partition.key, f"transient failure: {outcome.error}")
            return False
        if gap is not None:
            run.partition_failed(partition.key, f"incomplete: {gap.reason}")
            return False

        if write_watermark:
            try:
                await self._write_watermark(_watermark_for(partition, outcome, started_at))
            except WatermarkPersistError as exc:
                log.error("Watermark for %s not persisted: %s", partition.key, exc)  # noqa: TRY400
                run.partition_failed(partition.key, f"watermark not persisted: {exc}")
                return False
        run.partition_completed(partition.key)
        return True

    async def _resplit(
        self,
        partition: Partition,
        *,
        run: SyncRun,
        source: RegistrySource,
        write_watermark: bool,
        filter_since: datetime | None,
        tally: _Tally | None,
    ) -> bool:
        log.info("Partition %s hit the upstream cap; re-splitting", partition.key)
        run.emit(SyncEvent(name="resplit", partition_key=partition.key))
        plan = await self._planner.split(partition, source.capacity_cap)
        for gap in plan.gaps:
            await self._record_gap(run, gap)
        completed = not plan.gaps
        for child in plan.partitions:
            completed &= await self._sync_partition(
                child,
                run=run,
                source=source,
                write_watermark=write_watermark,
                filter_since=filter_since,
                tally=tally,
            )
        return completed

    def _normalize_or_count(self, raw: RawRecord, run: SyncRun) -> NormalizedEntity | None:
        try:
            return self._normalize(raw)
        except NormalizationError as exc:
            run.normalization_errors += 1
            log.warning("Skipping record: %s", exc)
            return None

    async def _merge_and_detect(self, normalized: NormalizedEntity, run: SyncRun) -> None:
        entity_id = normalized.entity.entity_id
        async with self._locks.hold(entity_id):
            try:
                result = await self._merge_with_retry(normalized)
            except MergeConflictError as exc:
                log.error(  # noqa: TRY400
                    "Merge of %s failed twice, manual reconciliation required: %s",
                    entity_id,
                    exc,
                )
                run.record_conflict(entity_id)
                return

            if result.is_new:
                run.entities_created += 1
            elif result.changed:
                run.entities_changed += 1

            if self._detector is not None and result.needs_detection:
                try:
                    alerts = await asyncio.to_thread(self._detector.detect, entity_id)
                except MergeConflictError as exc:
                    log.warning("Alert upsert for %s raced another writer: %s", entity_id, exc)
                    return
                run.alerts_written += len(alerts)

    async def _merge_with_retry(self, normalized: NormalizedEntity) -> MergeResult:
        try:
            return await asyncio.to_thread(
                self._merger.merge, normalized.entity, normalized.addresses
            )
        except MergeConflictError as exc:
            log.warning(
                "Merge conflict for %s, retrying once: %s", normalized.entity.entity_id, exc
            )
            await asyncio.sleep(self._config.conflict_retry_delay_seconds)
            return await asyncio.to_thread(
                self._merger.merge, normalized.entity, normalized.addresses
            )

    # Storage helpers -----------------------------------------------------------

    async def _in_unit_of_work[R](self, operation: Callable[..., R]) -> R:
        def work() -> R:
            with self._unit_of_work_factory() as uow:
                result = operation(uow.repositories)
                uow.commit()
                return result

        return await asyncio.to_thread(work)

    async def _record_gap(self, run: SyncRun, gap: Gap) -> None:
        gap.detected_at = gap.detected_at or self._clock()
        run.add_gap(gap)
        await self._in_unit_of_work(lambda repositories: repositories.gaps.record(gap))

    async def _write_watermark(self, watermark: SyncWatermark) -> None:
        def write() -> None:
            try:
                with self._unit_of_work_factory() as uow:
                    uow.repositories.watermarks.set(watermark)
                    uow.commit()
            except StorageUnavailableError:
                raise
            except Exception as exc:
                raise WatermarkPersistError(
                    f"{type(exc).__name__}: {exc}", partition_key=watermark.partition_key
                ) from exc

        await asyncio.to_thread(write)

    async def _skip_completed(
        self,
        partitions: Sequence[Partition],
        resume_since: datetime,
        run: SyncRun,
    ) -> list[Partition]:
        def load() -> dict[str, SyncWatermark]:
            with self._unit_of_work_factory() as uow:
                found = (uow.repositories.watermarks.get(p.key) for p in partitions)
                return {mark.partition_key: mark for mark in found if mark is not None}

        watermarks = await asyncio.to_thread(load)
        remaining: list[Partition] = []
        for partition in partitions:
            mark = watermarks.get(partition.key)
            if mark is not None and mark.last_successful_run >= resume_since:
                run.partition_skipped(partition.key)
                continue
            remaining.append(partition)
        log.info(
            "Resuming: %s of %s partitions already done since %s",
            len(partitions) - len(remaining),
            len(partitions),
            resume_since,
        )
        return remaining

    def _resolve_since(self, scope: str | None) -> datetime | None:
        with self._unit_of_work_factory() as uow:
            watermarks = uow.repositories.watermarks
            since = _since_from(watermarks, scope)
            if since is None and scope is not None:
                # a nationwide full run covers every jurisdiction
                since = _since_from(watermarks, None)
                log.debug("No watermark for %s; using nationwide one (%s)", scope, since)
        return since


def _since_from(watermarks: WatermarkRepository, scope: str | None) -> datetime | None:
    delta = watermarks.get(delta_watermark_key(scope))
    oldest_full = watermarks.oldest(f"{scope or '*'}:")
    candidates = [mark.last_successful_run for mark in (delta, oldest_full) if mark is not None]
    return max(candidates) if candidates else None

def _modified_since(normalized: NormalizedEntity, since: datetime) -> bool:
    if normalized.modified_at is not None:
        return normalized.modified_at >= since
    registered = normalized.entity.registration_date
    return registered is not None and registered >= since.date()


def _watermark_for(
    partition: Partition, outcome: FetchOutcome, started_at: datetime
) -> SyncWatermark:
    return SyncWatermark(
        partition_key=partition.key,
        last_successful_run=started_at,
        last_cursor=str(outcome.pages_fetched),
        records_seen=outcome.records_seen,
    )


def _describe(item: object) -> str:
    if isinstance(item, Partition):
        return item.key
    key = getattr(item, "partition_key", None)
    if isinstance(key, str):
        return key
    return delta_watermark_key(item) if item is None or isinstance(item, str) else repr(item)
