"""Application wiring and orchestration entry points."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from logging import getLogger
from typing import TYPE_CHECKING

from regwatch.adapters.registry import (
    PaginatedFetcher,
    RegistryClient,
    build_registry_resilience,
    normalize_record,
)
from regwatch.adapters.sqlalchemy import Database
from regwatch.config import (
    DetectionConfig,
    RegistryConfig,
    SyncConfig,
    get_detection_config,
    get_registry_config,
    get_sync_config,
)
from regwatch.domain.detection import DetectionSummary, MovementDetector
from regwatch.domain.model import AddressKind, RunKind, SyncDomain, alert_sort_key
from regwatch.domain.orchestrator import SyncOrchestrator
from regwatch.domain.runs import RunRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from regwatch.adapters.http_resilience import ResilientClient
    from regwatch.config.http_resilience import ResilienceConfig
    from regwatch.domain.model import AddressRecord, Entity, MovementAlert
    from regwatch.domain.ports import RegistryUnitOfWork
    from regwatch.domain.runs import SyncRun

log = getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class RegistryServices:
    """Everything a process needs to sync the registry and answer queries."""

    database: Database
    sync_config: SyncConfig
    detection_config: DetectionConfig
    client: RegistryClient
    gap_fill_client: RegistryClient
    orchestrator: SyncOrchestrator
    detector: MovementDetector
    runs: RunRegistry = field(default_factory=RunRegistry)

    def unit_of_work(self) -> RegistryUnitOfWork:
        return self.database.unit_of_work()

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.gap_fill_client.aclose()


def build_services(
    *,
    database: Database | None = None,
    registry_config: RegistryConfig | None = None,
    sync_config: SyncConfig | None = None,
    detection_config: DetectionConfig | None = None,
    client_factory: Callable[[ResilienceConfig], ResilientClient] | None = None,
) -> RegistryServices:
    """Wire configuration, storage, registry client and domain services together."""

    registry = registry_config or get_registry_config()
    sync = sync_config or get_sync_config()
    detection = detection_config or get_detection_config()
    db = database or Database.from_config()
    if not db.is_started:
        db.startup()

    client = _registry_client(registry, sync, client_factory=client_factory)
    gap_fill_client = _registry_client(
        registry,
        sync,
        client_factory=client_factory,
        backoff_multiplier=sync.gap_fill_backoff_multiplier,
    )
    source = _fetcher(client, registry, sync)
    gap_fill_source = _fetcher(gap_fill_client, registry, sync)

    detector = MovementDetector(unit_of_work_factory=db.unit_of_work, config=detection)
    orchestrator = SyncOrchestrator(
        source=source,
        normalizer=normalize_record,
        unit_of_work_factory=db.unit_of_work,
        detector=detector,
        config=sync,
        gap_fill_source=gap_fill_source,
    )
    return RegistryServices(
        database=db,
        sync_config=sync,
        detection_config=detection,
        client=client,
        gap_fill_client=gap_fill_client,
        orchestrator=orchestrator,
        detector=detector,
    )


def _registry_client(
    registry: RegistryConfig,
    sync: SyncConfig,
    *,
    client_factory: Callable[[ResilienceConfig], ResilientClient] | None,
    backoff_multiplier: float = 1.0,
) -> RegistryClient:
    resilience = build_registry_resilience(
        registry, sync, backoff_multiplier=backoff_multiplier
    )
    if client_factory is None:
        return RegistryClient(config=registry, resilience=resilience)
    return RegistryClient(config=registry, resilience=resilience, client_factory=client_factory)


def _fetcher(
    client: RegistryClient, registry: RegistryConfig, sync: SyncConfig
) -> PaginatedFetcher:
    return PaginatedFetcher(
        client=client,
        capacity_cap=registry.capacity_cap,
        page_size=registry.page_size,
        max_pages=sync.max_pages,
        supports_modified_since=registry.supports_modified_since,
    )


# Sync entry points -------------------------------------------------------------


async def run_full_population(
    services: RegistryServices,
    *,
    jurisdictions: Sequence[str] = (),
    registered_from: date | None = None,
    registered_to: date | None = None,
    resume_since: datetime | None = None,
    run: SyncRun | None = None,
    cancel: asyncio.Event | None = None,
) -> SyncRun:
    domain = SyncDomain(
        registered_from=registered_from or services.sync_config.earliest_registration,
        registered_to=registered_to or _utcnow().date(),
        jurisdictions=tuple(jurisdictions),
    )
    return await services.orchestrator.run_full_population(
        domain,
        resume_since=resume_since,
        run=run or services.runs.start(RunKind.FULL),
        cancel=cancel,
    )


async def run_incremental(
    services: RegistryServices,
    *,
    since: datetime | None = None,
    jurisdictions: Sequence[str] = (),
    run: SyncRun | None = None,
    cancel: asyncio.Event | None = None,
) -> SyncRun:
    return await services.orchestrator.run_incremental_delta(
        since,
        jurisdictions=jurisdictions,
        run=run or services.runs.start(RunKind.INCREMENTAL),
        cancel=cancel,
    )


async def run_gap_fill(
    services: RegistryServices,
    *,
    run: SyncRun | None = None,
    cancel: asyncio.Event | None = None,
) -> SyncRun:
    return await services.orchestrator.run_gap_fill(
        run=run or services.runs.start(RunKind.GAP_FILL),
        cancel=cancel,
    )


def run_to_completion[T](
    services: RegistryServices,
    operation: Callable[[RegistryServices], Awaitable[T]],
) -> T:
    """Run one async entry point on a fresh event loop and release the HTTP clients."""

    async def runner() -> T:
        try:
            return await operation(services)
        finally:
            await services.aclose()

    return asyncio.run(runner())


def detect_movements(
    services: RegistryServices,
    *,
    entity_ids: Iterable[str] | None = None,
) -> DetectionSummary:
    log.info("Starting detection backfill")
    return services.detector.backfill(entity_ids)


async def run_periodic_incremental(
    services: RegistryServices,
    *,
    interval: timedelta,
    stop: asyncio.Event,
) -> None:
    """Trigger an incremental run every ``interval`` until ``stop`` is set."""

    log.info("Scheduling incremental runs every %s", interval)
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval.total_seconds())
        except TimeoutError:
            pass
        else:
            return
        try:
            run = await run_incremental(services)
        except Exception:
            log.exception("Scheduled incremental run crashed")
            continue
        log.info("Scheduled incremental run %s finished %s", run.id, run.status)


# Read side ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EntityView:
    entity: Entity
    business_address: AddressRecord | None


@dataclass(frozen=True, slots=True)
class JurisdictionView:
    """Current entities of a jurisdiction plus their active movement alerts."""

    jurisdiction_id: str
    entities: tuple[EntityView, ...]
    alerts: tuple[MovementAlert, ...]
    loaded_at: datetime


def load_jurisdiction(
    unit_of_work_factory: Callable[[], RegistryUnitOfWork],
    jurisdiction_id: str,
) -> JurisdictionView:
    with unit_of_work_factory() as uow:
        repositories = uow.repositories
        entities = tuple(
            EntityView(
                entity=entity,
                business_address=repositories.addresses.current(
                    entity.entity_id, AddressKind.BUSINESS
                ),
            )
            for entity in repositories.entities.in_jurisdiction(jurisdiction_id)
        )
        alerts = sorted(
            repositories.alerts.active_for_jurisdiction(jurisdiction_id), key=alert_sort_key
        )
    return JurisdictionView(
        jurisdiction_id=jurisdiction_id,
        entities=entities,
        alerts=tuple(alerts),
        loaded_at=_utcnow(),
    )
