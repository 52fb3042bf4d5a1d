"""FastAPI job trigger and query surface.

Usage:
    regwatch serve --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING, Annotated

from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request, status

from regwatch.app import (
    JurisdictionView,
    RegistryServices,
    build_services,
    load_jurisdiction,
    run_full_population,
    run_gap_fill,
    run_incremental,
    run_periodic_incremental,
)
from regwatch.domain.errors import ResyncFailedError, RunAlreadyActiveError
from regwatch.domain.model import RunKind, RunStatus
from regwatch.domain.staleness import StalenessCache

from .models import (
    AlertResponse,
    EntityResponse,
    FullSyncRequest,
    IncrementalSyncRequest,
    JurisdictionResponse,
    RunAccepted,
    RunStatusResponse,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from concurrent.futures import Executor

    from regwatch.domain.runs import SyncRun

log = getLogger(__name__)

type JurisdictionCache = StalenessCache[str, JurisdictionView]


def _refresh_from_loop(
    services: RegistryServices, loop: asyncio.AbstractEventLoop
) -> Callable[[str], JurisdictionView]:
    """Build the cache refresh callable; it runs on an executor thread."""

    def refresh(jurisdiction_id: str) -> JurisdictionView:
        future = asyncio.run_coroutine_threadsafe(
            run_incremental(services, jurisdictions=[jurisdiction_id]), loop
        )
        run = future.result()
        log.info(
            "Background resync of %s finished %s (%s records)",
            jurisdiction_id,
            run.status,
            run.records_processed,
        )
        if run.status is RunStatus.FAILED:
            raise ResyncFailedError(
                f"resync of {jurisdiction_id} failed: {run.error or dict(run.partitions_failed)}",
                run_id=run.id,
            )
        return load_jurisdiction(services.unit_of_work, jurisdiction_id)

    return refresh


def create_app(
    services: RegistryServices | None = None,
    *,
    cache: JurisdictionCache | None = None,
    cache_executor: Executor | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = services or build_services()
        jurisdiction_cache = cache or StalenessCache(
            refresh=_refresh_from_loop(active, asyncio.get_running_loop()),
            ttl=active.sync_config.cache_ttl,
            executor=cache_executor,
        )
        app.state.services = active
        app.state.cache = jurisdiction_cache
        app.state.cancel_events = {}

        stop = asyncio.Event()
        scheduler: asyncio.Task[None] | None = None
        interval_hours = active.sync_config.incremental_interval_hours
        if interval_hours:
            scheduler = asyncio.create_task(
                run_periodic_incremental(
                    active, interval=timedelta(hours=interval_hours), stop=stop
                )
            )
        log.info("regwatch API ready")
        try:
            yield
        finally:
            stop.set()
            if scheduler is not None:
                scheduler.cancel()
                with suppress(asyncio.CancelledError):
                    await scheduler
            jurisdiction_cache.close(wait=False)
            await active.aclose()
            log.info("regwatch API stopped")

    app = FastAPI(
        title="regwatch",
        description="Registry synchronisation jobs and jurisdiction movement queries",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def get_services(request: Request) -> RegistryServices:
    return request.app.state.services


def get_cache(request: Request) -> JurisdictionCache:
    return request.app.state.cache


def _cancel_events(request: Request) -> dict[str, asyncio.Event]:
    return request.app.state.cancel_events


Services = Annotated[RegistryServices, Depends(get_services)]
Cache = Annotated[StalenessCache, Depends(get_cache)]
CancelEvents = Annotated[dict[str, asyncio.Event], Depends(_cancel_events)]


async def _execute(
    run: SyncRun,
    job: Awaitable[SyncRun],
    cancel_events: dict[str, asyncio.Event],
) -> None:
    try:
        await job
    except Exception:
        log.exception("Run %s crashed", run.id)
    finally:
        cancel_events.pop(run.id, None)


def _start(
    services: RegistryServices,
    kind: RunKind,
    request: Request,
    background: BackgroundTasks,
    cancel_events: dict[str, asyncio.Event],
    job: Callable[[SyncRun, asyncio.Event], Awaitable[SyncRun]],
) -> RunAccepted:
    try:
        run = services.runs.start(kind)
    except RunAlreadyActiveError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "run_id": exc.run_id},
        ) from exc
    cancel = asyncio.Event()
    cancel_events[run.id] = cancel
    background.add_task(_execute, run, job(run, cancel), cancel_events)
    log.info("Accepted %s run %s", kind, run.id)
    return RunAccepted(
        run_id=run.id,
        kind=kind,
        status_url=str(request.url_for("sync_status", run_id=run.id)),
    )


def _register_routes(app: FastAPI) -> None:
    @app.post("/sync/full", status_code=status.HTTP_202_ACCEPTED)
    async def sync_full(
        request: Request,
        background: BackgroundTasks,
        services: Services,
        cancel_events: CancelEvents,
        body: Annotated[FullSyncRequest | None, Body()] = None,
    ) -> RunAccepted:
        params = body or FullSyncRequest()
        return _start(
            services,
            RunKind.FULL,
            request,
            background,
            cancel_events,
            lambda run, cancel: run_full_population(
                services,
                jurisdictions=params.jurisdictions,
                registered_from=params.registered_from,
                registered_to=params.registered_to,
                resume_since=params.resume_since,
                run=run,
                cancel=cancel,
            ),
        )

    @app.post("/sync/incremental", status_code=status.HTTP_202_ACCEPTED)
    async def sync_incremental(
        request: Request,
        background: BackgroundTasks,
        services: Services,
        cancel_events: CancelEvents,
        body: Annotated[IncrementalSyncRequest | None, Body()] = None,
    ) -> RunAccepted:
        params = body or IncrementalSyncRequest()
        return _start(
            services,
            RunKind.INCREMENTAL,
            request,
            background,
            cancel_events,
            lambda run, cancel: run_incremental(
                services,
                since=params.since,
                jurisdictions=params.jurisdictions,
                run=run,
                cancel=cancel,
            ),
        )

    @app.post("/sync/gapfill", status_code=status.HTTP_202_ACCEPTED)
    async def sync_gapfill(
        request: Request,
        background: BackgroundTasks,
        services: Services,
        cancel_events: CancelEvents,
    ) -> RunAccepted:
        return _start(
            services,
            RunKind.GAP_FILL,
            request,
            background,
            cancel_events,
            lambda run, cancel: run_gap_fill(services, run=run, cancel=cancel),
        )

    @app.get("/sync/status/{run_id}", name="sync_status")
    async def sync_status(run_id: str, services: Services) -> RunStatusResponse:
        run = services.runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown run")
        return RunStatusResponse.from_run(run)

    @app.post("/sync/{run_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
    async def sync_cancel(
        run_id: str, services: Services, cancel_events: CancelEvents
    ) -> RunStatusResponse:
        run = services.runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown run")
        cancel = cancel_events.get(run_id)
        if cancel is None or run.is_finished:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Run is not active")
        cancel.set()
        return RunStatusResponse.from_run(run)

    @app.get("/entities/{jurisdiction_id}")
    def entities(jurisdiction_id: str, services: Services, cache: Cache) -> JurisdictionResponse:
        read = cache.get(jurisdiction_id)
        view = read.value
        if view is None:
            # first request for this jurisdiction: answer from the store directly
            view = load_jurisdiction(services.unit_of_work, jurisdiction_id)
        return JurisdictionResponse(
            jurisdiction_id=jurisdiction_id,
            is_stale=read.is_stale,
            loaded_at=view.loaded_at,
            entities=[EntityResponse.from_view(item) for item in view.entities],
            alerts=[AlertResponse.from_domain(alert) for alert in view.alerts],
        )

    @app.get("/entities/{jurisdiction_id}/movements")
    def movements(jurisdiction_id: str, services: Services) -> list[AlertResponse]:
        view = load_jurisdiction(services.unit_of_work, jurisdiction_id)
        return [AlertResponse.from_domain(alert) for alert in view.alerts]
