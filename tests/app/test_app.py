from __future__ import annotations

import asyncio
from datetime import date, timedelta
from typing import TYPE_CHECKING, cast

import pytest

from regwatch import app
from regwatch.domain.model import RiskLevel, RunKind, RunStatus
from regwatch.domain.runs import SyncRun
from tests.helpers.registry import BASE_DATE, FakeRegistryApi, registry_record, spread_records
from tests.helpers.services import services_for

if TYPE_CHECKING:
    from regwatch.adapters.sqlalchemy import Database
    from regwatch.app import RegistryServices

END = date(2000, 12, 31)


def _full(services: RegistryServices) -> SyncRun:
    return app.run_to_completion(
        services,
        lambda current: app.run_full_population(
            current, registered_from=BASE_DATE, registered_to=END
        ),
    )


def test_build_services_wires_patient_gap_fill_client(database: Database) -> None:
    services = services_for(FakeRegistryApi(), database)

    regular = services.client.resilience
    patient = services.gap_fill_client.resilience

    assert regular is not None
    assert patient is not None
    assert patient.retry.backoff_factor == pytest.approx(
        regular.retry.backoff_factor * services.sync_config.gap_fill_backoff_multiplier
    )
    assert services.orchestrator is not None
    assert services.runs.active() == []


def test_full_population_through_http_client_populates_jurisdiction(database: Database) -> None:
    api = FakeRegistryApi(
        [
            *spread_records(120, per_day=1),
            *spread_records(30, per_day=1, jurisdiction="4601", prefix="B"),
        ]
    )
    services = services_for(api, database)

    run = _full(services)

    assert run.status is RunStatus.SUCCESS
    assert run.kind is RunKind.FULL
    assert services.runs.get(run.id) is run
    assert run.entities_created == 150
    view = app.load_jurisdiction(services.unit_of_work, "4601")
    assert view.jurisdiction_id == "4601"
    assert len(view.entities) == 30
    assert all(item.business_address is not None for item in view.entities)
    assert view.alerts == ()


def test_second_sync_detects_move_and_bankruptcy(database: Database) -> None:
    api = FakeRegistryApi([registry_record("E1")])
    services = services_for(api, database)
    _full(services)

    api.replace(
        registry_record(
            "E1",
            jurisdiction="4601",
            jurisdiction_name="Bergen",
            street="Strandkaien 2",
            postal_code="5003",
            bankruptcy_date=date.today(),
        )
    )
    run = _full(services)

    assert run.entities_changed == 1
    assert run.alerts_written == 1
    view = app.load_jurisdiction(services.unit_of_work, "4601")
    (alert,) = view.alerts
    assert alert.risk_level is RiskLevel.CRITICAL
    assert (alert.from_jurisdiction, alert.to_jurisdiction) == ("0301", "4601")
    assert app.load_jurisdiction(services.unit_of_work, "0301").entities == ()

    summary = app.detect_movements(services)
    assert summary.entities == 1
    assert summary.critical == 1


def test_incremental_requires_prior_full_population(database: Database) -> None:
    services = services_for(FakeRegistryApi(spread_records(5)), database)

    run = app.run_to_completion(services, app.run_incremental)

    assert run.kind is RunKind.INCREMENTAL
    assert run.status is RunStatus.FAILED


def test_periodic_incremental_runs_until_stopped(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    async def run() -> None:
        stop = asyncio.Event()

        async def fake_incremental(_: RegistryServices) -> SyncRun:
            calls.append(len(calls))
            if len(calls) == 2:
                stop.set()
            if len(calls) == 1:
                raise RuntimeError("registry unreachable")
            return SyncRun(kind=RunKind.INCREMENTAL)

        monkeypatch.setattr(app, "run_incremental", fake_incremental)
        await app.run_periodic_incremental(
            cast("RegistryServices", object()),
            interval=timedelta(milliseconds=5),
            stop=stop,
        )

    asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert calls == [0, 1]


def test_periodic_incremental_returns_when_stop_already_set(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def unexpected(_: RegistryServices) -> SyncRun:
        raise AssertionError("no run expected")

    monkeypatch.setattr(app, "run_incremental", unexpected)

    async def run() -> None:
        stop = asyncio.Event()
        stop.set()
        await app.run_periodic_incremental(
            cast("RegistryServices", object()), interval=timedelta(hours=1), stop=stop
        )

    asyncio.run(asyncio.wait_for(run(), timeout=5))
