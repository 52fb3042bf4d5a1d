from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

import pytest

from regwatch.domain.detection import DetectionSummary
from regwatch.domain.model import RunKind, RunStatus
from regwatch.domain.runs import SyncRun
from regwatch.ui import cli

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

SERVICES = object()


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    """Replace the app layer with fakes that record what the CLI asked for."""

    calls: dict[str, object] = {}

    def fake_run_to_completion(
        services: object, operation: Callable[[object], Awaitable[SyncRun]]
    ) -> SyncRun:
        assert services is SERVICES
        return asyncio.run(operation(services))  # type: ignore[arg-type]

    def fake_run(
        kind: RunKind, status: RunStatus = RunStatus.SUCCESS
    ) -> Callable[..., Awaitable[SyncRun]]:
        async def run(services: object, **kwargs: object) -> SyncRun:
            assert services is SERVICES
            calls[str(kind)] = kwargs
            return SyncRun(kind=kind, status=status)

        return run

    def fake_detect(services: object, *, entity_ids: list[str] | None) -> DetectionSummary:
        assert services is SERVICES
        calls["detect"] = entity_ids
        return DetectionSummary(entities=1, alerts=0, critical=0)

    monkeypatch.setattr(cli, "build_services", lambda: SERVICES)
    monkeypatch.setattr(cli, "run_to_completion", fake_run_to_completion)
    monkeypatch.setattr(cli, "run_full_population", fake_run(RunKind.FULL))
    monkeypatch.setattr(cli, "run_incremental", fake_run(RunKind.INCREMENTAL))
    monkeypatch.setattr(cli, "run_gap_fill", fake_run(RunKind.GAP_FILL, RunStatus.FAILED))
    monkeypatch.setattr(cli, "detect_movements", fake_detect)
    return calls


def test_full_command_passes_flags(captured: dict[str, object]) -> None:
    cli.main(
        [
            "full",
            "--jurisdiction",
            "0301",
            "--jurisdiction",
            "4601",
            "--from",
            "2015-01-01",
            "--to",
            "2015-12-31",
            "--resume-since",
            "2024-06-01T03:00:00+03:00",
        ]
    )

    assert captured["full"] == {
        "jurisdictions": ["0301", "4601"],
        "registered_from": date(2015, 1, 1),
        "registered_to": date(2015, 12, 31),
        "resume_since": datetime(2024, 6, 1, 0, 0, tzinfo=UTC),
    }


def test_full_command_defaults(captured: dict[str, object]) -> None:
    cli.main(["full"])

    assert captured["full"] == {
        "jurisdictions": [],
        "registered_from": None,
        "registered_to": None,
        "resume_since": None,
    }


def test_incremental_command_parses_since(captured: dict[str, object]) -> None:
    cli.main(["incremental", "--since", "2024-05-01T00:00:00Z"])

    assert captured["incremental"] == {
        "since": datetime(2024, 5, 1, tzinfo=UTC),
        "jurisdictions": [],
    }


def test_failed_run_exits_non_zero(captured: dict[str, object]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["gapfill"])

    assert excinfo.value.code == 1
    assert "gapfill" in captured


def test_detect_command_forwards_entity_ids(captured: dict[str, object]) -> None:
    cli.main(["detect", "--entity-id", "E1", "--entity-id", "E2"])

    assert captured["detect"] == ["E1", "E2"]


@pytest.mark.parametrize(
    "argv",
    [
        ["full", "--from", "2016-01-01", "--to", "2015-01-01"],
        ["full", "--from", "01.01.2015"],
        ["incremental", "--since", "yesterday"],
        ["serve", "--port", "70000"],
    ],
)
def test_invalid_arguments_exit_with_usage_error(
    captured: dict[str, object], argv: list[str]
) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)

    assert excinfo.value.code == 2
    assert captured == {}


def test_unexpected_failure_exits_with_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken() -> object:
        raise RuntimeError("DATABASE_URI points nowhere")

    monkeypatch.setattr(cli, "build_services", broken)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["gapfill"])

    assert excinfo.value.code == 1
