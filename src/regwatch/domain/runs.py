"""Run-scoped progress state, event sinks and the registry of known runs."""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import uuid4

from regwatch.domain.errors import RunAlreadyActiveError
from regwatch.domain.model import RunKind, RunPhase, RunStatus

if TYPE_CHECKING:
    from regwatch.domain.model import Gap

log = getLogger(__name__)

_SINGLE_OWNER_KINDS = frozenset({RunKind.FULL})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class SyncEvent:
    name: str
    partition_key: str | None = None
    page: int | None = None
    cumulative: int | None = None
    detail: str = ""
    at: datetime = field(default_factory=_utcnow)


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: SyncEvent) -> None: ...


class LoggingEventSink:
    """Fallback sink used when nobody is listening for progress."""

    def emit(self, event: SyncEvent) -> None:
        log.debug(
            "%s partition=%s page=%s cumulative=%s %s",
            event.name,
            event.partition_key,
            event.page,
            event.cumulative,
            event.detail,
        )


@dataclass(eq=False, kw_only=True)
class SyncRun:
    """Progress and outcome of one orchestrator run.

    A run is created per invocation and handed down the call chain; it doubles as the
    event sink for everything the run triggers.
    """

    kind: RunKind
    id: str = field(default_factory=lambda: uuid4().hex)
    phase: RunPhase = RunPhase.PENDING
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    partitions_planned: int = 0
    partitions_completed: list[str] = field(default_factory=list[str])
    partitions_failed: dict[str, str] = field(default_factory=dict[str, str])
    partitions_skipped: list[str] = field(default_factory=list[str])
    gaps: list[Gap] = field(default_factory=list["Gap"])
    conflicts: list[str] = field(default_factory=list[str])

    records_processed: int = 0
    records_filtered: int = 0
    normalization_errors: int = 0
    entities_created: int = 0
    entities_changed: int = 0
    alerts_written: int = 0
    error: str | None = None

    events: deque[SyncEvent] = field(default_factory=lambda: deque(maxlen=200), repr=False)

    def emit(self, event: SyncEvent) -> None:
        self.events.append(event)
        log.debug(
            "[run %s] %s partition=%s page=%s cumulative=%s",
            self.id[:8],
            event.name,
            event.partition_key,
            event.page,
            event.cumulative,
        )

    def enter_phase(self, phase: RunPhase) -> None:
        self.phase = phase
        self.emit(SyncEvent(name=f"phase:{phase}"))

    def partition_completed(self, partition_key: str) -> None:
        self.partitions_completed.append(partition_key)
        self.partitions_failed.pop(partition_key, None)
        self.emit(SyncEvent(name="partition_completed", partition_key=partition_key))

    def partition_failed(self, partition_key: str, reason: str) -> None:
        self.partitions_failed[partition_key] = reason
        self.emit(SyncEvent(name="partition_failed", partition_key=partition_key, detail=reason))

    def partition_skipped(self, partition_key: str) -> None:
        self.partitions_skipped.append(partition_key)

    def add_gap(self, gap: Gap) -> None:
        self.gaps.append(gap)
        self.emit(SyncEvent(name="gap", partition_key=gap.partition_key, detail=gap.reason))

    def record_conflict(self, entity_id: str) -> None:
        self.conflicts.append(entity_id)

    @property
    def is_finished(self) -> bool:
        return self.phase is RunPhase.FINISHED

    def finish(self, *, cancelled: bool = False, error: str | None = None) -> RunStatus:
        self.error = error
        if error is not None:
            self.status = RunStatus.FAILED
        elif cancelled:
            self.status = RunStatus.CANCELLED
        elif self.partitions_failed or self.gaps or self.conflicts:
            self.status = RunStatus.PARTIAL if self.partitions_completed else RunStatus.FAILED
        else:
            self.status = RunStatus.SUCCESS
        self.finished_at = _utcnow()
        self.enter_phase(RunPhase.FINISHED)
        return self.status


class RunRegistry:
    """Process-local index of runs for status reporting."""

    def __init__(self, *, max_runs: int = 100) -> None:
        self._max_runs = max_runs
        self._runs: OrderedDict[str, SyncRun] = OrderedDict()
        self._lock = threading.Lock()

    def start(self, kind: RunKind) -> SyncRun:
        with self._lock:
            if kind in _SINGLE_OWNER_KINDS:
                for run in self._runs.values():
                    if run.kind is kind and not run.is_finished:
                        raise RunAlreadyActiveError(
                            f"A {kind} run is already in progress", run_id=run.id
                        )
            run = SyncRun(kind=kind)
            self._runs[run.id] = run
            self._evict()
            return run

    def get(self, run_id: str) -> SyncRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def active(self) -> list[SyncRun]:
        with self._lock:
            return [run for run in self._runs.values() if not run.is_finished]

    def _evict(self) -> None:
        while len(self._runs) > self._max_runs:
            oldest_id = next(
                (run_id for run_id, run in self._runs.items() if run.is_finished), None
            )
            if oldest_id is None:
                return
            del self._runs[oldest_id]
