"""Ports describing how raw registry records are retrieved."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from regwatch.domain.errors import TransientFetchError

if TYPE_CHECKING:
    from regwatch.domain.model import Gap, Partition
    from regwatch.domain.runs import EventSink

type RawRecord = Mapping[str, object]


@dataclass(slots=True)
class FetchOutcome:
    """How far a partition fetch got once its record stream is exhausted."""

    partition: Partition
    pages_fetched: int = 0
    records_seen: int = 0
    total_elements: int | None = None
    next_page: int | None = None
    complete: bool = False
    gap: Gap | None = None
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return isinstance(self.error, TransientFetchError)


@runtime_checkable
class RecordStream(Protocol):
    """Lazy, restartable stream of raw records for one partition."""

    @property
    def outcome(self) -> FetchOutcome: ...

    def __aiter__(self) -> AsyncIterator[RawRecord]: ...


@runtime_checkable
class RegistrySource(Protocol):
    """Everything the planner and orchestrator need from the upstream registry."""

    @property
    def capacity_cap(self) -> int: ...

    @property
    def supports_modified_since(self) -> bool: ...

    async def count(self, partition: Partition) -> int: ...

    def fetch(
        self,
        partition: Partition,
        *,
        start_page: int = 0,
        events: EventSink | None = None,
    ) -> RecordStream: ...
