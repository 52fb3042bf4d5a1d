"""Capacity-aware pagination over one partition of the registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Protocol

from regwatch.domain.errors import CapExceededError, TransientFetchError
from regwatch.domain.model import Gap, GapReason
from regwatch.domain.ports.fetching import FetchOutcome
from regwatch.domain.runs import LoggingEventSink, SyncEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from regwatch.domain.model import Partition
    from regwatch.domain.ports.fetching import RawRecord, RecordStream, RegistrySource
    from regwatch.domain.runs import EventSink

    from .schema import RegistryPage

log = getLogger(__name__)


class RegistryPageClient(Protocol):
    async def fetch_page(self, partition: Partition, *, page: int, size: int) -> RegistryPage: ...

    async def count(self, partition: Partition) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def page_within_cap(page: int, *, page_size: int, capacity_cap: int) -> bool:
    """Whether ``page`` (zero-based) can be requested without crossing the result ceiling."""

    return page_size * (page + 1) <= capacity_cap


@dataclass(slots=True)
class PaginatedFetcher:
    """Page through a partition while staying under the upstream ceiling.

    The fetcher never writes anywhere; it reports what it could not reach as a
    :class:`Gap` on the stream's :class:`FetchOutcome` and leaves persistence to the
    caller.
    """

    client: RegistryPageClient
    capacity_cap: int
    page_size: int
    max_pages: int | None = None
    supports_modified_since: bool = False
    events: EventSink = field(default_factory=LoggingEventSink)

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.page_size > self.capacity_cap:
            raise ValueError(
                f"page_size {self.page_size} exceeds capacity cap {self.capacity_cap}"
            )

    async def count(self, partition: Partition) -> int:
        return await self.client.count(partition)

    def fetch(
        self,
        partition: Partition,
        *,
        start_page: int = 0,
        events: EventSink | None = None,
    ) -> PartitionFetch:
        if start_page < 0:
            raise ValueError("start_page must not be negative")
        return PartitionFetch(
            fetcher=self,
            partition=partition,
            start_page=start_page,
            events=events or self.events,
        )


@dataclass(slots=True)
class PartitionFetch:
    """Restartable record stream; every iteration starts over from ``start_page``."""

    fetcher: PaginatedFetcher
    partition: Partition
    start_page: int
    events: EventSink
    _outcome: FetchOutcome | None = field(default=None, init=False, repr=False)

    @property
    def outcome(self) -> FetchOutcome:
        if self._outcome is None:
            return FetchOutcome(partition=self.partition, next_page=self.start_page)
        return self._outcome

    def __aiter__(self) -> AsyncIterator[RawRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RawRecord]:
        fetcher = self.fetcher
        partition = self.partition
        outcome = FetchOutcome(partition=partition, next_page=self.start_page)
        self._outcome = outcome
        page = self.start_page

        while True:
            if fetcher.max_pages is not None and outcome.pages_fetched >= fetcher.max_pages:
                outcome.gap = self._gap(GapReason.PAGE_CEILING, page, outcome, "page ceiling")
                break
            if not page_within_cap(
                page, page_size=fetcher.page_size, capacity_cap=fetcher.capacity_cap
            ):
                outcome.gap = self._gap(
                    GapReason.CAP_EXCEEDED,
                    page,
                    outcome,
                    f"page {page} would pass the {fetcher.capacity_cap} record ceiling",
                )
                break

            try:
                result = await fetcher.client.fetch_page(
                    partition, page=page, size=fetcher.page_size
                )
            except CapExceededError as exc:
                outcome.error = exc
                outcome.gap = self._gap(GapReason.CAP_EXCEEDED, page, outcome, str(exc))
                break
            except TransientFetchError as exc:
                log.warning("Giving up on %s at page %s: %s", partition.key, page, exc)
                outcome.error = exc
                outcome.gap = self._gap(GapReason.TRANSIENT_FAILURE, page, outcome, str(exc))
                break

            outcome.total_elements = result.page.total_elements
            outcome.pages_fetched += 1
            for record in result.records:
                outcome.records_seen += 1
                yield record

            page += 1
            outcome.next_page = page
            self.events.emit(
                SyncEvent(
                    name="page",
                    partition_key=partition.key,
                    page=page - 1,
                    cumulative=outcome.records_seen,
                )
            )
            if not result.records or page >= result.page.total_pages:
                outcome.complete = True
                outcome.next_page = None
                break

    def _gap(self, reason: GapReason, page: int, outcome: FetchOutcome, detail: str) -> Gap:
        estimated = None
        if outcome.total_elements is not None:
            estimated = max(outcome.total_elements - outcome.records_seen, 0)
        return Gap.for_partition(
            self.partition,
            reason=reason,
            cursor=page,
            estimated_records=estimated,
            detail=detail,
            detected_at=_utcnow(),
        )


if TYPE_CHECKING:
    _source_check: type[RegistrySource] = PaginatedFetcher
    _stream_check: type[RecordStream] = PartitionFetch
