"""Value objects and bookkeeping rows for partitioned synchronisation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from uuid import UUID, uuid4

from regwatch.domain.model.enums import GapReason

DELTA_PREFIX = "delta/"


def _iso(value: date | None) -> str:
    return value.isoformat() if value is not None else ""


@dataclass(frozen=True, slots=True)
class Partition:
    """A disjoint slice of the fetch domain.

    ``registered_from``/``registered_to`` are inclusive. ``jurisdiction_id=None``
    means the slice is not restricted by jurisdiction.
    """

    jurisdiction_id: str | None = None
    registered_from: date | None = None
    registered_to: date | None = None
    modified_since: datetime | None = None

    def __post_init__(self) -> None:
        if (
            self.registered_from is not None
            and self.registered_to is not None
            and self.registered_from > self.registered_to
        ):
            raise ValueError(
                f"Partition range is inverted: {self.registered_from} > {self.registered_to}"
            )

    @property
    def scope(self) -> str:
        return self.jurisdiction_id or "*"

    @property
    def key(self) -> str:
        key = f"{self.scope}:{_iso(self.registered_from)}..{_iso(self.registered_to)}"
        if self.modified_since is not None:
            return DELTA_PREFIX + key
        return key

    @property
    def span_days(self) -> int | None:
        if self.registered_from is None or self.registered_to is None:
            return None
        return (self.registered_to - self.registered_from).days + 1

    def can_split(self, min_days: int = 1) -> bool:
        span = self.span_days
        return span is not None and span >= 2 * min_days

    def halves(self) -> tuple[Partition, Partition]:
        span = self.span_days
        if span is None or span < 2 or self.registered_from is None:  # noqa: PLR2004
            raise ValueError(f"Partition {self.key} cannot be split further")
        middle = self.registered_from + timedelta(days=span // 2 - 1)
        left = Partition(
            jurisdiction_id=self.jurisdiction_id,
            registered_from=self.registered_from,
            registered_to=middle,
            modified_since=self.modified_since,
        )
        right = Partition(
            jurisdiction_id=self.jurisdiction_id,
            registered_from=middle + timedelta(days=1),
            registered_to=self.registered_to,
            modified_since=self.modified_since,
        )
        return left, right

    def contains(self, *, jurisdiction_id: str | None, registration_date: date | None) -> bool:
        if self.jurisdiction_id is not None and jurisdiction_id != self.jurisdiction_id:
            return False
        if registration_date is None:
            return self.registered_from is None and self.registered_to is None
        if self.registered_from is not None and registration_date < self.registered_from:
            return False
        return not (self.registered_to is not None and registration_date > self.registered_to)


@dataclass(frozen=True, slots=True)
class SyncDomain:
    """A jurisdiction set crossed with a registration-date range."""

    registered_from: date
    registered_to: date
    jurisdictions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.registered_from > self.registered_to:
            raise ValueError("Domain start must not be after its end")

    def coarse_partitions(self, *, modified_since: datetime | None = None) -> list[Partition]:
        scopes: list[str | None] = list(dict.fromkeys(self.jurisdictions)) or [None]
        return [
            Partition(
                jurisdiction_id=scope,
                registered_from=self.registered_from,
                registered_to=self.registered_to,
                modified_since=modified_since,
            )
            for scope in scopes
        ]


@dataclass(eq=False, kw_only=True)
class Gap:
    """A slice that could not be fully retrieved and waits for a gap-fill run."""

    id: UUID = field(default_factory=uuid4)
    partition_key: str
    jurisdiction_id: str | None = None
    registered_from: date | None = None
    registered_to: date | None = None
    modified_since: datetime | None = None
    reason: GapReason
    cursor: int = 0
    estimated_records: int | None = None
    detail: str = ""
    attempts: int = 0
    detected_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def for_partition(
        cls,
        partition: Partition,
        *,
        reason: GapReason,
        cursor: int = 0,
        estimated_records: int | None = None,
        detail: str = "",
        detected_at: datetime | None = None,
    ) -> Gap:
        return cls(
            partition_key=partition.key,
            jurisdiction_id=partition.jurisdiction_id,
            registered_from=partition.registered_from,
            registered_to=partition.registered_to,
            modified_since=partition.modified_since,
            reason=reason,
            cursor=cursor,
            estimated_records=estimated_records,
            detail=detail,
            detected_at=detected_at,
        )

    @property
    def partition(self) -> Partition:
        return Partition(
            jurisdiction_id=self.jurisdiction_id,
            registered_from=self.registered_from,
            registered_to=self.registered_to,
            modified_since=self.modified_since,
        )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def density(self) -> float:
        """Estimated records per day of registration range."""

        if not self.estimated_records:
            return 0.0
        span = self.partition.span_days
        return self.estimated_records / span if span else float(self.estimated_records)


@dataclass(eq=False, kw_only=True)
class SyncWatermark:
    partition_key: str
    last_successful_run: datetime
    last_cursor: str | None = None
    records_seen: int = 0
