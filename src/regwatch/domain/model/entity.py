"""Registered entities and their versioned address timeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from regwatch.domain.model.enums import AddressKind, EntityStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

TRACKED_ATTRIBUTES: tuple[str, ...] = (
    "name",
    "legal_form",
    "status",
    "registration_date",
    "industry_code",
)


def _normalise_text(value: str | None) -> str:
    if value is None:
        return ""
    return " ".join(value.split())


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=UTC)


@dataclass(eq=False, kw_only=True)
class Entity:
    """A registered organisation as last seen upstream."""

    entity_id: str
    name: str = ""
    legal_form: str = ""
    status: EntityStatus = EntityStatus.ACTIVE
    registration_date: date | None = None
    industry_code: str = ""

    bankrupt_since: date | None = None
    dissolved_since: date | None = None

    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None

    def apply_snapshot(self, snapshot: Entity, *, observed_at: datetime) -> tuple[str, ...]:
        """Copy tracked attributes from ``snapshot`` and return the names that changed."""

        if snapshot.entity_id != self.entity_id:
            raise ValueError(
                f"Cannot apply snapshot of {snapshot.entity_id} to entity {self.entity_id}"
            )

        changed: list[str] = []
        previous_status = self.status
        for attribute in TRACKED_ATTRIBUTES:
            incoming = getattr(snapshot, attribute)
            if getattr(self, attribute) != incoming:
                setattr(self, attribute, incoming)
                changed.append(attribute)

        if self.status is not previous_status:
            self._stamp_status_transition(snapshot, observed_at=observed_at)
        elif snapshot.bankrupt_since and self.bankrupt_since is None:
            self.bankrupt_since = snapshot.bankrupt_since
        self.last_seen_at = observed_at
        return tuple(changed)

    def mark_first_seen(self, observed_at: datetime) -> None:
        self.first_seen_at = self.first_seen_at or observed_at
        self.last_seen_at = observed_at
        if self.status is EntityStatus.BANKRUPT and self.bankrupt_since is None:
            self.bankrupt_since = observed_at.date()
        if self.status is EntityStatus.DISSOLVED and self.dissolved_since is None:
            self.dissolved_since = observed_at.date()

    def _stamp_status_transition(self, snapshot: Entity, *, observed_at: datetime) -> None:
        if self.status is EntityStatus.BANKRUPT:
            self.bankrupt_since = snapshot.bankrupt_since or observed_at.date()
        elif self.status is EntityStatus.DISSOLVED:
            self.dissolved_since = snapshot.dissolved_since or observed_at.date()
            if snapshot.bankrupt_since:
                self.bankrupt_since = snapshot.bankrupt_since


@dataclass(eq=False, kw_only=True)
class AddressRecord:
    """One jurisdiction/address assignment for an entity and address kind.

    ``valid_to`` is ``None`` exactly while ``is_current`` is true. Records are never
    edited apart from :meth:`close`.
    """

    id: UUID = field(default_factory=uuid4)
    entity_id: str
    kind: AddressKind
    jurisdiction_id: str = ""
    jurisdiction_name: str = ""
    freeform_address: str = ""
    postal_code: str = ""
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    is_current: bool = True

    def same_location(self, other: AddressRecord) -> bool:
        return (
            _normalise_text(self.freeform_address).casefold()
            == _normalise_text(other.freeform_address).casefold()
            and _normalise_text(self.postal_code) == _normalise_text(other.postal_code)
            and _normalise_text(self.jurisdiction_id) == _normalise_text(other.jurisdiction_id)
        )

    def open(self, valid_from: datetime) -> None:
        self.valid_from = valid_from
        self.valid_to = None
        self.is_current = True

    def close(self, valid_to: datetime) -> None:
        if not self.is_current:
            raise ValueError(f"Address record {self.id} is already closed")
        self.valid_to = valid_to
        self.is_current = False


@dataclass(frozen=True, slots=True)
class NormalizedEntity:
    """Output of the normaliser: an entity snapshot plus its observed addresses."""

    entity: Entity
    addresses: Sequence[AddressRecord] = ()
    modified_at: datetime | None = None
