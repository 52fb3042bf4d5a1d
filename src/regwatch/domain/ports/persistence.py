"""Ports for persisting entities, address timelines, alerts and sync bookkeeping."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from regwatch.domain.model import (
    AddressKind,
    AddressRecord,
    Entity,
    Gap,
    MovementAlert,
    SyncWatermark,
)

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime

    from regwatch.domain.model import AlertKey


@runtime_checkable
class Repository[TEntity](Protocol):
    """Minimal repository contract for a persistent aggregate store."""

    def add(self, entity: TEntity) -> None: ...


@runtime_checkable
class EntityRepository(Repository[Entity], Protocol):
    def get(self, entity_id: str, *, for_update: bool = False) -> Entity | None: ...

    def ids(self) -> list[str]: ...

    def in_jurisdiction(self, jurisdiction_id: str) -> list[Entity]:
        """Entities whose current business address lies in ``jurisdiction_id``."""
        ...


@runtime_checkable
class AddressRepository(Protocol):
    def current(self, entity_id: str, kind: AddressKind) -> AddressRecord | None:
        """Return the current record, raising ``MergeConflictError`` if several exist."""
        ...

    def close_record(self, record: AddressRecord, valid_to: datetime) -> None: ...

    def insert_record(self, record: AddressRecord) -> None: ...

    def history(self, entity_id: str) -> list[AddressRecord]:
        """Full timeline of the entity ordered by kind then ``valid_from``."""
        ...


@runtime_checkable
class AlertRepository(Protocol):
    def upsert(self, alert: MovementAlert) -> MovementAlert: ...

    def for_entity(self, entity_id: str) -> list[MovementAlert]: ...

    def active_for_jurisdiction(self, jurisdiction_id: str) -> list[MovementAlert]: ...

    def deactivate_except(self, entity_id: str, keep: Collection[AlertKey]) -> int: ...


@runtime_checkable
class WatermarkRepository(Protocol):
    def get(self, partition_key: str) -> SyncWatermark | None: ...

    def set(self, watermark: SyncWatermark) -> None: ...

    def oldest(self, key_prefix: str) -> SyncWatermark | None: ...


@runtime_checkable
class GapRepository(Protocol):
    def record(self, gap: Gap) -> Gap:
        """Store ``gap``, folding it into an unresolved gap with the same key."""
        ...

    def pending(self) -> list[Gap]: ...

    def resolve(self, partition_key: str, resolved_at: datetime) -> int: ...


@runtime_checkable
class JurisdictionRepository(Protocol):
    """Postal-code to jurisdiction observations and jurisdiction names."""

    def observe(
        self, *, postal_code: str, jurisdiction_id: str, jurisdiction_name: str
    ) -> None: ...

    def jurisdictions_for_postal_code(
        self, postal_code: str, *, min_observations: int = 1
    ) -> frozenset[str]: ...

    def names(self) -> dict[str, str]: ...
