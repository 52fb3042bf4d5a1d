"""History merging: folding entity snapshots into a versioned address timeline."""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from regwatch.domain.model import start_of_day

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from regwatch.domain.model import AddressKind, AddressRecord, Entity
    from regwatch.domain.ports import RegistryRepositories, RegistryUnitOfWork

log = getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class MergeResult:
    entity_id: str
    is_new: bool
    changed_address_kinds: tuple[AddressKind, ...] = ()
    changed_attributes: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.is_new or bool(self.changed_address_kinds or self.changed_attributes)

    @property
    def needs_detection(self) -> bool:
        """Address moves and status transitions both influence movement risk."""

        return bool(self.changed_address_kinds) or "status" in self.changed_attributes


class HistoryMerger:
    """Idempotently upsert an entity and reconcile its current vs. historical addresses.

    Every call runs in its own unit of work. For each incoming address kind the current
    record is compared structurally; an identical address is a no-op, a different one
    closes the current record and opens the new one at the same instant, so the
    timeline never overlaps and never has a hole.
    """

    def __init__(
        self,
        *,
        unit_of_work_factory: Callable[[], RegistryUnitOfWork],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._unit_of_work_factory = unit_of_work_factory
        self._clock = clock

    def merge(
        self,
        entity: Entity,
        addresses: Sequence[AddressRecord],
        *,
        observed_at: datetime | None = None,
    ) -> MergeResult:
        now = observed_at or self._clock()
        incoming = _latest_by_kind(entity.entity_id, addresses)

        with self._unit_of_work_factory() as uow:
            repositories = uow.repositories
            stored = repositories.entities.get(entity.entity_id, for_update=True)
            if stored is None:
                entity.mark_first_seen(now)
                repositories.entities.add(entity)
                changed_attributes: tuple[str, ...] = ()
                first_valid_from = _first_valid_from(entity, now)
            else:
                changed_attributes = stored.apply_snapshot(entity, observed_at=now)
                first_valid_from = now

            changed_kinds = [
                kind
                for kind, address in incoming
                if self._reconcile(
                    repositories, address, now=now, first_valid_from=first_valid_from
                )
            ]
            uow.commit()

        result = MergeResult(
            entity_id=entity.entity_id,
            is_new=stored is None,
            changed_address_kinds=tuple(changed_kinds),
            changed_attributes=changed_attributes,
        )
        if result.changed:
            log.debug(
                "Merged %s: new=%s kinds=%s attributes=%s",
                result.entity_id,
                result.is_new,
                [str(kind) for kind in result.changed_address_kinds],
                list(result.changed_attributes),
            )
        return result

    @staticmethod
    def _reconcile(
        repositories: RegistryRepositories,
        address: AddressRecord,
        *,
        now: datetime,
        first_valid_from: datetime,
    ) -> bool:
        current = repositories.addresses.current(address.entity_id, address.kind)
        if current is not None and current.same_location(address):
            return False

        if current is None:
            valid_from = first_valid_from
        else:
            # observation times can arrive out of order; never open before the record we close
            valid_from = max(now, current.valid_from) if current.valid_from else now
            repositories.addresses.close_record(current, valid_from)

        address.open(valid_from)
        repositories.addresses.insert_record(address)
        if address.postal_code and address.jurisdiction_id:
            repositories.jurisdictions.observe(
                postal_code=address.postal_code,
                jurisdiction_id=address.jurisdiction_id,
                jurisdiction_name=address.jurisdiction_name,
            )
        return True


def _latest_by_kind(
    entity_id: str,
    addresses: Sequence[AddressRecord],
) -> list[tuple[AddressKind, AddressRecord]]:
    by_kind: dict[AddressKind, AddressRecord] = {}
    for address in addresses:
        if address.entity_id != entity_id:
            raise ValueError(
                f"Address for {address.entity_id} passed with entity {entity_id}"
            )
        by_kind[address.kind] = address
    return sorted(by_kind.items(), key=lambda item: str(item[0]))


def _first_valid_from(entity: Entity, now: datetime) -> datetime:
    if entity.registration_date is None:
        return now
    registered = start_of_day(entity.registration_date)
    return registered if registered <= now else now


class EntityLocks:
    """Per-entity async locks; a lock lives only while someone holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, entity_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._holders[entity_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[entity_id] -= 1
            if self._holders[entity_id] <= 0:
                del self._holders[entity_id]
                self._locks.pop(entity_id, None)

    def __len__(self) -> int:
        return len(self._locks)
