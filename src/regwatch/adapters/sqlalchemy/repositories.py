"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

from sqlalchemy import and_, inspect, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from regwatch.adapters.sqlalchemy.mappings import (
    address_record_table,
    entity_table,
    jurisdiction_table,
    movement_alert_table,
    postal_code_observation_table,
    sync_gap_table,
    sync_watermark_table,
)
from regwatch.domain.errors import MergeConflictError
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

    from sqlalchemy import Table
    from sqlalchemy.orm import Session

    from regwatch.domain.model import AlertKey


class SqlAlchemyEntityRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: Entity) -> None:
        self.session.add(entity)

    def get(self, entity_id: str, *, for_update: bool = False) -> Entity | None:
        stmt = select(Entity).where(entity_table.c.entity_id == entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def ids(self) -> list[str]:
        stmt = select(entity_table.c.entity_id).order_by(entity_table.c.entity_id)
        return list(self.session.execute(stmt).scalars())

    def in_jurisdiction(self, jurisdiction_id: str) -> list[Entity]:
        stmt = (
            select(Entity)
            .join(
                address_record_table,
                and_(
                    address_record_table.c.entity_id == entity_table.c.entity_id,
                    address_record_table.c.kind == AddressKind.BUSINESS,
                    address_record_table.c.is_current.is_(True),
                ),
            )
            .where(address_record_table.c.jurisdiction_id == jurisdiction_id)
            .order_by(entity_table.c.entity_id)
        )
        return list(self.session.execute(stmt).scalars())


class SqlAlchemyAddressRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def current(self, entity_id: str, kind: AddressKind) -> AddressRecord | None:
        stmt = (
            select(AddressRecord)
            .where(address_record_table.c.entity_id == entity_id)
            .where(address_record_table.c.kind == kind)
            .where(address_record_table.c.is_current.is_(True))
        )
        records = list(self.session.execute(stmt).scalars())
        if len(records) > 1:
            raise MergeConflictError(
                f"{len(records)} current {kind} addresses for {entity_id}", entity_id=entity_id
            )
        return records[0] if records else None

    def close_record(self, record: AddressRecord, valid_to: datetime) -> None:
        record.close(valid_to)
        # the partial unique index requires the close to hit the table before the insert
        self.session.flush()

    def insert_record(self, record: AddressRecord) -> None:
        self.session.add(record)

    def history(self, entity_id: str) -> list[AddressRecord]:
        stmt = (
            select(AddressRecord)
            .where(address_record_table.c.entity_id == entity_id)
            .order_by(
                address_record_table.c.kind,
                address_record_table.c.valid_from,
                address_record_table.c.is_current,
            )
        )
        return list(self.session.execute(stmt).scalars())


class SqlAlchemyAlertRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert(self, alert: MovementAlert) -> MovementAlert:
        stored = self._by_key(alert.key)
        if stored is None:
            self.session.add(alert)
            return alert
        stored.confidence = alert.confidence
        stored.risk_level = alert.risk_level
        stored.evidence = list(alert.evidence)
        stored.is_active = alert.is_active
        stored.address_kind = alert.address_kind
        stored.updated_at = alert.updated_at
        return stored

    def for_entity(self, entity_id: str) -> list[MovementAlert]:
        stmt = (
            select(MovementAlert)
            .where(movement_alert_table.c.entity_id == entity_id)
            .order_by(movement_alert_table.c.transition_date)
        )
        return list(self.session.execute(stmt).scalars())

    def active_for_jurisdiction(self, jurisdiction_id: str) -> list[MovementAlert]:
        stmt = (
            select(MovementAlert)
            .where(movement_alert_table.c.is_active.is_(True))
            .where(
                or_(
                    movement_alert_table.c.to_jurisdiction == jurisdiction_id,
                    movement_alert_table.c.from_jurisdiction == jurisdiction_id,
                )
            )
        )
        return list(self.session.execute(stmt).scalars())

    def deactivate_except(self, entity_id: str, keep: Collection[AlertKey]) -> int:
        deactivated = 0
        for alert in self.for_entity(entity_id):
            if alert.is_active and alert.key not in keep:
                alert.is_active = False
                deactivated += 1
        return deactivated

    def _by_key(self, key: AlertKey) -> MovementAlert | None:
        entity_id, from_jurisdiction, to_jurisdiction, transition_date = key
        stmt = (
            select(MovementAlert)
            .where(movement_alert_table.c.entity_id == entity_id)
            .where(movement_alert_table.c.from_jurisdiction == from_jurisdiction)
            .where(movement_alert_table.c.to_jurisdiction == to_jurisdiction)
            .where(movement_alert_table.c.transition_date == transition_date)
        )
        return self.session.execute(stmt).scalar_one_or_none()


class SqlAlchemyWatermarkRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, partition_key: str) -> SyncWatermark | None:
        return self.session.get(SyncWatermark, partition_key)

    def set(self, watermark: SyncWatermark) -> None:
        stored = self.get(watermark.partition_key)
        if stored is None:
            self.session.add(watermark)
            return
        stored.last_successful_run = watermark.last_successful_run
        stored.last_cursor = watermark.last_cursor
        stored.records_seen = watermark.records_seen

    def oldest(self, key_prefix: str) -> SyncWatermark | None:
        stmt = (
            select(SyncWatermark)
            .where(sync_watermark_table.c.partition_key.startswith(key_prefix, autoescape=True))
            .order_by(sync_watermark_table.c.last_successful_run)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()


class SqlAlchemyGapRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record(self, gap: Gap) -> Gap:
        stmt = (
            select(Gap)
            .where(sync_gap_table.c.partition_key == gap.partition_key)
            .where(sync_gap_table.c.resolved_at.is_(None))
            .limit(1)
        )
        stored = self.session.execute(stmt).scalar_one_or_none()
        if stored is None:
            fresh = gap if inspect(gap).transient else _copy_gap(gap)
            self.session.add(fresh)
            return fresh
        stored.attempts += 1
        stored.reason = gap.reason
        stored.cursor = gap.cursor
        stored.detail = gap.detail
        if gap.estimated_records is not None:
            stored.estimated_records = gap.estimated_records
        return stored

    def pending(self) -> list[Gap]:
        stmt = (
            select(Gap)
            .where(sync_gap_table.c.resolved_at.is_(None))
            .order_by(sync_gap_table.c.detected_at)
        )
        return list(self.session.execute(stmt).scalars())

    def resolve(self, partition_key: str, resolved_at: datetime) -> int:
        stmt = (
            update(sync_gap_table)
            .where(sync_gap_table.c.partition_key == partition_key)
            .where(sync_gap_table.c.resolved_at.is_(None))
            .values(resolved_at=resolved_at)
        )
        result = self.session.execute(stmt)
        return int(getattr(result, "rowcount", 0) or 0)


class SqlAlchemyJurisdictionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def observe(self, *, postal_code: str, jurisdiction_id: str, jurisdiction_name: str) -> None:
        if jurisdiction_name:
            self._upsert(
                jurisdiction_table,
                {"jurisdiction_id": jurisdiction_id, "name": jurisdiction_name},
                index_elements=["jurisdiction_id"],
                update_columns={"name": jurisdiction_name},
            )
        self._upsert(
            postal_code_observation_table,
            {"postal_code": postal_code, "jurisdiction_id": jurisdiction_id, "observations": 1},
            index_elements=["postal_code", "jurisdiction_id"],
            update_columns={
                "observations": postal_code_observation_table.c.observations + 1,
            },
        )

    def jurisdictions_for_postal_code(
        self, postal_code: str, *, min_observations: int = 1
    ) -> frozenset[str]:
        stmt = (
            select(postal_code_observation_table.c.jurisdiction_id)
            .where(postal_code_observation_table.c.postal_code == postal_code)
            .where(postal_code_observation_table.c.observations >= min_observations)
        )
        return frozenset(self.session.execute(stmt).scalars())

    def names(self) -> dict[str, str]:
        stmt = select(jurisdiction_table.c.jurisdiction_id, jurisdiction_table.c.name)
        return {row.jurisdiction_id: row.name for row in self.session.execute(stmt)}

    def _upsert(
        self,
        table: Table,
        values: dict[str, object],
        *,
        index_elements: list[str],
        update_columns: dict[str, object],
    ) -> None:
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(table).values(**values)
            self.session.execute(
                stmt.on_conflict_do_update(index_elements=index_elements, set_=update_columns)
            )
            return
        if dialect == "postgresql":
            pg_stmt = postgresql_insert(table).values(**values)
            self.session.execute(
                pg_stmt.on_conflict_do_update(index_elements=index_elements, set_=update_columns)
            )
            return

        key_clause = and_(*(table.c[name] == values[name] for name in index_elements))
        exists = self.session.execute(select(table).where(key_clause).limit(1)).first()
        if exists is None:
            self.session.execute(table.insert().values(**values))
        else:
            self.session.execute(update(table).where(key_clause).values(**update_columns))


def _copy_gap(gap: Gap) -> Gap:
    copy = Gap.for_partition(
        gap.partition,
        reason=gap.reason,
        cursor=gap.cursor,
        estimated_records=gap.estimated_records,
        detail=gap.detail,
        detected_at=gap.detected_at,
    )
    copy.attempts = gap.attempts
    return copy


if TYPE_CHECKING:
    from regwatch.domain.ports.persistence import (
        AddressRepository,
        AlertRepository,
        EntityRepository,
        GapRepository,
        JurisdictionRepository,
        WatermarkRepository,
    )

    _session_stub = cast("Session", object())
    _entity_repo: EntityRepository = SqlAlchemyEntityRepository(_session_stub)
    _address_repo: AddressRepository = SqlAlchemyAddressRepository(_session_stub)
    _alert_repo: AlertRepository = SqlAlchemyAlertRepository(_session_stub)
    _watermark_repo: WatermarkRepository = SqlAlchemyWatermarkRepository(_session_stub)
    _gap_repo: GapRepository = SqlAlchemyGapRepository(_session_stub)
    _jurisdiction_repo: JurisdictionRepository = SqlAlchemyJurisdictionRepository(_session_stub)
