"""SQLAlchemy mapping metadata for the regwatch domain model."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from functools import cache
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Dialect,
    Enum,
    Index,
    Integer,
    String,
    Table,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    orm,
)
from sqlalchemy.orm import configure_mappers

from regwatch.domain.model import (
    AddressKind,
    AddressRecord,
    Confidence,
    Entity,
    EntityStatus,
    Gap,
    GapReason,
    MovementAlert,
    RiskLevel,
    SyncWatermark,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

UUIDColumnType = Uuid[uuid.UUID]


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


mapper_registry = orm.registry()
mapper_registry.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_label)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Registry data ---------------------------------------------------------------

entity_table = Table(
    "entity",
    mapper_registry.metadata,
    Column("entity_id", String, primary_key=True),
    Column("name", String, nullable=False, default=""),
    Column("legal_form", String, nullable=False, default=""),
    Column("status", Enum(EntityStatus, native_enum=False), nullable=False),
    Column("registration_date", Date, nullable=True),
    Column("industry_code", String, nullable=False, default=""),
    Column("bankrupt_since", Date, nullable=True),
    Column("dissolved_since", Date, nullable=True),
    Column("first_seen_at", UTCDateTime(), nullable=True),
    Column("last_seen_at", UTCDateTime(), nullable=True),
)

address_record_table = Table(
    "address_record",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column("entity_id", String, nullable=False),
    Column("kind", Enum(AddressKind, native_enum=False), nullable=False),
    Column("jurisdiction_id", String, nullable=False, default=""),
    Column("jurisdiction_name", String, nullable=False, default=""),
    Column("freeform_address", String, nullable=False, default=""),
    Column("postal_code", String, nullable=False, default=""),
    Column("valid_from", UTCDateTime(), nullable=True),
    Column("valid_to", UTCDateTime(), nullable=True),
    Column("is_current", Boolean, nullable=False, default=True),
    Index("ix_address_record_entity_kind", "entity_id", "kind", "valid_from"),
    Index("ix_address_record_jurisdiction", "jurisdiction_id", "is_current"),
)

# at most one current record per entity and address kind
Index(
    "uq_address_record_current",
    address_record_table.c.entity_id,
    address_record_table.c.kind,
    unique=True,
    sqlite_where=address_record_table.c.is_current.is_(True),
    postgresql_where=address_record_table.c.is_current.is_(True),
)

movement_alert_table = Table(
    "movement_alert",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column("entity_id", String, nullable=False),
    Column("from_jurisdiction", String, nullable=False),
    Column("to_jurisdiction", String, nullable=False),
    Column("transition_date", UTCDateTime(), nullable=False),
    Column("confidence", Enum(Confidence, native_enum=False), nullable=False),
    Column("risk_level", Enum(RiskLevel, native_enum=False), nullable=False),
    Column("evidence", JSON, nullable=False, default=list),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("address_kind", Enum(AddressKind, native_enum=False), nullable=False),
    Column("detected_at", UTCDateTime(), nullable=True),
    Column("updated_at", UTCDateTime(), nullable=True),
    UniqueConstraint(
        "entity_id",
        "from_jurisdiction",
        "to_jurisdiction",
        "transition_date",
        name="uq_movement_alert_transition",
    ),
    Index("ix_movement_alert_to_active", "to_jurisdiction", "is_active"),
)

# Sync bookkeeping ------------------------------------------------------------

sync_watermark_table = Table(
    "sync_watermark",
    mapper_registry.metadata,
    Column("partition_key", String, primary_key=True),
    Column("last_successful_run", UTCDateTime(), nullable=False),
    Column("last_cursor", String, nullable=True),
    Column("records_seen", Integer, nullable=False, default=0),
)

sync_gap_table = Table(
    "sync_gap",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column("partition_key", String, nullable=False),
    Column("jurisdiction_id", String, nullable=True),
    Column("registered_from", Date, nullable=True),
    Column("registered_to", Date, nullable=True),
    Column("modified_since", UTCDateTime(), nullable=True),
    Column("reason", Enum(GapReason, native_enum=False), nullable=False),
    Column("cursor", Integer, nullable=False, default=0),
    Column("estimated_records", Integer, nullable=True),
    Column("detail", String, nullable=False, default=""),
    Column("attempts", Integer, nullable=False, default=0),
    Column("detected_at", UTCDateTime(), nullable=True),
    Column("resolved_at", UTCDateTime(), nullable=True),
    Index("ix_sync_gap_partition_key", "partition_key", "resolved_at"),
)

# Jurisdiction directory --------------------------------------------------------

jurisdiction_table = Table(
    "jurisdiction",
    mapper_registry.metadata,
    Column("jurisdiction_id", String, primary_key=True),
    Column("name", String, nullable=False, default=""),
)

postal_code_observation_table = Table(
    "postal_code_observation",
    mapper_registry.metadata,
    Column("postal_code", String, primary_key=True),
    Column("jurisdiction_id", String, primary_key=True),
    Column("observations", Integer, nullable=False, default=1),
)


@cache
def start_mappers() -> orm.registry:
    """Map the domain dataclasses onto their tables (idempotent)."""

    mapper_registry.map_imperatively(Entity, entity_table)
    mapper_registry.map_imperatively(AddressRecord, address_record_table)
    mapper_registry.map_imperatively(MovementAlert, movement_alert_table)
    mapper_registry.map_imperatively(SyncWatermark, sync_watermark_table)
    mapper_registry.map_imperatively(Gap, sync_gap_table)

    configure_mappers()
    return mapper_registry


def create_all_tables(engine: Engine) -> None:
    """Create database tables for the mapped metadata."""

    log.info("Creating all tables")
    mapper_registry.metadata.create_all(engine)
