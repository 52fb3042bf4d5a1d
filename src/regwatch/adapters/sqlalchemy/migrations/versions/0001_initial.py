"""Initial registry schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from regwatch.adapters.sqlalchemy.mappings import UTCDateTime

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_ENTITY_STATUS = sa.Enum("ACTIVE", "BANKRUPT", "DISSOLVED", name="entitystatus", native_enum=False)
_ADDRESS_KIND = sa.Enum("BUSINESS", "POSTAL", name="addresskind", native_enum=False)
_CONFIDENCE = sa.Enum("LOW", "MEDIUM", "HIGH", name="confidence", native_enum=False)
_RISK_LEVEL = sa.Enum("LOW", "MEDIUM", "HIGH", "CRITICAL", name="risklevel", native_enum=False)
_GAP_REASON = sa.Enum(
    "CAP_EXCEEDED", "TRANSIENT_FAILURE", "PAGE_CEILING", name="gapreason", native_enum=False
)


def upgrade() -> None:
    op.create_table(
        "entity",
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("legal_form", sa.String(), nullable=False),
        sa.Column("status", _ENTITY_STATUS, nullable=False),
        sa.Column("registration_date", sa.Date(), nullable=True),
        sa.Column("industry_code", sa.String(), nullable=False),
        sa.Column("bankrupt_since", sa.Date(), nullable=True),
        sa.Column("dissolved_since", sa.Date(), nullable=True),
        sa.Column("first_seen_at", UTCDateTime(), nullable=True),
        sa.Column("last_seen_at", UTCDateTime(), nullable=True),
        sa.PrimaryKeyConstraint("entity_id", name="pk_entity"),
    )

    op.create_table(
        "address_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("kind", _ADDRESS_KIND, nullable=False),
        sa.Column("jurisdiction_id", sa.String(), nullable=False),
        sa.Column("jurisdiction_name", sa.String(), nullable=False),
        sa.Column("freeform_address", sa.String(), nullable=False),
        sa.Column("postal_code", sa.String(), nullable=False),
        sa.Column("valid_from", UTCDateTime(), nullable=True),
        sa.Column("valid_to", UTCDateTime(), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_address_record"),
    )
    op.create_index(
        "ix_address_record_entity_kind",
        "address_record",
        ["entity_id", "kind", "valid_from"],
    )
    op.create_index(
        "ix_address_record_jurisdiction",
        "address_record",
        ["jurisdiction_id", "is_current"],
    )
    op.create_index(
        "uq_address_record_current",
        "address_record",
        ["entity_id", "kind"],
        unique=True,
        sqlite_where=sa.text("is_current = 1"),
        postgresql_where=sa.text("is_current"),
    )

    op.create_table(
        "movement_alert",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("from_jurisdiction", sa.String(), nullable=False),
        sa.Column("to_jurisdiction", sa.String(), nullable=False),
        sa.Column("transition_date", UTCDateTime(), nullable=False),
        sa.Column("confidence", _CONFIDENCE, nullable=False),
        sa.Column("risk_level", _RISK_LEVEL, nullable=False),
        sa.Column("evidence", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("address_kind", _ADDRESS_KIND, nullable=False),
        sa.Column("detected_at", UTCDateTime(), nullable=True),
        sa.Column("updated_at", UTCDateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_movement_alert"),
        sa.UniqueConstraint(
            "entity_id",
            "from_jurisdiction",
            "to_jurisdiction",
            "transition_date",
            name="uq_movement_alert_transition",
        ),
    )
    op.create_index(
        "ix_movement_alert_to_active",
        "movement_alert",
        ["to_jurisdiction", "is_active"],
    )

    op.create_table(
        "sync_watermark",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("last_successful_run", UTCDateTime(), nullable=False),
        sa.Column("last_cursor", sa.String(), nullable=True),
        sa.Column("records_seen", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("partition_key", name="pk_sync_watermark"),
    )

    op.create_table(
        "sync_gap",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("jurisdiction_id", sa.String(), nullable=True),
        sa.Column("registered_from", sa.Date(), nullable=True),
        sa.Column("registered_to", sa.Date(), nullable=True),
        sa.Column("modified_since", UTCDateTime(), nullable=True),
        sa.Column("reason", _GAP_REASON, nullable=False),
        sa.Column("cursor", sa.Integer(), nullable=False),
        sa.Column("estimated_records", sa.Integer(), nullable=True),
        sa.Column("detail", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("detected_at", UTCDateTime(), nullable=True),
        sa.Column("resolved_at", UTCDateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_sync_gap"),
    )
    op.create_index("ix_sync_gap_partition_key", "sync_gap", ["partition_key", "resolved_at"])

    op.create_table(
        "jurisdiction",
        sa.Column("jurisdiction_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("jurisdiction_id", name="pk_jurisdiction"),
    )

    op.create_table(
        "postal_code_observation",
        sa.Column("postal_code", sa.String(), nullable=False),
        sa.Column("jurisdiction_id", sa.String(), nullable=False),
        sa.Column("observations", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint(
            "postal_code", "jurisdiction_id", name="pk_postal_code_observation"
        ),
    )


def downgrade() -> None:
    op.drop_table("postal_code_observation")
    op.drop_table("jurisdiction")
    op.drop_index("ix_sync_gap_partition_key", table_name="sync_gap")
    op.drop_table("sync_gap")
    op.drop_table("sync_watermark")
    op.drop_index("ix_movement_alert_to_active", table_name="movement_alert")
    op.drop_table("movement_alert")
    op.drop_index("uq_address_record_current", table_name="address_record")
    op.drop_index("ix_address_record_jurisdiction", table_name="address_record")
    op.drop_index("ix_address_record_entity_kind", table_name="address_record")
    op.drop_table("address_record")
    op.drop_table("entity")
