"""Domain model for registry synchronisation and movement detection."""

from __future__ import annotations

from .alerts import AlertKey, MovementAlert, alert_sort_key
from .entity import TRACKED_ATTRIBUTES, AddressRecord, Entity, NormalizedEntity, start_of_day
from .enums import (
    AddressKind,
    Confidence,
    EntityStatus,
    GapReason,
    RiskLevel,
    RunKind,
    RunPhase,
    RunStatus,
)
from .sync import Gap, Partition, SyncDomain, SyncWatermark

__all__ = [
    "TRACKED_ATTRIBUTES",
    "AddressKind",
    "AddressRecord",
    "AlertKey",
    "Confidence",
    "Entity",
    "EntityStatus",
    "Gap",
    "GapReason",
    "MovementAlert",
    "NormalizedEntity",
    "Partition",
    "RiskLevel",
    "RunKind",
    "RunPhase",
    "RunStatus",
    "SyncDomain",
    "SyncWatermark",
    "alert_sort_key",
    "start_of_day",
]
