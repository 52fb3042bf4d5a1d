"""Domain enums (pure, dependency-light)."""

from __future__ import annotations

from enum import StrEnum


class EntityStatus(StrEnum):
    ACTIVE = "active"
    BANKRUPT = "bankrupt"
    DISSOLVED = "dissolved"


class AddressKind(StrEnum):
    BUSINESS = "business"
    POSTAL = "postal"


class Confidence(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_CONFIDENCE_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}
_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


class GapReason(StrEnum):
    CAP_EXCEEDED = "cap_exceeded"
    TRANSIENT_FAILURE = "transient_failure"
    PAGE_CEILING = "page_ceiling"


class RunKind(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    GAP_FILL = "gapfill"


class RunPhase(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    SYNCING = "syncing"
    FINISHED = "finished"


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
