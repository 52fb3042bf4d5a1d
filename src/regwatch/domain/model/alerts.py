"""Movement alerts derived from address histories."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from regwatch.domain.model.enums import AddressKind, Confidence, RiskLevel

type AlertKey = tuple[str, str, str, datetime]


@dataclass(eq=False, kw_only=True)
class MovementAlert:
    id: UUID = field(default_factory=uuid4)
    entity_id: str
    from_jurisdiction: str
    to_jurisdiction: str
    transition_date: datetime
    confidence: Confidence
    risk_level: RiskLevel
    evidence: list[str] = field(default_factory=list[str])
    is_active: bool = True
    address_kind: AddressKind = AddressKind.BUSINESS
    detected_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> AlertKey:
        return (
            self.entity_id,
            self.from_jurisdiction,
            self.to_jurisdiction,
            self.transition_date,
        )

    def absorb(self, other: MovementAlert) -> None:
        """Fold another candidate for the same transition into this one."""

        if other.key != self.key:
            raise ValueError("Cannot absorb an alert for a different transition")
        if other.risk_level.rank > self.risk_level.rank:
            self.risk_level = other.risk_level
        if other.confidence.rank > self.confidence.rank:
            self.confidence = other.confidence
        for line in other.evidence:
            if line not in self.evidence:
                self.evidence.append(line)
        self.is_active = self.is_active or other.is_active


def alert_sort_key(alert: MovementAlert) -> tuple[int, int, float]:
    """Order alerts by risk level, then confidence, then recency (all descending)."""

    return (-alert.risk_level.rank, -alert.confidence.rank, -alert.transition_date.timestamp())
