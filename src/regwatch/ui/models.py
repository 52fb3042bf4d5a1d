"""Pydantic request/response schemas for the job and query API."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, model_validator

from regwatch.domain.model import (
    AddressKind,
    Confidence,
    EntityStatus,
    GapReason,
    RiskLevel,
    RunKind,
    RunPhase,
    RunStatus,
)

if TYPE_CHECKING:
    from regwatch.app import EntityView
    from regwatch.domain.model import Gap, MovementAlert
    from regwatch.domain.runs import SyncRun


class FullSyncRequest(BaseModel):
    jurisdictions: list[str] = Field(
        default_factory=list[str], description="Jurisdiction ids to sync (empty: all)"
    )
    registered_from: date | None = Field(
        default=None, description="Earliest registration date (defaults to config)"
    )
    registered_to: date | None = Field(
        default=None, description="Latest registration date (defaults to today)"
    )
    resume_since: datetime | None = Field(
        default=None,
        description="Skip partitions whose watermark is at least this recent",
    )

    @model_validator(mode="after")
    def _check_range(self) -> FullSyncRequest:
        if (
            self.registered_from is not None
            and self.registered_to is not None
            and self.registered_from > self.registered_to
        ):
            raise ValueError("registered_from must not be after registered_to")
        return self


class IncrementalSyncRequest(BaseModel):
    since: datetime | None = Field(
        default=None, description="Fetch changes after this instant (defaults to watermark)"
    )
    jurisdictions: list[str] = Field(
        default_factory=list[str], description="Jurisdiction ids to refresh (empty: all)"
    )


class RunAccepted(BaseModel):
    run_id: str = Field(..., description="Identifier of the scheduled run")
    kind: RunKind
    status_url: str = Field(..., description="Where to poll for progress")


class GapResponse(BaseModel):
    partition_key: str
    reason: GapReason
    cursor: int
    estimated_records: int | None = None
    detail: str = ""
    attempts: int = 0

    @classmethod
    def from_domain(cls, gap: Gap) -> GapResponse:
        return cls(
            partition_key=gap.partition_key,
            reason=gap.reason,
            cursor=gap.cursor,
            estimated_records=gap.estimated_records,
            detail=gap.detail,
            attempts=gap.attempts,
        )


class RunStatusResponse(BaseModel):
    run_id: str
    kind: RunKind
    phase: RunPhase
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    partitions_planned: int = 0
    partitions_completed: list[str] = Field(default_factory=list[str])
    partitions_failed: dict[str, str] = Field(default_factory=dict[str, str])
    partitions_skipped: int = 0
    gaps: list[GapResponse] = Field(default_factory=list[GapResponse])
    conflicts: list[str] = Field(default_factory=list[str])
    records_processed: int = 0
    records_filtered: int = 0
    normalization_errors: int = 0
    entities_created: int = 0
    entities_changed: int = 0
    alerts_written: int = 0
    error: str | None = None

    @classmethod
    def from_run(cls, run: SyncRun) -> RunStatusResponse:
        return cls(
            run_id=run.id,
            kind=run.kind,
            phase=run.phase,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            partitions_planned=run.partitions_planned,
            partitions_completed=list(run.partitions_completed),
            partitions_failed=dict(run.partitions_failed),
            partitions_skipped=len(run.partitions_skipped),
            gaps=[GapResponse.from_domain(gap) for gap in run.gaps],
            conflicts=list(run.conflicts),
            records_processed=run.records_processed,
            records_filtered=run.records_filtered,
            normalization_errors=run.normalization_errors,
            entities_created=run.entities_created,
            entities_changed=run.entities_changed,
            alerts_written=run.alerts_written,
            error=run.error,
        )


class AlertResponse(BaseModel):
    entity_id: str
    from_jurisdiction: str
    to_jurisdiction: str
    transition_date: datetime
    confidence: Confidence
    risk_level: RiskLevel
    address_kind: AddressKind
    evidence: list[str] = Field(default_factory=list[str])

    @classmethod
    def from_domain(cls, alert: MovementAlert) -> AlertResponse:
        return cls(
            entity_id=alert.entity_id,
            from_jurisdiction=alert.from_jurisdiction,
            to_jurisdiction=alert.to_jurisdiction,
            transition_date=alert.transition_date,
            confidence=alert.confidence,
            risk_level=alert.risk_level,
            address_kind=alert.address_kind,
            evidence=list(alert.evidence),
        )


class EntityResponse(BaseModel):
    entity_id: str
    name: str
    legal_form: str = ""
    status: EntityStatus
    registration_date: date | None = None
    industry_code: str = ""
    address: str | None = Field(default=None, description="Current business address")
    postal_code: str | None = None

    @classmethod
    def from_view(cls, view: EntityView) -> EntityResponse:
        entity = view.entity
        address = view.business_address
        return cls(
            entity_id=entity.entity_id,
            name=entity.name,
            legal_form=entity.legal_form,
            status=entity.status,
            registration_date=entity.registration_date,
            industry_code=entity.industry_code,
            address=address.freeform_address if address else None,
            postal_code=address.postal_code if address else None,
        )


class JurisdictionResponse(BaseModel):
    jurisdiction_id: str
    is_stale: bool = Field(..., description="A background refresh has been requested")
    loaded_at: datetime | None = None
    entities: list[EntityResponse] = Field(default_factory=list[EntityResponse])
    alerts: list[AlertResponse] = Field(default_factory=list[AlertResponse])
