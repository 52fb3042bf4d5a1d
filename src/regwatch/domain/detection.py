"""Movement detection over address timelines."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from itertools import pairwise
from logging import getLogger
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from regwatch.config.detection import DetectionConfig
from regwatch.domain.model import (
    AddressKind,
    Confidence,
    EntityStatus,
    MovementAlert,
    RiskLevel,
    alert_sort_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from regwatch.domain.model import AddressRecord, AlertKey, Entity
    from regwatch.domain.ports import JurisdictionRepository, RegistryUnitOfWork

log = getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[^\W\d_]+(?:[-'][^\W\d_]+)*")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Transition:
    """Two consecutive same-kind address records with their resolved jurisdictions."""

    kind: AddressKind
    previous: AddressRecord
    current: AddressRecord
    from_jurisdiction: str
    to_jurisdiction: str
    confidence: Confidence
    evidence: tuple[str, ...] = ()

    @property
    def transition_date(self) -> datetime:
        if self.current.valid_from is None:
            raise ValueError("Address record without valid_from in timeline")
        return self.current.valid_from

    @property
    def crosses_jurisdiction(self) -> bool:
        return self.from_jurisdiction != self.to_jurisdiction


@dataclass(frozen=True, slots=True)
class AddressHistory:
    entity: Entity
    records: tuple[AddressRecord, ...]
    transitions: tuple[Transition, ...]


@runtime_checkable
class MovementRule(Protocol):
    """A heuristic turning an address history into movement alerts."""

    def evaluate(self, history: AddressHistory, status: EntityStatus) -> list[MovementAlert]: ...


def _tokens(text: str) -> set[str]:
    return {token.casefold() for token in _TOKEN_PATTERN.findall(text)}


def match_jurisdiction_names(text: str, names: Mapping[str, str]) -> frozenset[str]:
    """Return jurisdictions whose full name appears as whole words in ``text``."""

    haystack = _tokens(text)
    if not haystack:
        return frozenset()
    matches = {
        jurisdiction_id
        for jurisdiction_id, name in names.items()
        if (needle := _tokens(name)) and needle <= haystack
    }
    return frozenset(matches)


class TransitionClassifier:
    """Resolve both sides of each address change and grade the evidence for it.

    A side is taken from the recorded jurisdiction id when present, otherwise from a
    postal code that maps to exactly one jurisdiction, otherwise from jurisdiction
    names found in the address text or entity name. Name matches alone give Low
    confidence; recorded ids give Medium, upgraded to High when the postal-code
    directory independently places the new address in the destination.
    """

    def __init__(
        self, jurisdictions: JurisdictionRepository, *, min_postal_observations: int
    ) -> None:
        self._jurisdictions = jurisdictions
        self._min_observations = min_postal_observations
        self._names: Mapping[str, str] | None = None

    def transitions(self, entity: Entity, records: Sequence[AddressRecord]) -> list[Transition]:
        transitions: list[Transition] = []
        for kind in AddressKind:
            timeline = sorted(
                (record for record in records if record.kind is kind and record.valid_from),
                key=lambda record: record.valid_from or datetime.min.replace(tzinfo=UTC),
            )
            for previous, current in pairwise(timeline):
                transition = self._classify(entity, kind, previous, current)
                if transition is not None:
                    transitions.append(transition)
        return transitions

    def _classify(
        self,
        entity: Entity,
        kind: AddressKind,
        previous: AddressRecord,
        current: AddressRecord,
    ) -> Transition | None:
        origin = self._resolve(entity, previous)
        destination = self._resolve(entity, current)
        if origin is None or destination is None:
            return None
        from_id, from_basis = origin
        to_id, to_basis = destination

        evidence = [f"{kind} address: {from_id} ({from_basis}) -> {to_id} ({to_basis})"]
        if "name" in (from_basis, to_basis):
            confidence = Confidence.LOW
        elif to_basis == "recorded" and self._corroborated(current.postal_code, to_id):
            confidence = Confidence.HIGH
            evidence.append(f"postal code {current.postal_code} lies in {to_id}")
        else:
            confidence = Confidence.MEDIUM

        return Transition(
            kind=kind,
            previous=previous,
            current=current,
            from_jurisdiction=from_id,
            to_jurisdiction=to_id,
            confidence=confidence,
            evidence=tuple(evidence),
        )

    def _resolve(self, entity: Entity, record: AddressRecord) -> tuple[str, str] | None:
        if record.jurisdiction_id:
            return record.jurisdiction_id, "recorded"
        if record.postal_code:
            candidates = self._jurisdictions.jurisdictions_for_postal_code(
                record.postal_code, min_observations=self._min_observations
            )
            if len(candidates) == 1:
                return next(iter(candidates)), "postal"
        matches = match_jurisdiction_names(
            f"{record.freeform_address} {entity.name}", self._load_names()
        )
        if len(matches) == 1:
            return next(iter(matches)), "name"
        return None

    def _corroborated(self, postal_code: str, jurisdiction_id: str) -> bool:
        if not postal_code:
            return False
        candidates = self._jurisdictions.jurisdictions_for_postal_code(
            postal_code, min_observations=self._min_observations
        )
        return candidates == frozenset({jurisdiction_id})

    def _load_names(self) -> Mapping[str, str]:
        if self._names is None:
            self._names = self._jurisdictions.names()
        return self._names


def _alert(
    history: AddressHistory,
    transition: Transition,
    *,
    risk_level: RiskLevel,
    evidence: Iterable[str],
    confidence: Confidence | None = None,
    is_active: bool = True,
) -> MovementAlert:
    return MovementAlert(
        entity_id=history.entity.entity_id,
        from_jurisdiction=transition.from_jurisdiction,
        to_jurisdiction=transition.to_jurisdiction,
        transition_date=transition.transition_date,
        confidence=confidence or transition.confidence,
        risk_level=risk_level,
        evidence=list(evidence),
        is_active=is_active,
        address_kind=transition.kind,
    )


class JurisdictionChangeRule:
    """Grade every address change on its own merits."""

    def __init__(self, config: DetectionConfig) -> None:
        self._config = config

    def evaluate(
        self, history: AddressHistory, status: EntityStatus  # noqa: ARG002
    ) -> list[MovementAlert]:
        alerts: list[MovementAlert] = []
        industry = history.entity.industry_code
        for transition in history.transitions:
            if not transition.crosses_jurisdiction:
                alerts.append(
                    _alert(
                        history,
                        transition,
                        risk_level=RiskLevel.LOW,
                        evidence=[f"address changed within {transition.to_jurisdiction}"],
                        is_active=False,
                    )
                )
                continue

            evidence = list(transition.evidence)
            if transition.confidence is Confidence.LOW:
                risk = RiskLevel.LOW
            else:
                risk = RiskLevel.MEDIUM
                if industry and industry in self._config.high_risk_industries:
                    risk = RiskLevel.HIGH
                    evidence.append(f"industry code {industry} is on the high-risk list")
            alerts.append(_alert(history, transition, risk_level=risk, evidence=evidence))
        return alerts


class BankruptcyProximityRule:
    """Escalate moves followed by bankruptcy (or dissolution) inside the policy window."""

    def __init__(self, config: DetectionConfig) -> None:
        self._config = config

    def evaluate(self, history: AddressHistory, status: EntityStatus) -> list[MovementAlert]:
        entity = history.entity
        alerts: list[MovementAlert] = []
        for transition in history.transitions:
            if not transition.crosses_jurisdiction:
                continue
            moved_on = transition.transition_date.date()
            corroborated = transition.confidence is not Confidence.LOW

            if status is EntityStatus.BANKRUPT or self._within_window(
                moved_on, entity.bankrupt_since
            ):
                since = entity.bankrupt_since
                detail = (
                    f"bankrupt since {since} ({(since - moved_on).days} days after the move)"
                    if since is not None
                    else "entity is bankrupt"
                )
                alerts.append(
                    _alert(
                        history,
                        transition,
                        risk_level=RiskLevel.CRITICAL if corroborated else RiskLevel.HIGH,
                        evidence=[*transition.evidence, detail],
                    )
                )
            elif corroborated and self._within_window(moved_on, entity.dissolved_since):
                alerts.append(
                    _alert(
                        history,
                        transition,
                        risk_level=RiskLevel.HIGH,
                        evidence=[
                            *transition.evidence,
                            f"dissolved on {entity.dissolved_since} shortly after the move",
                        ],
                    )
                )
        return alerts

    def _within_window(self, moved_on: date, event_on: date | None) -> bool:
        if event_on is None:
            return False
        return moved_on <= event_on <= moved_on + self._config.bankruptcy_window


def default_rules(config: DetectionConfig) -> tuple[MovementRule, ...]:
    return (JurisdictionChangeRule(config), BankruptcyProximityRule(config))


def consolidate(candidates: Iterable[MovementAlert]) -> list[MovementAlert]:
    """Collapse candidates for the same transition into a single alert."""

    by_key: dict[AlertKey, MovementAlert] = {}
    for candidate in candidates:
        existing = by_key.get(candidate.key)
        if existing is None:
            by_key[candidate.key] = candidate
        else:
            existing.absorb(candidate)
    return sorted(by_key.values(), key=alert_sort_key)


@dataclass(frozen=True, slots=True)
class DetectionSummary:
    entities: int
    alerts: int
    critical: int


class MovementDetector:
    """Scan address histories and upsert the resulting movement alerts."""

    def __init__(
        self,
        *,
        unit_of_work_factory: Callable[[], RegistryUnitOfWork],
        config: DetectionConfig | None = None,
        rules: Sequence[MovementRule] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._unit_of_work_factory = unit_of_work_factory
        self._config = config or DetectionConfig()
        self._rules = tuple(rules) if rules is not None else default_rules(self._config)
        self._clock = clock

    def detect(self, entity_id: str) -> list[MovementAlert]:
        now = self._clock()
        with self._unit_of_work_factory() as uow:
            repositories = uow.repositories
            entity = repositories.entities.get(entity_id)
            if entity is None:
                log.warning("Detection requested for unknown entity %s", entity_id)
                return []
            records = repositories.addresses.history(entity_id)
            classifier = TransitionClassifier(
                repositories.jurisdictions,
                min_postal_observations=self._config.min_postal_observations,
            )
            history = AddressHistory(
                entity=entity,
                records=tuple(records),
                transitions=tuple(classifier.transitions(entity, records)),
            )
            candidates = [
                alert for rule in self._rules for alert in rule.evaluate(history, entity.status)
            ]
            alerts: list[MovementAlert] = []
            for candidate in consolidate(candidates):
                candidate.detected_at = now
                candidate.updated_at = now
                alerts.append(repositories.alerts.upsert(candidate))
            deactivated = repositories.alerts.deactivate_except(
                entity_id, {alert.key for alert in alerts}
            )
            uow.commit()

        if deactivated:
            log.info("Deactivated %s superseded alerts for %s", deactivated, entity_id)
        return sorted(alerts, key=alert_sort_key)

    def backfill(self, entity_ids: Iterable[str] | None = None) -> DetectionSummary:
        if entity_ids is None:
            with self._unit_of_work_factory() as uow:
                entity_ids = uow.repositories.entities.ids()
        entities = 0
        written = 0
        critical = 0
        for entity_id in entity_ids:
            alerts = self.detect(entity_id)
            entities += 1
            written += len(alerts)
            critical += sum(1 for alert in alerts if alert.risk_level is RiskLevel.CRITICAL)
        log.info(
            "Detection backfill finished: entities=%s alerts=%s critical=%s",
            entities,
            written,
            critical,
        )
        return DetectionSummary(entities=entities, alerts=written, critical=critical)
