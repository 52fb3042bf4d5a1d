from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from regwatch.adapters.registry import normalize_record
from regwatch.config import DetectionConfig
from regwatch.domain.detection import MovementDetector, consolidate, match_jurisdiction_names
from regwatch.domain.history import HistoryMerger
from regwatch.domain.model import (
    AddressKind,
    AddressRecord,
    Confidence,
    Entity,
    MovementAlert,
    RiskLevel,
)
from tests.helpers.registry import InMemoryRegistryStore, registry_record

if TYPE_CHECKING:
    from collections.abc import Callable

    from regwatch.adapters.sqlalchemy import SqlAlchemyUnitOfWork
    from regwatch.domain.ports import RegistryUnitOfWork

MOVED_AT = datetime(2024, 2, 1, 9, tzinfo=UTC)

OSLO = {"jurisdiction": "0301", "jurisdiction_name": "Oslo", "postal_code": "0150"}
BERGEN = {
    "jurisdiction": "4601",
    "jurisdiction_name": "Bergen",
    "postal_code": "5003",
    "street": "Strandkaien 2",
    "city": "Bergen",
}


class _Timeline:
    def __init__(self, factory: Callable[[], RegistryUnitOfWork]) -> None:
        self.merger = HistoryMerger(unit_of_work_factory=factory)

    def observe(self, raw: dict[str, object], at: datetime) -> None:
        normalized = normalize_record(raw)
        self.merger.merge(normalized.entity, normalized.addresses, observed_at=at)


def _moved_then(
    factory: Callable[[], RegistryUnitOfWork],
    *,
    bankruptcy_date: date | None = None,
    industry_code: str | None = None,
) -> None:
    timeline = _Timeline(factory)
    timeline.observe(
        registry_record("E1", industry_code=industry_code, **OSLO),
        MOVED_AT - timedelta(days=90),
    )
    timeline.observe(registry_record("E1", industry_code=industry_code, **BERGEN), MOVED_AT)
    if bankruptcy_date is not None:
        timeline.observe(
            registry_record(
                "E1", industry_code=industry_code, bankruptcy_date=bankruptcy_date, **BERGEN
            ),
            datetime.combine(bankruptcy_date, datetime.min.time(), tzinfo=UTC),
        )


def test_move_followed_by_bankruptcy_is_critical(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
) -> None:
    _moved_then(sqlite_unit_of_work, bankruptcy_date=MOVED_AT.date() + timedelta(days=60))
    detector = MovementDetector(unit_of_work_factory=sqlite_unit_of_work)

    alerts = detector.detect("E1")

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.risk_level is RiskLevel.CRITICAL
    assert alert.from_jurisdiction == "0301"
    assert alert.to_jurisdiction == "4601"
    assert alert.transition_date == MOVED_AT
    assert alert.address_kind is AddressKind.BUSINESS
    assert alert.is_active is True
    assert any("60 days after the move" in line for line in alert.evidence)


def test_detection_is_idempotent(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
) -> None:
    _moved_then(sqlite_unit_of_work, bankruptcy_date=MOVED_AT.date() + timedelta(days=60))
    detector = MovementDetector(unit_of_work_factory=sqlite_unit_of_work)

    first = detector.detect("E1")
    second = detector.detect("E1")

    with sqlite_unit_of_work() as uow:
        stored = uow.repositories.alerts.for_entity("E1")
    assert [alert.key for alert in first] == [alert.key for alert in second]
    assert len(stored) == 1
    assert stored[0].risk_level is RiskLevel.CRITICAL


def test_plain_move_is_medium(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
) -> None:
    _moved_then(sqlite_unit_of_work)

    alerts = MovementDetector(unit_of_work_factory=sqlite_unit_of_work).detect("E1")

    assert [(alert.risk_level, alert.confidence) for alert in alerts] == [
        (RiskLevel.MEDIUM, Confidence.MEDIUM)
    ]


def test_postal_directory_corroborates_destination(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
) -> None:
    _moved_then(sqlite_unit_of_work)
    detector = MovementDetector(
        unit_of_work_factory=sqlite_unit_of_work,
        config=DetectionConfig(min_postal_observations=1),
    )

    (alert,) = detector.detect("E1")

    assert alert.confidence is Confidence.HIGH
    assert any("postal code 5003 lies in 4601" in line for line in alert.evidence)


def test_high_risk_industry_escalates_move(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
) -> None:
    _moved_then(sqlite_unit_of_work, industry_code="56.101")

    (alert,) = MovementDetector(unit_of_work_factory=sqlite_unit_of_work).detect("E1")

    assert alert.risk_level is RiskLevel.HIGH


def test_dissolution_shortly_after_move_is_high(
    store: InMemoryRegistryStore,
) -> None:
    _moved_then(store.unit_of_work)
    entity = store.entities.items["E1"]
    entity.dissolved_since = MOVED_AT.date() + timedelta(days=30)

    (alert,) = MovementDetector(unit_of_work_factory=store.unit_of_work).detect("E1")

    assert alert.risk_level is RiskLevel.HIGH
    assert any("dissolved on" in line for line in alert.evidence)


def test_move_within_jurisdiction_is_low_and_inactive(store: InMemoryRegistryStore) -> None:
    timeline = _Timeline(store.unit_of_work)
    timeline.observe(registry_record("E1", **OSLO), MOVED_AT - timedelta(days=10))
    timeline.observe(registry_record("E1", street="Karl Johans gate 5", **OSLO), MOVED_AT)

    (alert,) = MovementDetector(unit_of_work_factory=store.unit_of_work).detect("E1")

    assert alert.from_jurisdiction == alert.to_jurisdiction == "0301"
    assert alert.risk_level is RiskLevel.LOW
    assert alert.is_active is False
    assert store.alerts.active_for_jurisdiction("0301") == []


def test_name_only_inference_is_low_confidence(store: InMemoryRegistryStore) -> None:
    store.jurisdictions.observe(postal_code="", jurisdiction_id="4601", jurisdiction_name="Bergen")
    store.jurisdictions.observe(postal_code="", jurisdiction_id="0301", jurisdiction_name="Oslo")
    store.entities.add(Entity(entity_id="E1", name="Vestland Eiendom AS"))
    old = AddressRecord(entity_id="E1", kind=AddressKind.BUSINESS, jurisdiction_id="0301")
    old.open(MOVED_AT - timedelta(days=30))
    old.close(MOVED_AT)
    new = AddressRecord(
        entity_id="E1", kind=AddressKind.BUSINESS, freeform_address="Bryggen 1, Bergen"
    )
    new.open(MOVED_AT)
    store.addresses.insert_record(old)
    store.addresses.insert_record(new)

    (alert,) = MovementDetector(unit_of_work_factory=store.unit_of_work).detect("E1")

    assert alert.to_jurisdiction == "4601"
    assert alert.confidence is Confidence.LOW
    assert alert.risk_level is RiskLevel.LOW


def test_superseded_alerts_are_deactivated(store: InMemoryRegistryStore) -> None:
    _moved_then(store.unit_of_work)
    stale = MovementAlert(
        entity_id="E1",
        from_jurisdiction="1103",
        to_jurisdiction="0301",
        transition_date=MOVED_AT - timedelta(days=400),
        confidence=Confidence.MEDIUM,
        risk_level=RiskLevel.MEDIUM,
    )
    store.alerts.upsert(stale)

    MovementDetector(unit_of_work_factory=store.unit_of_work).detect("E1")

    assert stale.is_active is False
    assert [alert.to_jurisdiction for alert in store.alerts.active_for_jurisdiction("4601")] == [
        "4601"
    ]


def test_unknown_entity_yields_nothing(store: InMemoryRegistryStore) -> None:
    assert MovementDetector(unit_of_work_factory=store.unit_of_work).detect("missing") == []


def test_backfill_summarises_every_entity(store: InMemoryRegistryStore) -> None:
    _moved_then(store.unit_of_work, bankruptcy_date=MOVED_AT.date() + timedelta(days=10))
    _Timeline(store.unit_of_work).observe(registry_record("E2"), MOVED_AT)

    summary = MovementDetector(unit_of_work_factory=store.unit_of_work).backfill()

    assert summary.entities == 2
    assert summary.alerts == 1
    assert summary.critical == 1


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Bryggen 1, Bergen", {"4601"}),
        ("Osloveien 3, Lillestrøm", set()),
        ("Oslo og Bergen Holding", {"0301", "4601"}),
        ("", set()),
    ],
)
def test_jurisdiction_names_match_whole_words(text: str, expected: set[str]) -> None:
    names = {"0301": "Oslo", "4601": "Bergen"}

    assert match_jurisdiction_names(text, names) == frozenset(expected)


def test_consolidate_merges_candidates_for_same_transition() -> None:
    def candidate(risk: RiskLevel, line: str) -> MovementAlert:
        return MovementAlert(
            entity_id="E1",
            from_jurisdiction="0301",
            to_jurisdiction="4601",
            transition_date=MOVED_AT,
            confidence=Confidence.MEDIUM,
            risk_level=risk,
            evidence=[line],
        )

    (merged,) = consolidate(
        [candidate(RiskLevel.MEDIUM, "moved"), candidate(RiskLevel.CRITICAL, "bankrupt")]
    )

    assert merged.risk_level is RiskLevel.CRITICAL
    assert merged.evidence == ["moved", "bankrupt"]
