"""Translate registry payloads into domain entities."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from pydantic import ValidationError

from regwatch.domain.errors import NormalizationError
from regwatch.domain.model import (
    AddressKind,
    AddressRecord,
    Entity,
    EntityStatus,
    NormalizedEntity,
)

from .schema import AddressPayload, RegistryRecord

if TYPE_CHECKING:
    from regwatch.domain.ports.fetching import RawRecord

log = getLogger(__name__)

_STATUS_ALIASES: dict[str, EntityStatus] = {
    "active": EntityStatus.ACTIVE,
    "registered": EntityStatus.ACTIVE,
    "bankrupt": EntityStatus.BANKRUPT,
    "bankruptcy": EntityStatus.BANKRUPT,
    "dissolved": EntityStatus.DISSOLVED,
    "deleted": EntityStatus.DISSOLVED,
    "liquidated": EntityStatus.DISSOLVED,
}


def normalize_record(raw: RawRecord | RegistryRecord) -> NormalizedEntity:
    """Map one raw registry record onto an entity snapshot and its addresses.

    Raises :class:`NormalizationError` when the record has no usable identifier or
    does not match the expected shape at all.
    """

    payload = _ensure_record(raw)
    if not payload.entity_id:
        raise NormalizationError("Registry record without entityId")

    entity = Entity(
        entity_id=payload.entity_id,
        name=payload.name or "",
        legal_form=payload.legal_form or "",
        status=_resolve_status(payload),
        registration_date=payload.registration_date,
        industry_code=payload.industry_code or "",
        bankrupt_since=payload.bankruptcy_date,
        dissolved_since=payload.dissolved_date,
    )

    addresses: list[AddressRecord] = []
    for kind, address in (
        (AddressKind.BUSINESS, payload.business_address),
        (AddressKind.POSTAL, payload.postal_address),
    ):
        if address is None or address.is_empty:
            continue
        addresses.append(_to_address_record(entity.entity_id, kind, address))

    return NormalizedEntity(
        entity=entity,
        addresses=tuple(addresses),
        modified_at=_as_utc(payload.last_modified),
    )


def format_address(address: AddressPayload) -> str:
    parts = [line.strip() for line in address.lines if line.strip()]
    locality = " ".join(part for part in (address.postal_code, address.city) if part)
    if locality:
        parts.append(locality)
    return ", ".join(parts)


def _ensure_record(raw: RawRecord | RegistryRecord) -> RegistryRecord:
    if isinstance(raw, RegistryRecord):
        return raw
    try:
        return RegistryRecord.model_validate(raw)
    except ValidationError as exc:
        identifier = raw.get("entityId") if isinstance(raw, Mapping) else None
        raise NormalizationError(
            f"Invalid registry record {identifier!r}: {exc.error_count()} validation errors"
        ) from exc


def _resolve_status(payload: RegistryRecord) -> EntityStatus:
    if payload.status is not None:
        explicit = _STATUS_ALIASES.get(payload.status.casefold())
        if explicit is not None:
            return explicit
        log.debug("Unknown status %r for %s; deriving", payload.status, payload.entity_id)
    if payload.dissolved_date is not None:
        return EntityStatus.DISSOLVED
    if payload.bankrupt or payload.bankruptcy_date is not None:
        return EntityStatus.BANKRUPT
    return EntityStatus.ACTIVE


def _to_address_record(
    entity_id: str, kind: AddressKind, address: AddressPayload
) -> AddressRecord:
    return AddressRecord(
        entity_id=entity_id,
        kind=kind,
        jurisdiction_id=address.jurisdiction_id or "",
        jurisdiction_name=address.jurisdiction_name or "",
        freeform_address=format_address(address),
        postal_code=address.postal_code or "",
    )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
