"""Pydantic models describing the registry API payloads."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from typing import cast

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _code_or_text(value: object) -> object:
    """Accept both ``"AS"`` and ``{"code": "AS", "description": ...}`` shapes."""

    if isinstance(value, Mapping):
        mapping_value = cast(Mapping[str, object], value)
        return _blank_to_none(mapping_value.get("code"))
    return _blank_to_none(value)


class RegistryBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PageInfo(RegistryBaseModel):
    number: int = 0
    size: int = 0
    total_elements: int = Field(default=0, alias="totalElements")
    total_pages: int = Field(default=0, alias="totalPages")


class AddressPayload(RegistryBaseModel):
    lines: list[str] = Field(default_factory=list[str])
    postal_code: str | None = Field(default=None, alias="postalCode")
    city: str | None = None
    jurisdiction_id: str | None = Field(default=None, alias="jurisdictionId")
    jurisdiction_name: str | None = Field(default=None, alias="jurisdictionName")

    _normalize_text = field_validator(
        "postal_code", "city", "jurisdiction_id", "jurisdiction_name", mode="before"
    )(_blank_to_none)

    @field_validator("lines", mode="before")
    @classmethod
    def _parse_lines(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def is_empty(self) -> bool:
        has_lines = any(line.strip() for line in self.lines)
        return not (has_lines or self.postal_code or self.jurisdiction_id)


class RegistryRecord(RegistryBaseModel):
    entity_id: str = Field(alias="entityId")
    name: str | None = None
    legal_form: str | None = Field(default=None, alias="legalForm")
    industry_code: str | None = Field(default=None, alias="industryCode")
    status: str | None = None
    bankrupt: bool = False
    bankruptcy_date: date | None = Field(default=None, alias="bankruptcyDate")
    dissolved_date: date | None = Field(default=None, alias="dissolvedDate")
    registration_date: date | None = Field(default=None, alias="registrationDate")
    business_address: AddressPayload | None = Field(default=None, alias="businessAddress")
    postal_address: AddressPayload | None = Field(default=None, alias="postalAddress")
    last_modified: datetime | None = Field(default=None, alias="lastModified")

    _normalize_codes = field_validator("legal_form", "industry_code", mode="before")(
        _code_or_text
    )
    _normalize_text = field_validator(
        "name",
        "status",
        "bankruptcy_date",
        "dissolved_date",
        "registration_date",
        "last_modified",
        mode="before",
    )(_blank_to_none)

    @field_validator("entity_id", mode="before")
    @classmethod
    def _parse_entity_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class RegistryPage(RegistryBaseModel):
    records: list[dict[str, object]] = Field(default_factory=list[dict[str, object]])
    page: PageInfo = Field(default_factory=PageInfo)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_embedded(cls, value: object) -> object:
        """Accept HAL-style ``{"_embedded": {"<name>": [...]}}`` pages as well."""

        if isinstance(value, Mapping):
            mapping_value = cast(Mapping[str, object], value)
            embedded = mapping_value.get("_embedded")
            if "records" not in mapping_value and isinstance(embedded, Mapping):
                lists = [
                    item
                    for item in cast(Mapping[str, object], embedded).values()
                    if isinstance(item, list)
                ]
                if len(lists) == 1:
                    data: dict[str, object] = dict(mapping_value)
                    data["records"] = lists[0]
                    return data
            return mapping_value
        return value

    @property
    def has_more(self) -> bool:
        return self.page.number + 1 < self.page.total_pages
