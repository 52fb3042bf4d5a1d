"""Public interface for the registry adapter."""

from __future__ import annotations

from .client import RegistryClient, build_registry_resilience
from .fetcher import PaginatedFetcher, PartitionFetch, page_within_cap
from .schema import AddressPayload, PageInfo, RegistryPage, RegistryRecord
from .translator import format_address, normalize_record

__all__ = [
    "AddressPayload",
    "PageInfo",
    "PaginatedFetcher",
    "PartitionFetch",
    "RegistryClient",
    "RegistryPage",
    "RegistryRecord",
    "build_registry_resilience",
    "format_address",
    "normalize_record",
    "page_within_cap",
]
