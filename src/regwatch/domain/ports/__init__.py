"""Domain port definitions for adapters."""

from __future__ import annotations

from .fetching import FetchOutcome, RawRecord, RecordStream, RegistrySource
from .persistence import (
    AddressRepository,
    AlertRepository,
    EntityRepository,
    GapRepository,
    JurisdictionRepository,
    Repository,
    WatermarkRepository,
)
from .unit_of_work import (
    RegistryRepositories,
    RegistryUnitOfWork,
    RepositoryCollection,
    UnitOfWork,
)

__all__ = [
    "AddressRepository",
    "AlertRepository",
    "EntityRepository",
    "FetchOutcome",
    "GapRepository",
    "JurisdictionRepository",
    "RawRecord",
    "RecordStream",
    "RegistryRepositories",
    "RegistrySource",
    "RegistryUnitOfWork",
    "Repository",
    "RepositoryCollection",
    "UnitOfWork",
    "WatermarkRepository",
]
