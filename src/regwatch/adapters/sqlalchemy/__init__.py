"""SQLAlchemy adapter package for regwatch."""

from __future__ import annotations

from .mappings import create_all_tables, mapper_registry, start_mappers
from .repositories import (
    SqlAlchemyAddressRepository,
    SqlAlchemyAlertRepository,
    SqlAlchemyEntityRepository,
    SqlAlchemyGapRepository,
    SqlAlchemyJurisdictionRepository,
    SqlAlchemyWatermarkRepository,
)
from .unit_of_work import Database, SqlAlchemyUnitOfWork, StartupError

__all__ = [
    "Database",
    "SqlAlchemyAddressRepository",
    "SqlAlchemyAlertRepository",
    "SqlAlchemyEntityRepository",
    "SqlAlchemyGapRepository",
    "SqlAlchemyJurisdictionRepository",
    "SqlAlchemyUnitOfWork",
    "SqlAlchemyWatermarkRepository",
    "StartupError",
    "create_all_tables",
    "mapper_registry",
    "start_mappers",
]
