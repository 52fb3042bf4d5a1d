"""SQLAlchemy-backed units of work for the registry store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from logging import getLogger
from typing import TYPE_CHECKING, Literal

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from regwatch.adapters.sqlalchemy.mappings import start_mappers
from regwatch.adapters.sqlalchemy.migrations import upgrade_head
from regwatch.adapters.sqlalchemy.repositories import (
    SqlAlchemyAddressRepository,
    SqlAlchemyAlertRepository,
    SqlAlchemyEntityRepository,
    SqlAlchemyGapRepository,
    SqlAlchemyJurisdictionRepository,
    SqlAlchemyWatermarkRepository,
)
from regwatch.config.storage import DatabaseConfig, get_database_config
from regwatch.domain.errors import MergeConflictError, StorageUnavailableError
from regwatch.domain.ports.unit_of_work import RegistryRepositories, RepositoryCollection

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.engine import Engine

log = getLogger(__name__)


class StartupError(RuntimeError):
    """Raised when a SQLAlchemy unit of work is used before initialisation."""


class Database:
    """Engine plus session factory for one configured store."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine, expire_on_commit=False
        )
        self._started = False

    @classmethod
    def from_uri(cls, database_uri: str, *, echo: bool = False) -> Database:
        return cls(create_engine(database_uri, echo=echo, future=True))

    @classmethod
    def from_config(cls, config: DatabaseConfig | None = None) -> Database:
        resolved = config or get_database_config()
        return cls.from_uri(resolved.uri, echo=resolved.echo)

    @property
    def is_started(self) -> bool:
        return self._started

    def startup(self) -> Database:
        """Map the domain model and bring the schema to the latest revision."""

        start_mappers()
        try:
            upgrade_head(engine=self.engine)
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailableError(f"Cannot reach database: {exc}") from exc
        self._started = True
        log.info("Database ready at %s", self.engine.url.render_as_string(hide_password=True))
        return self

    def unit_of_work(self) -> SqlAlchemyUnitOfWork:
        if not self._started:
            raise StartupError(
                "Database not initialised. Call Database.startup() before requesting a "
                "unit of work."
            )
        return SqlAlchemyUnitOfWork(self.session_factory)

    def dispose(self) -> None:
        self.engine.dispose()
        self._started = False


class BaseSqlAlchemyUnitOfWork[TRepositories: RepositoryCollection](ABC):
    """Generic SQLAlchemy unit of work with pluggable repository collections.

    Driver-level connectivity failures surface as :class:`StorageUnavailableError`;
    integrity violations while flushing or committing surface as
    :class:`MergeConflictError`.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory
        self._session: Session | None = None

    @abstractmethod
    def _build_repositories(self, session: Session) -> TRepositories: ...

    def __enter__(self) -> BaseSqlAlchemyUnitOfWork[TRepositories]:
        self.session = self.session_factory()
        self._repositories = self._build_repositories(self.session)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        if exc_type is not None:
            self.rollback()
        self.session.close()
        self.session = None
        if isinstance(exc_value, (OperationalError, InterfaceError)):
            raise StorageUnavailableError(str(exc_value)) from exc_value
        if isinstance(exc_value, IntegrityError):
            raise MergeConflictError(str(exc_value.orig)) from exc_value
        return False

    def commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise MergeConflictError(f"Commit rejected: {exc.orig}") from exc
        except (OperationalError, InterfaceError) as exc:
            self.session.rollback()
            raise StorageUnavailableError(f"Commit failed: {exc.orig}") from exc

    def rollback(self) -> None:
        try:
            self.session.rollback()
        except (OperationalError, InterfaceError):
            log.warning("Rollback failed; connection already gone", exc_info=True)

    @property
    def repositories(self) -> TRepositories:
        if self._session is None:
            raise StartupError("Unit of work session not initialised")
        return self._repositories

    @property
    def session(self) -> Session:
        if self._session is None:
            raise StartupError("Unit of work session not initialised")
        return self._session

    @session.setter
    def session(self, session: Session | None) -> None:
        if self._session is not None and session is not None:
            raise StartupError("Unit of work session already initialised")
        self._session = session


class SqlAlchemyUnitOfWork(BaseSqlAlchemyUnitOfWork[RegistryRepositories]):
    """Unit of work over every registry repository."""

    def _build_repositories(self, session: Session) -> RegistryRepositories:
        return RegistryRepositories(
            entities=SqlAlchemyEntityRepository(session),
            addresses=SqlAlchemyAddressRepository(session),
            alerts=SqlAlchemyAlertRepository(session),
            watermarks=SqlAlchemyWatermarkRepository(session),
            gaps=SqlAlchemyGapRepository(session),
            jurisdictions=SqlAlchemyJurisdictionRepository(session),
        )


if TYPE_CHECKING:
    from regwatch.domain.ports.unit_of_work import RegistryUnitOfWork

    _uow_check: RegistryUnitOfWork = SqlAlchemyUnitOfWork(sessionmaker())
