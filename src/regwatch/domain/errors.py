"""Error taxonomy for registry synchronisation and movement detection."""

from __future__ import annotations


class RegistrySyncError(RuntimeError):
    """Base class for sync engine failures."""


class TransientFetchError(RegistrySyncError):
    """Timeout, network failure, rate limiting or 5xx that outlived the retry budget."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CapExceededError(RegistrySyncError):
    """The upstream refused a page because the query crossed its result ceiling."""

    def __init__(self, message: str, *, page: int, status_code: int | None = None) -> None:
        super().__init__(message)
        self.page = page
        self.status_code = status_code


class NormalizationError(RegistrySyncError):
    """A raw record could not be mapped onto the canonical entity shape."""


class MergeConflictError(RegistrySyncError):
    """Two current address records (or a racing writer) were detected for one entity."""

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class WatermarkPersistError(RegistrySyncError):
    def __init__(self, message: str, *, partition_key: str) -> None:
        super().__init__(message)
        self.partition_key = partition_key


class StorageUnavailableError(RegistrySyncError):
    """The repository backend cannot be reached; aborts the whole run."""


class RunAlreadyActiveError(RegistrySyncError):
    """A run of the same single-owner kind is still in progress."""

    def __init__(self, message: str, *, run_id: str) -> None:
        super().__init__(message)
        self.run_id = run_id


class ResyncFailedError(RegistrySyncError):
    """A cache-triggered incremental run finished failed; the cached value stays stale."""

    def __init__(self, message: str, *, run_id: str) -> None:
        super().__init__(message)
        self.run_id = run_id
