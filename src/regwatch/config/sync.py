"""Synchronisation defaults for the registry sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from .env import env_date, env_float, env_int
from .errors import ConfigurationError

DEFAULT_CACHE_TTL_HOURS = 12.0
DEFAULT_CAP_MARGIN = 0.9
DEFAULT_MAX_RETRIES = 4
DEFAULT_RETRY_BACKOFF_BASE_MS = 500
DEFAULT_WORKER_CONCURRENCY = 4
DEFAULT_EARLIEST_REGISTRATION = date(1900, 1, 1)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    cache_ttl_hours: float = DEFAULT_CACHE_TTL_HOURS
    cap_margin: float = DEFAULT_CAP_MARGIN
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_ms: int = DEFAULT_RETRY_BACKOFF_BASE_MS
    worker_concurrency: int = DEFAULT_WORKER_CONCURRENCY
    min_partition_days: int = 1
    max_pages: int | None = None
    gap_fill_backoff_multiplier: float = 4.0
    conflict_retry_delay_seconds: float = 0.25
    incremental_interval_hours: float | None = None
    earliest_registration: date = DEFAULT_EARLIEST_REGISTRATION

    def __post_init__(self) -> None:
        if not 0 < self.cap_margin <= 1:
            raise ConfigurationError(f"cap_margin must be in (0, 1], got {self.cap_margin}")
        if self.worker_concurrency < 1:
            raise ConfigurationError("worker_concurrency must be at least 1")
        if self.min_partition_days < 1:
            raise ConfigurationError("min_partition_days must be at least 1")

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=self.cache_ttl_hours)

    def margin_for(self, capacity_cap: int) -> int:
        """Largest result count a partition may report before it must be split."""

        return int(capacity_cap * self.cap_margin)


def get_sync_config() -> SyncConfig:
    max_pages = env_int("REGWATCH_MAX_PAGES", 0, minimum=0)
    interval = env_float("REGWATCH_INCREMENTAL_INTERVAL_HOURS", 0.0, minimum=0.0)
    return SyncConfig(
        cache_ttl_hours=env_float("REGWATCH_CACHE_TTL_HOURS", DEFAULT_CACHE_TTL_HOURS, minimum=0.0),
        cap_margin=env_float("REGWATCH_CAP_MARGIN", DEFAULT_CAP_MARGIN, minimum=0.0, maximum=1.0),
        max_retries=env_int("REGWATCH_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0),
        retry_backoff_base_ms=env_int(
            "REGWATCH_RETRY_BACKOFF_BASE_MS", DEFAULT_RETRY_BACKOFF_BASE_MS, minimum=0
        ),
        worker_concurrency=env_int(
            "REGWATCH_WORKER_CONCURRENCY", DEFAULT_WORKER_CONCURRENCY, minimum=1
        ),
        min_partition_days=env_int("REGWATCH_MIN_PARTITION_DAYS", 1, minimum=1),
        max_pages=max_pages or None,
        gap_fill_backoff_multiplier=env_float(
            "REGWATCH_GAP_FILL_BACKOFF_MULTIPLIER", 4.0, minimum=1.0
        ),
        incremental_interval_hours=interval or None,
        earliest_registration=env_date(
            "REGWATCH_EARLIEST_REGISTRATION", DEFAULT_EARLIEST_REGISTRATION
        ),
    )
