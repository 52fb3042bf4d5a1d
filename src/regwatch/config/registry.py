"""Upstream registry API configuration."""

from __future__ import annotations

from dataclasses import dataclass

from .env import env_bool, env_float, env_int, require_env_vars
from .errors import ConfigurationError

REGISTRY_URL_ENV = "REGWATCH_REGISTRY_URL"
DEFAULT_CAPACITY_CAP = 10_000
DEFAULT_PAGE_SIZE = 1_000


@dataclass(frozen=True, slots=True)
class RegistryConfig:
    base_url: str
    capacity_cap: int = DEFAULT_CAPACITY_CAP
    page_size: int = DEFAULT_PAGE_SIZE
    requests_per_second: float = 5.0
    request_timeout_seconds: float = 30.0
    supports_modified_since: bool = False

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ConfigurationError("page_size must be at least 1")
        if self.page_size > self.capacity_cap:
            raise ConfigurationError(
                f"page_size ({self.page_size}) cannot exceed the upstream cap "
                f"({self.capacity_cap})"
            )

    @classmethod
    def from_environment(cls) -> RegistryConfig:
        values = require_env_vars([REGISTRY_URL_ENV])
        return cls(
            base_url=values[REGISTRY_URL_ENV].rstrip("/"),
            capacity_cap=env_int("REGWATCH_REGISTRY_CAP", DEFAULT_CAPACITY_CAP, minimum=1),
            page_size=env_int("REGWATCH_PAGE_SIZE", DEFAULT_PAGE_SIZE, minimum=1),
            requests_per_second=env_float("REGWATCH_REQUESTS_PER_SECOND", 5.0, minimum=0.1),
            request_timeout_seconds=env_float(
                "REGWATCH_REQUEST_TIMEOUT_SECONDS", 30.0, minimum=0.1
            ),
            supports_modified_since=env_bool("REGWATCH_MODIFIED_SINCE_FILTER", default=False),
        )


def get_registry_config() -> RegistryConfig:
    return RegistryConfig.from_environment()
