"""HTTP client for the upstream registry API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from regwatch.adapters.http_resilience import ResilientClient
from regwatch.config.http_resilience import (
    CacheConfig,
    RateLimit,
    ResilienceConfig,
    RetryPolicy,
)
from regwatch.config.registry import RegistryConfig
from regwatch.config.sync import SyncConfig
from regwatch.domain.errors import CapExceededError, TransientFetchError

from .schema import RegistryPage

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from regwatch.domain.model import Partition

log = getLogger(__name__)

ENTITIES_PATH = "/entities"
_PROBE_CACHE_TTL_SECONDS = 300.0
_TOO_MANY_REQUESTS = 429


def _format_since(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _is_count_probe(payload: object) -> bool:
    """Only single-record probes are cached; real pages always go upstream."""

    try:
        page = RegistryPage.model_validate(payload)
    except ValidationError:
        return False
    return page.page.size == 1


def build_registry_resilience(
    config: RegistryConfig,
    sync: SyncConfig | None = None,
    *,
    backoff_multiplier: float = 1.0,
) -> ResilienceConfig:
    sync_config = sync or SyncConfig()
    retry = RetryPolicy.from_milliseconds(
        total=sync_config.max_retries,
        backoff_base_ms=sync_config.retry_backoff_base_ms,
    )
    if backoff_multiplier != 1.0:
        retry = retry.stretched(backoff_multiplier)
    return ResilienceConfig(
        name="registry",
        base_url=config.base_url,
        timeout_seconds=config.request_timeout_seconds,
        retry=retry,
        ratelimit=RateLimit(max_calls=1, per_seconds=1.0 / config.requests_per_second),
        cache=CacheConfig(
            backend="memory",
            default_ttl_seconds=_PROBE_CACHE_TTL_SECONDS,
            should_cache=_is_count_probe,
        ),
        default_headers={"Accept": "application/json"},
    )


def _default_client_factory(config: ResilienceConfig) -> ResilientClient:
    return ResilientClient(config)


@dataclass(slots=True)
class RegistryClient:
    """Thin typed wrapper around ``GET /entities``.

    The underlying :class:`ResilientClient` is created lazily and shared by every
    caller of this instance, so all workers go through the same rate limiter.
    """

    config: RegistryConfig
    resilience: ResilienceConfig | None = None
    client_factory: Callable[[ResilienceConfig], ResilientClient] = field(
        default=_default_client_factory
    )
    _client: ResilientClient | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.resilience is None:
            self.resilience = build_registry_resilience(self.config)

    @property
    def http(self) -> ResilientClient:
        if self._client is None:
            assert self.resilience is not None
            self._client = self.client_factory(self.resilience)
        return self._client

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def count(self, partition: Partition) -> int:
        page = await self.fetch_page(partition, page=0, size=1)
        return page.page.total_elements

    async def fetch_page(self, partition: Partition, *, page: int, size: int) -> RegistryPage:
        params = _query_params(partition, page=page, size=size)
        url = f"{self.config.base_url}{ENTITIES_PATH}"
        try:
            response = await self.http.get(url, params=params)
        except httpx.TransportError as exc:
            raise TransientFetchError(
                f"{type(exc).__name__} fetching {partition.key} page {page}: {exc}"
            ) from exc

        status = response.status_code
        if status == _TOO_MANY_REQUESTS or status >= httpx.codes.INTERNAL_SERVER_ERROR:
            raise TransientFetchError(
                f"Registry answered {status} for {partition.key} page {page}",
                status_code=status,
            )
        if status >= httpx.codes.BAD_REQUEST:
            log.info("Registry refused %s page %s with %s", partition.key, page, status)
            raise CapExceededError(
                f"Registry refused {partition.key} page {page} with {status}",
                page=page,
                status_code=status,
            )

        try:
            return RegistryPage.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TransientFetchError(
                f"Malformed registry page for {partition.key} page {page}: {exc}",
                status_code=status,
            ) from exc


def _query_params(partition: Partition, *, page: int, size: int) -> httpx.QueryParams:
    params: dict[str, str | int] = {"page": page, "size": size}
    if partition.jurisdiction_id is not None:
        params["jurisdiction"] = partition.jurisdiction_id
    if partition.registered_from is not None:
        params["registeredFrom"] = partition.registered_from.isoformat()
    if partition.registered_to is not None:
        params["registeredTo"] = partition.registered_to.isoformat()
    if partition.modified_since is not None:
        params["modifiedSince"] = _format_since(partition.modified_since)
    return httpx.QueryParams(params)
