"""Partition planning: slicing the fetch domain below the upstream result ceiling."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from regwatch.config.sync import SyncConfig
from regwatch.domain.errors import TransientFetchError
from regwatch.domain.model import Gap, GapReason, Partition

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from regwatch.domain.model import SyncDomain
    from regwatch.domain.ports import RegistrySource

log = getLogger(__name__)


@dataclass(slots=True)
class PartitionPlan:
    partitions: list[Partition] = field(default_factory=list[Partition])
    gaps: list[Gap] = field(default_factory=list[Gap])
    estimates: dict[str, int] = field(default_factory=dict[str, int])
    probes: int = 0

    @property
    def estimated_total(self) -> int:
        return sum(self.estimates.values())

    def extend(self, other: PartitionPlan) -> None:
        self.partitions.extend(other.partitions)
        self.gaps.extend(other.gaps)
        self.estimates.update(other.estimates)
        self.probes += other.probes


class PartitionPlanner:
    """Split a domain into disjoint partitions that each stay under the cap margin.

    Coarse partitions (one per jurisdiction, or a single nationwide one) are probed for
    their result count. Anything at or above ``cap * cap_margin`` is halved along the
    registration-date axis until it fits or reaches the minimum granularity, at which
    point it is reported as a gap instead of being fetched truncated.
    """

    def __init__(
        self,
        *,
        source: RegistrySource,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._config = config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def plan(
        self,
        domain: SyncDomain,
        capacity_cap: int | None = None,
        *,
        modified_since: datetime | None = None,
    ) -> PartitionPlan:
        plan = await self.plan_partitions(
            domain.coarse_partitions(modified_since=modified_since),
            capacity_cap,
        )
        log.info(
            "Planned %s partitions (%s gaps, ~%s records) with %s probes",
            len(plan.partitions),
            len(plan.gaps),
            plan.estimated_total,
            plan.probes,
        )
        return plan

    async def plan_partitions(
        self,
        partitions: Iterable[Partition],
        capacity_cap: int | None = None,
    ) -> PartitionPlan:
        cap = capacity_cap if capacity_cap is not None else self._source.capacity_cap
        margin = self._config.margin_for(cap)
        if margin < 1:
            raise ValueError(f"Cap {cap} with margin {self._config.cap_margin} leaves no room")
        plan = PartitionPlan()
        for partition in partitions:
            await self._refine(partition, margin=margin, plan=plan)
        return plan

    async def split(self, partition: Partition, capacity_cap: int | None = None) -> PartitionPlan:
        """Re-plan a partition that turned out to be too large when fetched."""

        if not partition.can_split(self._config.min_partition_days):
            return PartitionPlan(
                gaps=[
                    Gap.for_partition(
                        partition,
                        reason=GapReason.CAP_EXCEEDED,
                        detail="partition is at minimum granularity",
                        detected_at=self._clock(),
                    )
                ]
            )
        return await self.plan_partitions(partition.halves(), capacity_cap)

    async def _refine(self, partition: Partition, *, margin: int, plan: PartitionPlan) -> None:
        plan.probes += 1
        try:
            count = await self._source.count(partition)
        except TransientFetchError as exc:
            log.warning("Count probe for %s failed; recording gap: %s", partition.key, exc)
            plan.gaps.append(
                Gap.for_partition(
                    partition,
                    reason=GapReason.TRANSIENT_FAILURE,
                    detail=f"count probe failed: {exc}",
                    detected_at=self._clock(),
                )
            )
            return
        if count == 0:
            return
        if count < margin:
            plan.partitions.append(partition)
            plan.estimates[partition.key] = count
            return
        if partition.can_split(self._config.min_partition_days):
            left, right = partition.halves()
            log.debug("Splitting %s (%s >= %s)", partition.key, count, margin)
            await self._refine(left, margin=margin, plan=plan)
            await self._refine(right, margin=margin, plan=plan)
            return
        log.warning(
            "Partition %s still holds %s records at minimum granularity; recording gap",
            partition.key,
            count,
        )
        plan.gaps.append(
            Gap.for_partition(
                partition,
                reason=GapReason.CAP_EXCEEDED,
                estimated_records=count,
                detail=f"{count} records at minimum granularity (margin {margin})",
                detected_at=self._clock(),
            )
        )
