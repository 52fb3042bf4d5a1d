"""Policy thresholds for movement detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from .env import env_int, env_list

DEFAULT_HIGH_RISK_INDUSTRIES: tuple[str, ...] = (
    "55.100",  # hotels
    "56.101",  # restaurants
    "43.110",  # demolition
    "68.100",  # real estate trading
    "70.220",  # business consultancy
    "41.200",  # construction of buildings
    "43.390",  # other building completion
)


@dataclass(frozen=True, slots=True)
class DetectionConfig:
    bankruptcy_window_days: int = 180
    min_postal_observations: int = 2
    high_risk_industries: frozenset[str] = field(
        default_factory=lambda: frozenset(DEFAULT_HIGH_RISK_INDUSTRIES)
    )

    @property
    def bankruptcy_window(self) -> timedelta:
        return timedelta(days=self.bankruptcy_window_days)


def get_detection_config() -> DetectionConfig:
    return DetectionConfig(
        bankruptcy_window_days=env_int("REGWATCH_BANKRUPTCY_WINDOW_DAYS", 180, minimum=0),
        min_postal_observations=env_int("REGWATCH_MIN_POSTAL_OBSERVATIONS", 2, minimum=1),
        high_risk_industries=frozenset(
            env_list("REGWATCH_HIGH_RISK_INDUSTRIES", DEFAULT_HIGH_RISK_INDUSTRIES)
        ),
    )
