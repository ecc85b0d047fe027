# price_intel/models/statistics.py

"""Descriptive statistics snapshot for one entity's price window."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from price_intel.models.observation import EntityType


class Trend(str, Enum):
    """Direction of the price over a window (first vs last sample)."""

    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    STABLE = "STABLE"


@dataclass(frozen=True)
class BestObservation:
    """The cheapest sample in a window."""

    observed_at: datetime
    price: Decimal


@dataclass
class StatisticsSnapshot:
    """Summary of an entity's prices over a trailing window.

    An empty window yields ``count == 0`` with every numeric field set
    to ``None``; callers branch on :attr:`is_empty`.
    """

    entity_type: EntityType
    entity_id: str
    window_days: int
    count: int = 0
    min: float | None = None
    max: float | None = None
    mean: float | None = None
    std_dev: float | None = None
    coefficient_of_variation: float | None = None
    trend: Trend | None = None
    latest_price: Decimal | None = None
    latest_observed_at: datetime | None = None
    best_observation: BestObservation | None = None

    @property
    def is_empty(self) -> bool:
        """True when the window held no observations."""
        return self.count == 0

    @classmethod
    def empty(
        cls, entity_type: EntityType, entity_id: str, window_days: int,
    ) -> "StatisticsSnapshot":
        """Explicit "no data" snapshot."""
        return cls(
            entity_type=entity_type,
            entity_id=entity_id,
            window_days=window_days,
        )
