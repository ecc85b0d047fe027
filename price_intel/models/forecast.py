# price_intel/models/forecast.py

"""Forecast and backtest result models."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from price_intel.models.observation import EntityType


@dataclass(frozen=True)
class ForecastPoint:
    """Predicted price for one future calendar day."""

    date: date
    predicted_price: Decimal


@dataclass
class ForecastResult:
    """Bounded-horizon forecast for one entity."""

    entity_type: EntityType
    entity_id: str
    points: list[ForecastPoint]
    confidence: float
    best_day_index: int
    best_day_price: Decimal
    estimated_savings: Decimal
    last_known_price: Decimal
    strategy: str = ""

    @property
    def days_ahead(self) -> int:
        """Number of forecast days."""
        return len(self.points)


@dataclass(frozen=True)
class InsufficientData:
    """Too few observations to forecast; an expected outcome, not an error."""

    entity_type: EntityType
    entity_id: str
    required: int
    available: int

    @property
    def message(self) -> str:
        """Human-readable explanation."""
        return (
            f"Need at least {self.required} observations, "
            f"have {self.available}"
        )


@dataclass
class BacktestResult:
    """Forecast accuracy over a held-out tail of the history."""

    entity_type: EntityType
    entity_id: str
    holdout_days: int
    compared_points: int
    mae: float
    mape: float | None
    strategy: str = ""
    errors: list[float] = field(default_factory=lambda: list[float]())
