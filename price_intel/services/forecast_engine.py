# price_intel/services/forecast_engine.py

"""Short-horizon price forecasting behind a swappable strategy."""

import importlib
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from price_intel.config.settings import Settings
from price_intel.errors import ValidationError
from price_intel.models.forecast import (
    BacktestResult,
    ForecastPoint,
    ForecastResult,
    InsufficientData,
)
from price_intel.models.observation import EntityType, PriceObservation
from price_intel.models.statistics import StatisticsSnapshot
from price_intel.services.statistics_engine import summarize_observations
from price_intel.storage.observation_store import ObservationStore

logger = logging.getLogger("price_intel.forecast")

_CENT = Decimal("0.01")


def _to_money(value: float) -> Decimal:
    return Decimal(str(max(value, 0.0))).quantize(_CENT, ROUND_HALF_UP)


def score_confidence(coefficient_of_variation: float) -> float:
    """Map price volatility to a 50..95 confidence score.

    Lower variation means higher confidence; the floor and ceiling
    keep the score a directional hint rather than a certainty.
    """
    raw = 100.0 - coefficient_of_variation * 100.0
    clamped = min(
        max(raw, Settings.CONFIDENCE_FLOOR), Settings.CONFIDENCE_CEILING,
    )
    return round(clamped, 1)


class ForecastStrategy(ABC):
    """Turns an ascending price history into a bounded forecast."""

    name: str = "base"

    @abstractmethod
    def forecast(
        self,
        history: list[PriceObservation],
        snapshot: StatisticsSnapshot,
        days_ahead: int,
    ) -> list[ForecastPoint]:
        """Return one point per day, starting the day after the last sample."""
        ...


class TrendSeasonalityStrategy(ForecastStrategy):
    """Linear first-to-last trend plus a day-of-week adjustment.

    Each weekday's factor is the mean deviation of its prices from the
    window mean.  Trend endpoints are de-seasonalised first, so a
    window that happens to start on a cheap weekday and end on an
    expensive one does not read as a price rise.
    """

    name = "trend_seasonality"

    @staticmethod
    def weekday_factors(
        history: list[PriceObservation], mean: float,
    ) -> dict[int, float]:
        """Average deviation from *mean* per weekday (0 = Monday)."""
        buckets: dict[int, list[float]] = defaultdict(list)
        for obs in history:
            buckets[obs.observed_at.weekday()].append(float(obs.price))
        return {
            day: sum(prices) / len(prices) - mean
            for day, prices in buckets.items()
        }

    def forecast(
        self,
        history: list[PriceObservation],
        snapshot: StatisticsSnapshot,
        days_ahead: int,
    ) -> list[ForecastPoint]:
        first, last = history[0], history[-1]
        mean = snapshot.mean if snapshot.mean is not None else 0.0
        factors = self.weekday_factors(history, mean)

        def deseason(obs: PriceObservation) -> float:
            return float(obs.price) - factors.get(obs.observed_at.weekday(), 0.0)

        elapsed = (
            last.observed_at - first.observed_at
        ).total_seconds() / 86400
        slope = (deseason(last) - deseason(first)) / elapsed if elapsed > 0 else 0.0
        base = deseason(last)

        start: date = last.observed_at.date()
        points: list[ForecastPoint] = []
        for k in range(1, days_ahead + 1):
            day = start + timedelta(days=k)
            baseline = base + slope * k
            predicted = baseline + factors.get(day.weekday(), 0.0)
            points.append(
                ForecastPoint(date=day, predicted_price=_to_money(predicted))
            )
        return points


def load_strategy(dotted_path: str) -> ForecastStrategy:
    """Instantiate a strategy class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls: type[Any] = getattr(module, class_name)
    strategy = cls()
    if not isinstance(strategy, ForecastStrategy):
        raise TypeError(f"{dotted_path} is not a ForecastStrategy")
    return strategy


def build_result(
    entity_type: EntityType,
    entity_id: str,
    points: list[ForecastPoint],
    snapshot: StatisticsSnapshot,
    strategy_name: str,
) -> ForecastResult:
    """Derive confidence, best day and savings from a forecast sequence."""
    best_index = min(
        range(len(points)), key=lambda i: (points[i].predicted_price, i),
    )
    best_price = points[best_index].predicted_price
    last_known = snapshot.latest_price or Decimal("0")
    return ForecastResult(
        entity_type=entity_type,
        entity_id=entity_id,
        points=points,
        confidence=score_confidence(snapshot.coefficient_of_variation or 0.0),
        best_day_index=best_index,
        best_day_price=best_price,
        estimated_savings=(last_known - best_price).quantize(_CENT),
        last_known_price=last_known,
        strategy=strategy_name,
    )


class ForecastEngine:
    """Forecasts entity prices from the observation history."""

    def __init__(
        self,
        store: ObservationStore,
        strategy: ForecastStrategy | None = None,
    ) -> None:
        self.store = store
        self.strategy = strategy or load_strategy(Settings.FORECAST_STRATEGY)

    def _history(
        self,
        entity_type: EntityType,
        entity_id: str,
        lookback_days: int,
        now: datetime | None,
    ) -> list[PriceObservation]:
        return list(
            self.store.window(entity_type, entity_id, lookback_days, now=now)
        )

    def predict(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        days_ahead: int = 7,
        lookback_days: int = Settings.DEFAULT_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> ForecastResult | InsufficientData:
        """Forecast *days_ahead* daily prices.

        Fewer than ``Settings.MIN_FORECAST_OBSERVATIONS`` samples in
        the lookback window yields :class:`InsufficientData`.
        """
        if not 1 <= days_ahead <= Settings.MAX_FORECAST_DAYS:
            raise ValidationError(
                f"days_ahead must be between 1 and "
                f"{Settings.MAX_FORECAST_DAYS}",
                field="days_ahead",
            )
        etype = EntityType.parse(entity_type)
        history = self._history(etype, entity_id, lookback_days, now)
        if len(history) < Settings.MIN_FORECAST_OBSERVATIONS:
            logger.info(
                "Insufficient data to forecast %s/%s (%d observations)",
                etype.value,
                entity_id,
                len(history),
            )
            return InsufficientData(
                entity_type=etype,
                entity_id=entity_id,
                required=Settings.MIN_FORECAST_OBSERVATIONS,
                available=len(history),
            )

        snapshot = summarize_observations(
            etype, entity_id, lookback_days, history,
        )
        points = self.strategy.forecast(history, snapshot, days_ahead)
        result = build_result(
            etype, entity_id, points, snapshot, self.strategy.name,
        )
        logger.debug(
            "Forecast %s/%s: best day %d at %s (confidence %.1f)",
            etype.value,
            entity_id,
            result.best_day_index,
            result.best_day_price,
            result.confidence,
        )
        return result

    def backtest(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        holdout_days: int = 7,
        lookback_days: int = Settings.DEFAULT_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> BacktestResult | InsufficientData:
        """Hold out the last *holdout_days* and score the forecast on them."""
        if not 1 <= holdout_days <= Settings.MAX_FORECAST_DAYS:
            raise ValidationError(
                f"holdout_days must be between 1 and "
                f"{Settings.MAX_FORECAST_DAYS}",
                field="holdout_days",
            )
        etype = EntityType.parse(entity_type)
        history = self._history(etype, entity_id, lookback_days, now)
        if not history:
            return InsufficientData(
                etype, entity_id, Settings.MIN_FORECAST_OBSERVATIONS, 0,
            )

        cutoff = history[-1].observed_at.date() - timedelta(days=holdout_days)
        train = [o for o in history if o.observed_at.date() <= cutoff]
        test = [o for o in history if o.observed_at.date() > cutoff]
        if len(train) < Settings.MIN_FORECAST_OBSERVATIONS or not test:
            return InsufficientData(
                etype,
                entity_id,
                Settings.MIN_FORECAST_OBSERVATIONS,
                len(train),
            )

        snapshot = summarize_observations(etype, entity_id, lookback_days, train)
        horizon = (test[-1].observed_at.date() - train[-1].observed_at.date()).days
        points = self.strategy.forecast(
            train, snapshot, min(max(horizon, 1), Settings.MAX_FORECAST_DAYS),
        )
        predicted = {p.date: float(p.predicted_price) for p in points}

        errors: list[float] = []
        pct_errors: list[float] = []
        for obs in test:
            guess = predicted.get(obs.observed_at.date())
            if guess is None:
                continue
            actual = float(obs.price)
            errors.append(abs(guess - actual))
            if actual > 0:
                pct_errors.append(abs(guess - actual) / actual * 100)

        mae = sum(errors) / len(errors) if errors else 0.0
        mape = sum(pct_errors) / len(pct_errors) if pct_errors else None
        logger.info(
            "Backtest %s/%s over %d points: MAE %.2f",
            etype.value,
            entity_id,
            len(errors),
            mae,
        )
        return BacktestResult(
            entity_type=etype,
            entity_id=entity_id,
            holdout_days=holdout_days,
            compared_points=len(errors),
            mae=mae,
            mape=mape,
            strategy=self.strategy.name,
            errors=errors,
        )
