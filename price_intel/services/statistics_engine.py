# price_intel/services/statistics_engine.py

"""Descriptive price statistics over a trailing window."""

import logging
import math
from collections.abc import Iterable
from datetime import datetime

from price_intel.config.settings import Settings
from price_intel.models.observation import EntityType, PriceObservation
from price_intel.models.statistics import (
    BestObservation,
    StatisticsSnapshot,
    Trend,
)
from price_intel.storage.observation_store import ObservationStore

logger = logging.getLogger("price_intel.statistics")


def classify_trend(
    first: float,
    last: float,
    threshold_pct: float = Settings.TREND_THRESHOLD_PCT,
) -> Trend:
    """Compare the first and last price of a window.

    A change beyond *threshold_pct* in either direction is a trend;
    anything smaller is STABLE.  No regression is fitted.
    """
    if first == 0:
        return Trend.INCREASING if last > 0 else Trend.STABLE
    change_pct = (last - first) / first * 100
    if change_pct > threshold_pct:
        return Trend.INCREASING
    if change_pct < -threshold_pct:
        return Trend.DECREASING
    return Trend.STABLE


def summarize_observations(
    entity_type: EntityType,
    entity_id: str,
    window_days: int,
    observations: Iterable[PriceObservation],
) -> StatisticsSnapshot:
    """Single pass over an ascending sequence of observations.

    Mean and variance use Welford's update, which avoids the
    cancellation error of sum-of-squares on large prices.  Variance
    is the population variance of the window.
    """
    count = 0
    mean = 0.0
    m2 = 0.0
    low = math.inf
    high = -math.inf
    first: PriceObservation | None = None
    last: PriceObservation | None = None
    best: PriceObservation | None = None

    for obs in observations:
        price = float(obs.price)
        count += 1
        delta = price - mean
        mean += delta / count
        m2 += delta * (price - mean)
        low = min(low, price)
        high = max(high, price)
        if first is None:
            first = obs
        last = obs
        # Strict comparison keeps the earliest of equal minima
        if best is None or obs.price < best.price:
            best = obs

    if count == 0 or first is None or last is None or best is None:
        return StatisticsSnapshot.empty(entity_type, entity_id, window_days)

    std_dev = math.sqrt(m2 / count) if count > 1 else 0.0
    mean = min(max(mean, low), high)
    cv = std_dev / mean if mean > 0 else 0.0

    return StatisticsSnapshot(
        entity_type=entity_type,
        entity_id=entity_id,
        window_days=window_days,
        count=count,
        min=low,
        max=high,
        mean=mean,
        std_dev=std_dev,
        coefficient_of_variation=cv,
        trend=classify_trend(float(first.price), float(last.price)),
        latest_price=last.price,
        latest_observed_at=last.observed_at,
        best_observation=BestObservation(
            observed_at=best.observed_at, price=best.price,
        ),
    )


class StatisticsEngine:
    """Read-only statistics over the observation store."""

    def __init__(self, store: ObservationStore) -> None:
        self.store = store

    def summarize(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        window_days: int = Settings.DEFAULT_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> StatisticsSnapshot:
        """Summarise the trailing window; an empty window is not an error."""
        etype = EntityType.parse(entity_type)
        snapshot = summarize_observations(
            etype,
            entity_id,
            window_days,
            self.store.window(etype, entity_id, window_days, now=now),
        )
        if snapshot.is_empty:
            logger.debug(
                "No observations for %s/%s in %d days",
                etype.value,
                entity_id,
                window_days,
            )
        return snapshot

    def best_time_to_book(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        window_days: int = Settings.DEFAULT_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> BestObservation | None:
        """Cheapest observation in the window (earliest wins ties)."""
        return self.summarize(
            entity_type, entity_id, window_days, now=now,
        ).best_observation
