# price_intel/storage/chart_exporter.py

"""Interactive Plotly HTML charts of price history and forecasts."""

import importlib
import logging
import webbrowser
from datetime import datetime
from pathlib import Path
from types import ModuleType
from typing import Any

from price_intel.config.settings import Settings
from price_intel.models.forecast import ForecastResult
from price_intel.models.observation import EntityType, PriceObservation
from price_intel.storage.observation_store import ObservationStore

logger = logging.getLogger("price_intel.chart")


def _get_plotly_go() -> ModuleType:
    """Import plotly.graph_objects lazily."""
    return importlib.import_module("plotly.graph_objects")


def _ensure_charts_dir(charts_dir: Path | None) -> Path:
    target = charts_dir or Settings.CHARTS_DIR
    target.mkdir(parents=True, exist_ok=True)
    return target


def _write(
    fig: Any, charts_dir: Path | None, slug: str, open_browser: bool,
) -> Path:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = _ensure_charts_dir(charts_dir) / f"{slug}_{stamp}.html"
    fig.write_html(str(filepath))
    logger.info("Chart saved to %s", filepath)
    if open_browser:
        webbrowser.open(filepath.as_uri())
    return filepath


def build_entity_chart(
    history: list[PriceObservation],
    title: str,
    forecast: ForecastResult | None = None,
) -> Any:
    """Line chart of observed prices, with an optional dashed forecast."""
    go = _get_plotly_go()
    dates = [o.observed_at for o in history]
    prices = [float(o.price) for o in history]
    currency = history[0].currency if history else ""

    fig: Any = go.Figure()
    fig.add_trace(go.Scatter(
        x=dates,
        y=prices,
        mode="lines+markers",
        name="Observed",
        hovertemplate=(
            "%{x|%Y-%m-%d %H:%M}<br>"
            f"Price: %{{y:.2f}} {currency}"
            "<extra></extra>"
        ),
    ))

    low = min(prices)
    low_idx = prices.index(low)
    fig.add_annotation(
        x=dates[low_idx], y=low,
        text=f"Min: {low:.2f}",
        showarrow=True, arrowhead=2,
    )

    if forecast is not None and forecast.points:
        f_dates = [p.date for p in forecast.points]
        f_prices = [float(p.predicted_price) for p in forecast.points]
        fig.add_trace(go.Scatter(
            x=f_dates,
            y=f_prices,
            mode="lines+markers",
            name=f"Forecast ({forecast.confidence:.0f}% confidence)",
            line={"dash": "dash"},
        ))
        best = forecast.points[forecast.best_day_index]
        fig.add_annotation(
            x=best.date, y=float(best.predicted_price),
            text=f"Best day: {best.predicted_price}",
            showarrow=True, arrowhead=2,
        )

    fig.update_layout(
        title=f"Price History: {title[:60]}",
        xaxis_title="Date",
        yaxis_title=f"Price ({currency})",
        hovermode="x unified",
        template="plotly_white",
    )
    return fig


def export_entity_chart(
    store: ObservationStore,
    entity_type: EntityType,
    entity_id: str,
    forecast: ForecastResult | None = None,
    window_days: int = Settings.DEFAULT_WINDOW_DAYS,
    open_browser: bool = True,
    charts_dir: Path | None = None,
) -> Path | None:
    """Export one entity's history (and forecast) as an HTML file."""
    history = list(store.window(entity_type, entity_id, window_days))
    if len(history) < 2:
        logger.warning(
            "Not enough data points for chart: %s/%s",
            entity_type.value,
            entity_id,
        )
        return None

    title = f"{entity_type.value} {entity_id}"
    fig = build_entity_chart(history, title, forecast)
    slug = f"{entity_type.value.lower()}_{entity_id}".replace("/", "_")
    return _write(fig, charts_dir, slug[:40], open_browser)


def export_comparison_chart(
    store: ObservationStore,
    entities: list[tuple[EntityType, str]],
    window_days: int = Settings.DEFAULT_WINDOW_DAYS,
    open_browser: bool = True,
    charts_dir: Path | None = None,
) -> Path | None:
    """Overlay the histories of several entities."""
    go = _get_plotly_go()
    fig: Any = go.Figure()
    for entity_type, entity_id in entities:
        history = list(store.window(entity_type, entity_id, window_days))
        if len(history) < 2:
            continue
        fig.add_trace(go.Scatter(
            x=[o.observed_at for o in history],
            y=[float(o.price) for o in history],
            mode="lines+markers",
            name=f"{entity_type.value} {entity_id}",
        ))

    if not fig.data:
        logger.warning("No history for comparison chart")
        return None

    fig.update_layout(
        title="Price Comparison",
        xaxis_title="Date",
        yaxis_title="Price",
        hovermode="x unified",
        template="plotly_white",
        legend={"orientation": "h", "y": -0.15},
    )
    return _write(fig, charts_dir, "comparison", open_browser)
