# price_intel/cli/runner.py

"""Headless operational commands; each returns a process exit code."""

import dataclasses
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from price_intel.errors import PriceIntelError
from price_intel.models.alert import AlertStatus
from price_intel.models.forecast import (
    ForecastResult,
    InsufficientData,
)
from price_intel.models.observation import EntityType
from price_intel.models.statistics import StatisticsSnapshot
from price_intel.services.forecast_engine import ForecastEngine
from price_intel.services.scheduler import RunReport, RunStatus, Scheduler
from price_intel.services.statistics_engine import StatisticsEngine
from price_intel.storage.alert_store import AlertStore
from price_intel.storage.database import Database
from price_intel.storage.observation_store import ObservationStore

logger = logging.getLogger("price_intel.cli")

# Stderr console for status messages so stdout stays clean for JSON
_err = Console(stderr=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def _emit_json(payload: Any) -> None:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    json.dump(
        payload, sys.stdout, default=_json_default, ensure_ascii=False, indent=2,
    )
    sys.stdout.write("\n")


def _fmt(value: Any) -> str:
    if value is None:
        return "—"
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return str(value)


def _print_pairs(title: str, rows: list[tuple[str, Any]]) -> None:
    """Render a two-column key/value table to stdout."""
    table = Table(title=title, show_lines=False, title_style="bold cyan")
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    for key, value in rows:
        table.add_row(key, _fmt(value))
    Console().print(table)


@contextmanager
def _open_db(db_path: Path | None) -> Iterator[Database]:
    db = Database(db_path)
    try:
        yield db
    finally:
        db.close()


def _parse_entity_type(raw: str) -> EntityType | None:
    try:
        return EntityType.parse(raw)
    except PriceIntelError as exc:
        _err.print(f"[red]{exc}[/red]")
        return None


# ── Commands ─────────────────────────────────────────────


def run_ingest(
    filepath: str, output_format: str, db_path: Path | None = None,
) -> int:
    """Load a JSON array of observations into the store."""
    _err.print(f"[bold]Ingesting[/bold] {filepath}")
    with _open_db(db_path) as db:
        store = ObservationStore(db=db)
        try:
            result = store.import_file(Path(filepath))
        except PriceIntelError as exc:
            _err.print(f"[red]Ingest failed: {exc}[/red]")
            return 1

    for rejected in result.rejected:
        _err.print(
            f"[yellow]Rejected #{rejected.index}: {rejected.reason}[/yellow]"
        )
    if output_format == "table":
        _print_pairs("Ingest", [
            ("Inserted", result.inserted),
            ("Duplicates", result.duplicates),
            ("Rejected", len(result.rejected)),
        ])
    else:
        _emit_json(result)
    if result.rejected and not (result.inserted or result.duplicates):
        return 1
    return 0


def _snapshot_rows(snapshot: StatisticsSnapshot) -> list[tuple[str, Any]]:
    best = snapshot.best_observation
    return [
        ("Observations", snapshot.count),
        ("Min", snapshot.min),
        ("Max", snapshot.max),
        ("Mean", snapshot.mean),
        ("Std dev", snapshot.std_dev),
        ("CV", snapshot.coefficient_of_variation),
        ("Trend", snapshot.trend),
        ("Latest", snapshot.latest_price),
        ("Best price", best.price if best else None),
        ("Best at", best.observed_at if best else None),
    ]


def run_summary(
    entity_type: str,
    entity_id: str,
    days: int,
    output_format: str,
    db_path: Path | None = None,
) -> int:
    """Descriptive statistics over the trailing window."""
    etype = _parse_entity_type(entity_type)
    if etype is None:
        return 1
    with _open_db(db_path) as db:
        snapshot = StatisticsEngine(ObservationStore(db=db)).summarize(
            etype, entity_id, days,
        )
    if snapshot.is_empty:
        _err.print(
            f"[yellow]No observations for {etype.value} {entity_id} "
            f"in the last {days} days.[/yellow]"
        )
        return 1
    if output_format == "table":
        _print_pairs(f"{etype.value} {entity_id} ({days}d)", _snapshot_rows(snapshot))
    else:
        _emit_json(snapshot)
    return 0


def run_best_time(
    entity_type: str,
    entity_id: str,
    days: int,
    output_format: str,
    db_path: Path | None = None,
) -> int:
    """Cheapest observation in the window."""
    etype = _parse_entity_type(entity_type)
    if etype is None:
        return 1
    with _open_db(db_path) as db:
        best = StatisticsEngine(ObservationStore(db=db)).best_time_to_book(
            etype, entity_id, days,
        )
    if best is None:
        _err.print("[yellow]No observations in window.[/yellow]")
        return 1
    if output_format == "table":
        _print_pairs("Best time to book", [
            ("Price", best.price), ("Observed", best.observed_at),
        ])
    else:
        _emit_json(best)
    return 0


def _print_forecast(result: ForecastResult) -> None:
    table = Table(
        title=(
            f"Forecast {result.entity_type.value} {result.entity_id} "
            f"({result.confidence:.1f}% confidence)"
        ),
        show_lines=False,
        title_style="bold cyan",
    )
    table.add_column("#", style="dim", width=4)
    table.add_column("Date")
    table.add_column("Predicted", justify="right", style="green")
    for idx, point in enumerate(result.points):
        marker = " ★" if idx == result.best_day_index else ""
        table.add_row(
            str(idx + 1), point.date.isoformat(),
            f"{point.predicted_price:,.2f}{marker}",
        )
    Console().print(table)
    _err.print(
        f"[dim]Last known {result.last_known_price}, "
        f"estimated savings {result.estimated_savings}[/dim]"
    )


def run_predict(
    entity_type: str,
    entity_id: str,
    days_ahead: int,
    lookback: int,
    output_format: str,
    chart: bool = False,
    db_path: Path | None = None,
) -> int:
    """Forecast upcoming daily prices."""
    etype = _parse_entity_type(entity_type)
    if etype is None:
        return 1
    with _open_db(db_path) as db:
        store = ObservationStore(db=db)
        try:
            result = ForecastEngine(store).predict(
                etype, entity_id, days_ahead, lookback,
            )
        except PriceIntelError as exc:
            _err.print(f"[red]{exc}[/red]")
            return 1
        if isinstance(result, InsufficientData):
            _err.print(f"[yellow]{result.message}[/yellow]")
            return 1
        if chart:
            from price_intel.storage.chart_exporter import export_entity_chart

            path = export_entity_chart(
                store, etype, entity_id, result, lookback, open_browser=True,
            )
            if path is not None:
                _err.print(f"[dim]Chart saved → {path}[/dim]")

    if output_format == "table":
        _print_forecast(result)
    else:
        _emit_json(result)
    return 0


def run_backtest(
    entity_type: str,
    entity_id: str,
    holdout: int,
    lookback: int,
    output_format: str,
    db_path: Path | None = None,
) -> int:
    """Score the forecast strategy against held-out history."""
    etype = _parse_entity_type(entity_type)
    if etype is None:
        return 1
    with _open_db(db_path) as db:
        try:
            result = ForecastEngine(ObservationStore(db=db)).backtest(
                etype, entity_id, holdout, lookback,
            )
        except PriceIntelError as exc:
            _err.print(f"[red]{exc}[/red]")
            return 1
    if isinstance(result, InsufficientData):
        _err.print(f"[yellow]{result.message}[/yellow]")
        return 1
    if output_format == "table":
        _print_pairs(f"Backtest ({result.strategy})", [
            ("Holdout days", result.holdout_days),
            ("Compared points", result.compared_points),
            ("MAE", result.mae),
            ("MAPE %", result.mape),
        ])
    else:
        _emit_json(result)
    return 0


def run_alerts(
    user_id: str,
    status: str | None,
    output_format: str,
    db_path: Path | None = None,
) -> int:
    """List a user's alerts, newest first."""
    wanted: AlertStatus | None = None
    if status is not None:
        try:
            wanted = AlertStatus(status.upper())
        except ValueError:
            valid = ", ".join(s.value for s in AlertStatus)
            _err.print(f"[red]Unknown status: {status}[/red]")
            _err.print(f"[dim]Available: {valid}[/dim]")
            return 1
    with _open_db(db_path) as db:
        alerts = AlertStore(db=db).list_for_user(user_id, wanted)

    if output_format != "table":
        _emit_json([dataclasses.asdict(a) for a in alerts])
        return 0
    if not alerts:
        _err.print("[yellow]No alerts found.[/yellow]")
        return 0
    table = Table(title=f"Alerts for {user_id}", title_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Entity", max_width=40)
    table.add_column("Target", justify="right", style="green")
    table.add_column("Drop %", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Triggered", justify="right")
    for a in alerts:
        table.add_row(
            str(a.id),
            a.entity_name,
            f"{a.currency} {a.target_price:,.2f}",
            _fmt(a.price_drop_percentage),
            a.status.value,
            _fmt(a.triggered_price),
        )
    Console().print(table)
    return 0


def _print_report(report: RunReport) -> None:
    _print_pairs(f"Cycle {report.run_id}", [
        ("Status", report.status),
        ("Entities processed", report.entities_processed),
        ("Alerts triggered", report.alerts_triggered),
        ("Alerts expired", report.alerts_expired),
        ("Notifications failed", report.notifications_failed),
        ("Deferred", len(report.deferred)),
        ("Failures", len(report.failures)),
    ])
    for f in report.failures:
        _err.print(
            f"[red]{f.entity_type.value} {f.entity_id} failed in "
            f"{f.stage.value}: {f.error_kind} {f.message}[/red]"
        )


def run_cycle(output_format: str, db_path: Path | None = None) -> int:
    """Run one scheduler cycle now."""
    scheduler = Scheduler.from_settings(db_path)
    try:
        report = scheduler.run_cycle_sync()
    finally:
        scheduler.observations.close()
    logger.info("run-cycle %s: %s", report.run_id, report.status.value)
    if output_format == "table":
        _print_report(report)
    else:
        _emit_json(report)
    return 1 if report.status is RunStatus.FAILED else 0


def run_purge(
    days: int, output_format: str, db_path: Path | None = None,
) -> int:
    """Apply the retention policy."""
    with _open_db(db_path) as db:
        try:
            purged = ObservationStore(db=db).purge_older_than(days)
        except PriceIntelError as exc:
            _err.print(f"[red]{exc}[/red]")
            return 1
    if output_format == "table":
        _err.print(
            f"[green]✓ Purged {purged:,} observations older than "
            f"{days} days[/green]"
        )
    else:
        _emit_json({"purged": purged, "days": days})
    return 0


def run_chart(
    entities: list[str],
    days: int,
    db_path: Path | None = None,
) -> int:
    """Export history charts; ``TYPE:ID`` per entity."""
    from price_intel.storage.chart_exporter import (
        export_comparison_chart,
        export_entity_chart,
    )

    parsed: list[tuple[EntityType, str]] = []
    for item in entities:
        raw_type, _, entity_id = item.partition(":")
        etype = _parse_entity_type(raw_type)
        if etype is None or not entity_id:
            _err.print(f"[red]Expected TYPE:ID, got {item!r}[/red]")
            return 1
        parsed.append((etype, entity_id))

    with _open_db(db_path) as db:
        store = ObservationStore(db=db)
        if len(parsed) == 1:
            etype, entity_id = parsed[0]
            forecast = ForecastEngine(store).predict(
                etype, entity_id, lookback_days=days,
            )
            path = export_entity_chart(
                store,
                etype,
                entity_id,
                forecast if isinstance(forecast, ForecastResult) else None,
                days,
            )
        else:
            path = export_comparison_chart(store, parsed, days)

    if path is None:
        _err.print("[yellow]Not enough history to chart.[/yellow]")
        return 1
    _err.print(f"[green]✓ Chart saved → {path}[/green]")
    return 0


async def run_health_check(db_path: Path | None = None) -> int:
    """Check the store and every collector."""
    from price_intel.services.health_checker import HealthChecker

    _err.print("[bold]Running health check...[/bold]")
    checker = HealthChecker(db_path)
    results = await checker.check_all()

    table = Table(
        title="Health Check",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("Component", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Latency", justify="right")
    table.add_column("Notes", style="dim")

    badges = {
        "ok": "[green]✅ OK[/green]",
        "slow": "[yellow]⚠️  SLOW[/yellow]",
        "unconfigured": "[dim]– UNCONFIGURED[/dim]",
    }
    for r in results:
        latency = f"{r.latency_ms:.0f}ms" if r.latency_ms > 0 else "—"
        table.add_row(
            r.component,
            badges.get(r.status, "[red]❌ DOWN[/red]"),
            latency,
            r.message,
        )

    Console().print(table)
    return 0 if checker.healthy(results) else 1

