# price_intel/services/health_checker.py

"""Connectivity checks for the store and every registered collector."""

import asyncio
import importlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from price_intel.config.settings import Settings
from price_intel.errors import StoreUnavailable
from price_intel.storage.observation_store import ObservationStore

logger = logging.getLogger("price_intel.health")

_PROBE_TIMEOUT = 10  # seconds per source
_SLOW_MS = 5000


@dataclass
class HealthResult:
    """Result of a single component check."""

    component: str
    status: str  # "ok", "slow", "down", "unconfigured"
    latency_ms: float
    message: str


def probe_store(db_path: Path | None = None) -> HealthResult:
    """Open the database and run a trivial query."""
    start = time.monotonic()
    try:
        store = ObservationStore(db_path)
        try:
            total = store.total()
        finally:
            store.close()
    except StoreUnavailable as exc:
        return HealthResult(
            component="store",
            status="down",
            latency_ms=(time.monotonic() - start) * 1000,
            message=str(exc)[:80],
        )
    return HealthResult(
        component="store",
        status="ok",
        latency_ms=(time.monotonic() - start) * 1000,
        message=f"{total} observations",
    )


def probe_source(source: dict[str, str]) -> HealthResult:
    """Probe one collector's upstream for connectivity."""
    source_id = source["id"]
    try:
        module_path, class_name = source["collector"].rsplit(".", 1)
        module = importlib.import_module(module_path)
        collector = getattr(module, class_name)()
    except Exception as exc:
        return HealthResult(
            component=source_id,
            status="down",
            latency_ms=0.0,
            message=f"Failed to load collector: {exc}",
        )

    if not collector.is_configured():
        return HealthResult(
            component=source_id,
            status="unconfigured",
            latency_ms=0.0,
            message="No endpoint configured",
        )

    start = time.monotonic()
    try:
        resp = collector.session.get(
            collector.probe_url(),
            headers=dict(collector.settings.DEFAULT_HEADERS),
            timeout=_PROBE_TIMEOUT,
        )
    except Exception as exc:
        return HealthResult(
            component=source_id,
            status="down",
            latency_ms=(time.monotonic() - start) * 1000,
            message=str(exc)[:80],
        )
    elapsed_ms = (time.monotonic() - start) * 1000

    if resp.status_code >= 500:
        status, message = "down", f"HTTP {resp.status_code}"
    elif elapsed_ms > _SLOW_MS:
        status, message = "slow", "High latency"
    else:
        status, message = "ok", ""
    return HealthResult(
        component=source_id,
        status=status,
        latency_ms=elapsed_ms,
        message=message,
    )


class HealthChecker:
    """Runs the store check and all collector probes concurrently."""

    def __init__(
        self,
        db_path: Path | None = None,
        sources: list[dict[str, str]] | None = None,
    ) -> None:
        self.db_path = db_path
        self.sources = (
            sources if sources is not None else Settings.AVAILABLE_SOURCES
        )

    async def check_all(self) -> list[HealthResult]:
        tasks = [asyncio.to_thread(probe_store, self.db_path)]
        tasks += [asyncio.to_thread(probe_source, src) for src in self.sources]
        results: list[HealthResult] = list(await asyncio.gather(*tasks))
        for r in results:
            logger.info(
                "Health check %s: %s (%.0fms) %s",
                r.component,
                r.status,
                r.latency_ms,
                r.message,
            )
        return results

    @staticmethod
    def healthy(results: list[HealthResult]) -> bool:
        """No component is down; unconfigured collectors are tolerated."""
        return all(r.status != "down" for r in results)
