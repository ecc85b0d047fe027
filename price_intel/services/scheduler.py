# price_intel/services/scheduler.py

"""Periodic price cycle: collect, summarise, match, notify."""

import asyncio
import importlib
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from price_intel.collectors.base_collector import BaseCollector
from price_intel.config.settings import Settings
from price_intel.errors import NotificationDeliveryError
from price_intel.models.alert import AlertDecision, DeliveryResult
from price_intel.models.forecast import ForecastResult
from price_intel.models.observation import EntityType
from price_intel.models.statistics import StatisticsSnapshot
from price_intel.services.alert_matcher import AlertMatcher
from price_intel.services.forecast_engine import ForecastEngine
from price_intel.services.notifier import (
    LoggingNotifier,
    Notifier,
    build_notification,
    build_notifier,
)
from price_intel.services.statistics_engine import StatisticsEngine
from price_intel.storage.alert_store import AlertStore
from price_intel.storage.database import Database, utcnow
from price_intel.storage.observation_store import ObservationStore
from price_intel.storage.run_lease import RunLease

logger = logging.getLogger("price_intel.scheduler")

T = TypeVar("T")


class RunStage(str, Enum):
    """Where a cycle (or one entity within it) currently is."""

    IDLE = "IDLE"
    COLLECTING = "COLLECTING"
    SUMMARIZING = "SUMMARIZING"
    MATCHING = "MATCHING"
    NOTIFYING = "NOTIFYING"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    """Overall outcome of a cycle."""

    OK = "OK"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class EntityFailure:
    """One entity that dropped out of the cycle."""

    entity_type: EntityType
    entity_id: str
    stage: RunStage
    error_kind: str
    message: str


@dataclass
class RunReport:
    """Container for a completed cycle."""

    run_id: str
    started_at: datetime
    status: RunStatus = RunStatus.OK
    finished_at: datetime | None = None
    entities_processed: int = 0
    alerts_triggered: int = 0
    alerts_expired: int = 0
    notifications_failed: int = 0
    forecasts_computed: int = 0
    deferred: list[tuple[EntityType, str]] = field(
        default_factory=lambda: list[tuple[EntityType, str]]()
    )
    failures: list[EntityFailure] = field(
        default_factory=lambda: list[EntityFailure]()
    )


@dataclass
class _EntityWork:
    """Per-entity state carried across stages."""

    entity_type: EntityType
    entity_id: str
    stage: RunStage = RunStage.IDLE
    snapshot: StatisticsSnapshot | None = None
    decisions: list[AlertDecision] = field(
        default_factory=lambda: list[AlertDecision]()
    )
    deferred: bool = False

    @property
    def live(self) -> bool:
        return not self.deferred and self.stage is not RunStage.FAILED


def _load_collector_class(dotted_path: str) -> type[Any]:
    """Dynamically import a collector class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls: type[Any] = getattr(module, class_name)
    return cls


def load_collectors(
    sources: list[dict[str, str]] | None = None,
) -> list[BaseCollector]:
    """Instantiate every registered collector that is configured."""
    collectors: list[BaseCollector] = []
    for source in sources if sources is not None else Settings.AVAILABLE_SOURCES:
        collector = _load_collector_class(source["collector"])()
        if collector.is_configured():
            collectors.append(collector)
        else:
            logger.debug("Collector '%s' not configured, skipped", source["id"])
    return collectors


class Scheduler:
    """Runs one price cycle at a time under a database lease.

    Stages run in order; inside a stage entities are processed
    concurrently in worker threads.  An entity that fails is recorded
    and dropped from later stages without affecting the others.
    """

    def __init__(
        self,
        observations: ObservationStore,
        alerts: AlertStore,
        lease: RunLease,
        statistics: StatisticsEngine | None = None,
        forecasts: ForecastEngine | None = None,
        matcher: AlertMatcher | None = None,
        notifier: Notifier | None = None,
        collectors: list[BaseCollector] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.observations = observations
        self.alerts = alerts
        self.lease = lease
        self.statistics = statistics or StatisticsEngine(observations)
        self.forecasts = forecasts
        self.matcher = matcher or AlertMatcher(alerts)
        self.notifier = notifier or LoggingNotifier()
        self.collectors = collectors if collectors is not None else []
        self.clock = clock
        self.stage = RunStage.IDLE
        self._deadline = 0.0
        self._semaphore: asyncio.Semaphore | None = None

    @classmethod
    def from_settings(cls, db_path: Path | None = None) -> "Scheduler":
        """Wire every component against one database file."""
        db = Database(db_path)
        observations = ObservationStore(db=db)
        return cls(
            observations=observations,
            alerts=AlertStore(db=db),
            lease=RunLease(Settings.LEASE_NAME, db=db),
            statistics=StatisticsEngine(observations),
            forecasts=ForecastEngine(observations),
            notifier=build_notifier(),
            collectors=load_collectors(),
        )

    # ── Private helpers ──────────────────────────────────

    def _set_stage(self, stage: RunStage) -> None:
        self.stage = stage
        logger.debug("Cycle stage -> %s", stage.value)

    def _budget_exhausted(self) -> bool:
        return time.monotonic() >= self._deadline

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run blocking I/O in a thread under the per-call timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args),
            timeout=Settings.CALL_TIMEOUT_SECONDS,
        )

    async def _run_stage(
        self,
        stage: RunStage,
        work: list[_EntityWork],
        step: Callable[[_EntityWork], Awaitable[None]],
        report: RunReport,
    ) -> None:
        """Apply *step* to every live entity concurrently."""
        self._set_stage(stage)
        semaphore = self._semaphore
        if semaphore is None:
            raise RuntimeError("Stages only run inside run_cycle")

        async def run_one(item: _EntityWork) -> None:
            async with semaphore:
                if self._budget_exhausted():
                    item.deferred = True
                    return
                item.stage = stage
                try:
                    await step(item)
                except Exception as exc:
                    item.stage = RunStage.FAILED
                    kind = (
                        "TimeoutError"
                        if isinstance(exc, asyncio.TimeoutError)
                        else type(exc).__name__
                    )
                    report.failures.append(
                        EntityFailure(
                            entity_type=item.entity_type,
                            entity_id=item.entity_id,
                            stage=stage,
                            error_kind=kind,
                            message=str(exc)[:200],
                        )
                    )
                    logger.error(
                        "Entity %s/%s failed during %s: %s",
                        item.entity_type.value,
                        item.entity_id,
                        stage.value,
                        kind,
                        exc_info=exc,
                    )

        await asyncio.gather(*(run_one(w) for w in work if w.live))

    # ── Stage steps ──────────────────────────────────────

    async def _collect(self, item: _EntityWork) -> None:
        for collector in self.collectors:
            observation = await self._call(
                collector.collect, item.entity_type, item.entity_id,
            )
            if observation is not None:
                await self._call(self.observations.record, observation)

    async def _summarize(self, item: _EntityWork, report: RunReport) -> None:
        # Read time, not cycle start: rows collected this cycle must count
        now = self.clock()
        item.snapshot = await self._call(
            self.statistics.summarize,
            item.entity_type,
            item.entity_id,
            Settings.DEFAULT_WINDOW_DAYS,
            now,
        )
        if self.forecasts is not None:
            forecast = await self._call(
                self.forecasts.predict,
                item.entity_type,
                item.entity_id,
                7,
                Settings.DEFAULT_WINDOW_DAYS,
                now,
            )
            if isinstance(forecast, ForecastResult):
                report.forecasts_computed += 1

    async def _match(
        self, item: _EntityWork, report: RunReport, now: datetime,
    ) -> None:
        latest = item.snapshot.latest_price if item.snapshot else None
        if latest is None:
            observation = await self._call(
                self.observations.latest, item.entity_type, item.entity_id,
            )
            if observation is None:
                logger.info(
                    "No observations yet for %s/%s, nothing to match",
                    item.entity_type.value,
                    item.entity_id,
                )
                return
            latest = observation.price
        # Claims commit inside the worker thread; never abandon them
        result = await asyncio.to_thread(
            self.matcher.evaluate_detailed,
            item.entity_type,
            item.entity_id,
            latest,
            now,
        )
        item.decisions = result.decisions
        report.alerts_triggered += len(result.decisions)
        if result.expired_ids:
            report.alerts_expired += await self._call(
                self.alerts.expire_due, now,
            )

    async def _notify_all(
        self, work: list[_EntityWork], report: RunReport,
    ) -> None:
        """Dispatch every decision concurrently; one writer per alert.

        Decisions whose entity failed after claiming still go out.  Once
        the cycle budget is spent, remaining decisions are recorded as
        failed deliveries instead of being sent.
        """
        self._set_stage(RunStage.NOTIFYING)
        locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        decisions = [d for w in work for d in w.decisions]

        async def deliver(decision: AlertDecision) -> None:
            if self._budget_exhausted():
                result = DeliveryResult(
                    alert_id=decision.alert_id,
                    ok=False,
                    error="cycle budget exhausted before delivery",
                )
            else:
                notification = build_notification(decision)
                try:
                    result = await self._call(
                        self.notifier.send, notification,
                    )
                except Exception as exc:
                    result = DeliveryResult(
                        alert_id=decision.alert_id,
                        ok=False,
                        error=f"{type(exc).__name__}: {exc}",
                    )
            async with locks[decision.alert_id]:
                if not result.ok:
                    report.notifications_failed += 1
                    logger.error(
                        "%s", NotificationDeliveryError(
                            decision.alert_id, result.error,
                        ),
                    )
                try:
                    await self._call(
                        self.alerts.record_delivery,
                        decision.alert_id,
                        result.ok,
                        result.error,
                    )
                except Exception:
                    logger.error(
                        "Could not record delivery for alert %d",
                        decision.alert_id,
                        exc_info=True,
                    )

        await asyncio.gather(*(deliver(d) for d in decisions))

    # ── Public entry points ──────────────────────────────

    async def run_cycle(self) -> RunReport:
        """Run one cycle; returns SKIPPED if another run holds the lease."""
        now = self.clock()
        report = RunReport(run_id=uuid.uuid4().hex[:12], started_at=now)
        token = await asyncio.to_thread(
            self.lease.acquire, Settings.LEASE_TTL_SECONDS, now,
        )
        if token is None:
            report.status = RunStatus.SKIPPED
            report.finished_at = self.clock()
            logger.info("Cycle %s skipped, lease held elsewhere", report.run_id)
            return report

        self._deadline = time.monotonic() + Settings.CYCLE_BUDGET_SECONDS
        self._semaphore = asyncio.Semaphore(Settings.MAX_CONCURRENCY)
        logger.info("Cycle %s started", report.run_id)
        try:
            await self._execute(report, now)
        except Exception as exc:
            report.status = RunStatus.FAILED
            logger.critical(
                "Cycle %s aborted: %s", report.run_id, exc, exc_info=True,
            )
        finally:
            self._set_stage(RunStage.IDLE)
            report.finished_at = self.clock()
            try:
                await asyncio.to_thread(self.lease.record_run, report)
            except Exception:
                logger.error("Could not persist run %s", report.run_id, exc_info=True)
            await asyncio.to_thread(
                self.lease.release, token, report.status.value, self.clock(),
            )

        logger.info(
            "Cycle %s finished %s: %d processed, %d triggered, "
            "%d failed, %d deferred",
            report.run_id,
            report.status.value,
            report.entities_processed,
            report.alerts_triggered,
            len(report.failures),
            len(report.deferred),
        )
        return report

    async def _execute(self, report: RunReport, now: datetime) -> None:
        report.alerts_expired += await asyncio.to_thread(
            self.alerts.expire_due, now,
        )
        due = await asyncio.to_thread(self.alerts.due_entities, now)
        work = [_EntityWork(etype, eid) for etype, eid in dict.fromkeys(due)]
        logger.info("Cycle %s: %d due entities", report.run_id, len(work))

        await self._run_stage(RunStage.COLLECTING, work, self._collect, report)

        async def summarize(item: _EntityWork) -> None:
            await self._summarize(item, report)

        await self._run_stage(RunStage.SUMMARIZING, work, summarize, report)

        async def match(item: _EntityWork) -> None:
            await self._match(item, report, now)

        await self._run_stage(RunStage.MATCHING, work, match, report)
        await self._notify_all(work, report)

        report.deferred = [
            (w.entity_type, w.entity_id) for w in work if w.deferred
        ]
        report.entities_processed = sum(1 for w in work if w.live)
        attempted = sum(1 for w in work if not w.deferred)
        if attempted and report.entities_processed == 0:
            report.status = RunStatus.FAILED
        elif report.failures or report.notifications_failed:
            report.status = RunStatus.DEGRADED
        else:
            report.status = RunStatus.OK

    def run_cycle_sync(self) -> RunReport:
        """Blocking wrapper for cron entry points."""
        return asyncio.run(self.run_cycle())

    def run_retention(self, days: int = Settings.RETENTION_DAYS) -> int:
        """Apply the observation retention policy."""
        return self.observations.purge_older_than(days, now=self.clock())
