# price_intel/storage/run_lease.py

"""Single-row scheduler lease and persisted run history.

The lease row is the only "last run" state: an owner token plus an
expiry.  Acquisition is one conditional UPDATE, so overlapping cron
invocations (in this process or another) cannot both hold it.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from price_intel.models.observation import to_utc
from price_intel.storage.database import (
    Database,
    from_db_ts,
    to_db_ts,
    utcnow,
)

logger = logging.getLogger("price_intel.lease")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS scheduler_lease (
    name         TEXT PRIMARY KEY,
    owner        TEXT,
    acquired_at  TEXT,
    expires_at   TEXT,
    last_run_at  TEXT,
    last_status  TEXT
);

CREATE TABLE IF NOT EXISTS scheduler_runs (
    run_id               TEXT PRIMARY KEY,
    status               TEXT    NOT NULL,
    started_at           TEXT    NOT NULL,
    finished_at          TEXT    NOT NULL,
    entities_processed   INTEGER NOT NULL,
    alerts_triggered     INTEGER NOT NULL,
    alerts_expired       INTEGER NOT NULL,
    notifications_failed INTEGER NOT NULL,
    deferred             INTEGER NOT NULL,
    failures             TEXT    NOT NULL
);
"""


@dataclass
class LeaseState:
    """Snapshot of the lease row."""

    name: str
    owner: str | None
    expires_at: datetime | None
    last_run_at: datetime | None
    last_status: str | None


class RunLease:
    """Expiring, single-owner claim on the scheduler cycle."""

    def __init__(
        self,
        name: str,
        db_path: Path | None = None,
        db: Database | None = None,
    ) -> None:
        self.name = name
        self._db = db or Database(db_path)
        self._db.executescript(_SCHEMA)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO scheduler_lease (name) VALUES (?)",
                (name,),
            )

    def acquire(
        self, ttl_seconds: float, now: datetime | None = None,
    ) -> str | None:
        """Try to take the lease; returns the owner token or ``None``.

        A lease whose holder crashed is reclaimed once it expires.
        """
        moment = to_utc(now) if now is not None else utcnow()
        token = uuid.uuid4().hex
        stamp = to_db_ts(moment)
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE scheduler_lease SET owner = ?, acquired_at = ?, "
                "expires_at = ? WHERE name = ? "
                "AND (owner IS NULL OR expires_at <= ?)",
                (
                    token,
                    stamp,
                    to_db_ts(moment + timedelta(seconds=ttl_seconds)),
                    self.name,
                    stamp,
                ),
            )
        if cur.rowcount != 1:
            logger.info("Lease '%s' is held by another run", self.name)
            return None
        logger.debug("Lease '%s' acquired (%s)", self.name, token)
        return token

    def release(
        self,
        token: str,
        status: str,
        now: datetime | None = None,
    ) -> bool:
        """Give the lease back and stamp the last run; owner-checked."""
        stamp = to_db_ts(to_utc(now) if now is not None else utcnow())
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE scheduler_lease SET owner = NULL, expires_at = NULL, "
                "last_run_at = ?, last_status = ? "
                "WHERE name = ? AND owner = ?",
                (stamp, status, self.name, token),
            )
        if cur.rowcount != 1:
            logger.warning(
                "Lease '%s' was lost before release (token %s)",
                self.name,
                token,
            )
            return False
        return True

    def state(self) -> LeaseState:
        """Read the lease row."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM scheduler_lease WHERE name = ?",
                (self.name,),
            ).fetchone()
        return LeaseState(
            name=self.name,
            owner=row["owner"],
            expires_at=(
                from_db_ts(row["expires_at"]) if row["expires_at"] else None
            ),
            last_run_at=(
                from_db_ts(row["last_run_at"]) if row["last_run_at"] else None
            ),
            last_status=row["last_status"],
        )

    # ── Run history ──────────────────────────────────────

    def record_run(self, report: Any) -> None:
        """Persist a finished cycle's report."""
        failures = [
            {
                "entity_type": f.entity_type.value,
                "entity_id": f.entity_id,
                "stage": f.stage.value,
                "error_kind": f.error_kind,
                "message": f.message,
            }
            for f in report.failures
        ]
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO scheduler_runs (run_id, status, "
                "started_at, finished_at, entities_processed, "
                "alerts_triggered, alerts_expired, notifications_failed, "
                "deferred, failures) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    report.run_id,
                    report.status.value,
                    to_db_ts(report.started_at),
                    to_db_ts(report.finished_at or report.started_at),
                    report.entities_processed,
                    report.alerts_triggered,
                    report.alerts_expired,
                    report.notifications_failed,
                    len(report.deferred),
                    json.dumps(failures),
                ),
            )

    def recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent persisted runs, newest first."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduler_runs "
                "ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {**dict(r), "failures": json.loads(r["failures"])}
            for r in rows
        ]
