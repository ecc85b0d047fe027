# price_intel/storage/observation_store.py

"""SQLite-backed append-only store of observed entity prices."""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, cast

from price_intel.errors import ValidationError
from price_intel.models.observation import (
    EntityType,
    PriceObservation,
    context_from_dict,
    context_to_dict,
    to_utc,
)
from price_intel.storage.database import (
    Database,
    from_db_ts,
    to_db_ts,
    utcnow,
)

logger = logging.getLogger("price_intel.observations")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS price_observations (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT    NOT NULL,
    entity_id   TEXT    NOT NULL,
    price       TEXT    NOT NULL,
    currency    TEXT    NOT NULL,
    observed_at TEXT    NOT NULL,
    source      TEXT    NOT NULL,
    context     TEXT,
    UNIQUE (entity_type, entity_id, observed_at, source)
);

CREATE INDEX IF NOT EXISTS idx_observations_entity_time
    ON price_observations(entity_type, entity_id, observed_at);
"""

_INSERT = (
    "INSERT OR IGNORE INTO price_observations "
    "(entity_type, entity_id, price, currency, observed_at, "
    " source, context) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)


@dataclass
class RejectedObservation:
    """An item of a batch that failed validation."""

    index: int
    reason: str


@dataclass
class BatchResult:
    """Outcome of a bulk insert."""

    inserted: int = 0
    duplicates: int = 0
    rejected: list[RejectedObservation] = field(
        default_factory=lambda: list[RejectedObservation]()
    )

    @property
    def total(self) -> int:
        """Number of items submitted."""
        return self.inserted + self.duplicates + len(self.rejected)


def _row_params(obs: PriceObservation) -> tuple[Any, ...]:
    """Map a validated observation onto the INSERT columns."""
    context = (
        json.dumps(context_to_dict(obs.context))
        if obs.context is not None
        else None
    )
    return (
        obs.entity_type.value,
        obs.entity_id,
        str(obs.price),
        obs.currency,
        to_db_ts(obs.observed_at),
        obs.source,
        context,
    )


def _from_row(row: sqlite3.Row) -> PriceObservation:
    """Rebuild an observation from a stored row."""
    entity_type = EntityType(row["entity_type"])
    raw_context = row["context"]
    return PriceObservation(
        entity_type=entity_type,
        entity_id=row["entity_id"],
        price=Decimal(row["price"]),
        currency=row["currency"],
        observed_at=from_db_ts(row["observed_at"]),
        source=row["source"],
        context=(
            context_from_dict(entity_type, json.loads(raw_context))
            if raw_context
            else None
        ),
    )


class ObservationQuery:
    """Lazy, restartable view over one entity's window.

    Nothing is read until iteration starts; every ``iter()`` re-runs
    the query, so a second pass sees rows recorded in between.
    """

    def __init__(
        self,
        db: Database,
        entity_type: EntityType,
        entity_id: str,
        since: datetime | None,
        until: datetime | None = None,
    ) -> None:
        self._db = db
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.since = since
        self.until = until

    def __iter__(self) -> Iterator[PriceObservation]:
        sql = (
            "SELECT * FROM price_observations "
            "WHERE entity_type = ? AND entity_id = ?"
        )
        params: list[Any] = [self.entity_type.value, self.entity_id]
        if self.since is not None:
            sql += " AND observed_at >= ?"
            params.append(to_db_ts(self.since))
        if self.until is not None:
            sql += " AND observed_at <= ?"
            params.append(to_db_ts(self.until))
        sql += " ORDER BY observed_at ASC, id ASC"
        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        for row in rows:
            yield _from_row(row)


class ObservationStore:
    """Append-only log of price observations with a retention sweep."""

    def __init__(
        self,
        db_path: Path | None = None,
        db: Database | None = None,
    ) -> None:
        self._db = db or Database(db_path)
        self._db.executescript(_SCHEMA)

    @property
    def db(self) -> Database:
        """Underlying database handle (shared with other stores)."""
        return self._db

    def close(self) -> None:
        """Close the database connection."""
        self._db.close()

    # ── Recording ────────────────────────────────────────

    def record(self, observation: PriceObservation) -> bool:
        """Validate and append one observation.

        Returns ``False`` when the natural key (entity, timestamp,
        source) already exists; the existing row is left untouched.
        """
        obs = observation.validated()
        with self._db.transaction() as conn:
            cur = conn.execute(_INSERT, _row_params(obs))
        inserted = cur.rowcount == 1
        if inserted:
            logger.debug(
                "Recorded %s/%s at %s: %s %s",
                obs.entity_type.value,
                obs.entity_id,
                obs.observed_at.isoformat(),
                obs.price,
                obs.currency,
            )
        else:
            logger.debug(
                "Duplicate observation skipped for %s/%s at %s (%s)",
                obs.entity_type.value,
                obs.entity_id,
                obs.observed_at.isoformat(),
                obs.source,
            )
        return inserted

    def record_batch(
        self, observations: Iterable[PriceObservation],
    ) -> BatchResult:
        """Validate every item, then insert the valid ones in one go.

        Invalid items are listed in ``rejected``; duplicates of
        existing natural keys are counted, not treated as errors.
        """
        result = BatchResult()
        valid: list[PriceObservation] = []
        for index, obs in enumerate(observations):
            try:
                valid.append(obs.validated())
            except ValidationError as exc:
                result.rejected.append(
                    RejectedObservation(index=index, reason=str(exc))
                )

        with self._db.transaction() as conn:
            for obs in valid:
                cur = conn.execute(_INSERT, _row_params(obs))
                if cur.rowcount == 1:
                    result.inserted += 1
                else:
                    result.duplicates += 1

        if result.rejected:
            logger.warning(
                "Batch rejected %d of %d observations",
                len(result.rejected),
                result.total,
            )
        logger.info(
            "Batch recorded %d observations (%d duplicates)",
            result.inserted,
            result.duplicates,
        )
        return result

    # ── Querying ─────────────────────────────────────────

    def query(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ObservationQuery:
        """Observations for an entity between *since* and *until*, oldest first."""
        return ObservationQuery(
            self._db,
            EntityType.parse(entity_type),
            entity_id,
            to_utc(since) if since is not None else None,
            to_utc(until) if until is not None else None,
        )

    def window(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        days: int,
        now: datetime | None = None,
    ) -> ObservationQuery:
        """Observations within the trailing *days* window.

        An explicit *now* also caps the window, so a past reference time
        never sees later rows.  Without one the window stays open-ended.
        """
        if now is None:
            return self.query(
                entity_type, entity_id, utcnow() - timedelta(days=days),
            )
        reference = to_utc(now)
        return self.query(
            entity_type, entity_id, reference - timedelta(days=days), reference,
        )

    def latest(
        self, entity_type: EntityType | str, entity_id: str,
    ) -> PriceObservation | None:
        """Most recent observation for an entity, if any."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM price_observations "
                "WHERE entity_type = ? AND entity_id = ? "
                "ORDER BY observed_at DESC, id DESC LIMIT 1",
                (EntityType.parse(entity_type).value, entity_id),
            ).fetchone()
        return _from_row(row) if row else None

    def count(
        self, entity_type: EntityType | str, entity_id: str,
    ) -> int:
        """Total stored observations for an entity."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM price_observations "
                "WHERE entity_type = ? AND entity_id = ?",
                (EntityType.parse(entity_type).value, entity_id),
            ).fetchone()
        return int(row[0])

    def total(self) -> int:
        """Stored observations across all entities."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM price_observations"
            ).fetchone()
        return int(row[0])

    # ── Retention ────────────────────────────────────────

    def purge_older_than(
        self, days: int, now: datetime | None = None,
    ) -> int:
        """Delete observations older than *days*; returns the count."""
        if days < 0:
            raise ValidationError(
                "Retention days must be non-negative", field="days",
            )
        reference = to_utc(now) if now is not None else utcnow()
        cutoff = to_db_ts(reference - timedelta(days=days))
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM price_observations WHERE observed_at < ?",
                (cutoff,),
            )
        purged = cur.rowcount
        logger.info(
            "Retention sweep removed %d observations older than %d days",
            purged,
            days,
        )
        return purged

    def purge_entity(
        self, entity_type: EntityType | str, entity_id: str,
    ) -> int:
        """Delete every observation of one entity (test-data purge)."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM price_observations "
                "WHERE entity_type = ? AND entity_id = ?",
                (EntityType.parse(entity_type).value, entity_id),
            )
        logger.info(
            "Purged %d observations for %s/%s",
            cur.rowcount,
            entity_type,
            entity_id,
        )
        return cur.rowcount

    # ── File import ──────────────────────────────────────

    def import_file(self, filepath: Path) -> BatchResult:
        """Ingest a JSON array of observation records.

        Records that cannot be parsed are reported as rejected with
        their position in the file.
        """
        try:
            with open(filepath, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            raise ValidationError(
                f"Cannot read {filepath.name}: {exc}"
            ) from exc

        if not isinstance(data, list):
            raise ValidationError(
                f"{filepath.name} must contain a JSON array"
            )

        items = cast(list[object], data)
        parsed: list[PriceObservation] = []
        positions: list[int] = []
        rejected: list[RejectedObservation] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                rejected.append(
                    RejectedObservation(index, "record is not an object")
                )
                continue
            try:
                parsed.append(
                    PriceObservation.from_dict(cast(dict[str, Any], item))
                )
                positions.append(index)
            except ValidationError as exc:
                rejected.append(RejectedObservation(index, str(exc)))

        result = self.record_batch(parsed)
        # Map batch indices back to file positions
        for item in result.rejected:
            item.index = positions[item.index]
        result.rejected = sorted(
            result.rejected + rejected, key=lambda r: r.index,
        )
        logger.info(
            "Imported %s: %d inserted, %d duplicates, %d rejected",
            filepath.name,
            result.inserted,
            result.duplicates,
            len(result.rejected),
        )
        return result
