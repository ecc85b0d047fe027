# price_intel/storage/alert_store.py

"""SQLite-backed store of user price alerts.

The table is the engine's only mutable shared resource.  Every status
change is a conditional UPDATE on the expected prior status, so two
matcher passes racing on the same alert cannot both win.
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from price_intel.config.settings import Settings
from price_intel.errors import (
    ConcurrencyConflict,
    StoreUnavailable,
    ValidationError,
)
from price_intel.models.alert import AlertRequest, AlertStatus, PriceAlert
from price_intel.models.observation import EntityType, parse_price, to_utc
from price_intel.storage.database import (
    Database,
    from_db_ts,
    to_db_ts,
    utcnow,
)

logger = logging.getLogger("price_intel.alerts")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS price_alerts (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id               TEXT    NOT NULL,
    entity_type           TEXT    NOT NULL,
    entity_id             TEXT    NOT NULL,
    entity_name           TEXT    NOT NULL,
    target_price          TEXT    NOT NULL,
    current_price         TEXT    NOT NULL,
    currency              TEXT    NOT NULL,
    price_drop_percentage TEXT,
    status                TEXT    NOT NULL DEFAULT 'ACTIVE',
    channels              TEXT    NOT NULL,
    expires_at            TEXT,
    created_at            TEXT    NOT NULL,
    updated_at            TEXT    NOT NULL,
    triggered_price       TEXT,
    triggered_at          TEXT,
    last_notified_at      TEXT,
    notification_count    INTEGER NOT NULL DEFAULT 0,
    last_delivery_error   TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_active_key
    ON price_alerts(user_id, entity_type, entity_id)
    WHERE status = 'ACTIVE';

CREATE INDEX IF NOT EXISTS idx_alerts_user_key
    ON price_alerts(user_id, entity_type, entity_id);

CREATE INDEX IF NOT EXISTS idx_alerts_entity_status
    ON price_alerts(entity_type, entity_id, status);
"""


def _opt_ts(raw: str | None) -> datetime | None:
    return from_db_ts(raw) if raw else None


def _opt_dec(raw: str | None) -> Decimal | None:
    return Decimal(raw) if raw is not None else None


def _from_row(row: sqlite3.Row) -> PriceAlert:
    """Rebuild an alert from a stored row."""
    return PriceAlert(
        id=row["id"],
        user_id=row["user_id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        target_price=Decimal(row["target_price"]),
        current_price_at_creation=Decimal(row["current_price"]),
        currency=row["currency"],
        status=AlertStatus(row["status"]),
        notification_channels=frozenset(
            c for c in row["channels"].split(",") if c
        ),
        created_at=from_db_ts(row["created_at"]),
        updated_at=from_db_ts(row["updated_at"]),
        price_drop_percentage=_opt_dec(row["price_drop_percentage"]),
        expires_at=_opt_ts(row["expires_at"]),
        triggered_price=_opt_dec(row["triggered_price"]),
        triggered_at=_opt_ts(row["triggered_at"]),
        last_notified_at=_opt_ts(row["last_notified_at"]),
        notification_count=row["notification_count"],
        last_delivery_error=row["last_delivery_error"],
    )


def validate_request(
    request: AlertRequest, now: datetime,
) -> dict[str, Any]:
    """Check an alert request and return normalised column values.

    A target above the current price is accepted (a price ceiling is
    a legitimate thing to watch).
    """
    user_id = str(request.user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required", field="user_id")
    entity_type = EntityType.parse(request.entity_type)
    entity_id = str(request.entity_id or "").strip()
    if not entity_id:
        raise ValidationError("entity_id is required", field="entity_id")

    target = parse_price(request.target_price, "target_price")
    current = parse_price(request.current_price, "current_price")

    drop: Decimal | None = None
    if request.price_drop_percentage is not None:
        drop = parse_price(
            request.price_drop_percentage, "price_drop_percentage",
        )
        if drop == 0 or drop > 100:
            raise ValidationError(
                "price_drop_percentage must be in (0, 100]",
                field="price_drop_percentage",
            )

    channels = frozenset(
        c.strip().upper() for c in request.notification_channels
    )
    if not channels:
        raise ValidationError(
            "At least one notification channel is required",
            field="notification_channels",
        )
    unknown = channels - set(Settings.NOTIFICATION_CHANNELS)
    if unknown:
        raise ValidationError(
            f"Unknown notification channel(s): {', '.join(sorted(unknown))}",
            field="notification_channels",
        )

    currency = str(request.currency or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError(
            f"Invalid currency code: {request.currency!r}", field="currency",
        )

    expires_at = (
        to_utc(request.expires_at) if request.expires_at else None
    )
    if expires_at is not None and expires_at <= now:
        raise ValidationError(
            "expires_at must be in the future", field="expires_at",
        )

    return {
        "user_id": user_id,
        "entity_type": entity_type.value,
        "entity_id": entity_id,
        "entity_name": str(request.entity_name or "").strip()
        or f"{entity_type.value} {entity_id}",
        "target_price": str(target),
        "current_price": str(current),
        "currency": currency,
        "price_drop_percentage": str(drop) if drop is not None else None,
        "channels": ",".join(sorted(channels)),
        "expires_at": to_db_ts(expires_at) if expires_at else None,
    }


class AlertStore:
    """Price alert persistence and guarded status transitions."""

    def __init__(
        self,
        db_path: Path | None = None,
        db: Database | None = None,
    ) -> None:
        self._db = db or Database(db_path)
        self._db.executescript(_SCHEMA)

    def close(self) -> None:
        """Close the database connection."""
        self._db.close()

    # ── Create / update ──────────────────────────────────

    def create_or_update_alert(
        self, request: AlertRequest, now: datetime | None = None,
    ) -> PriceAlert:
        """Create an alert, or update the ACTIVE one for the same key.

        At most one ACTIVE alert exists per (user, entity type,
        entity id); the partial unique index enforces it if two
        writers race past the lookup.
        """
        moment = to_utc(now) if now is not None else utcnow()
        values = validate_request(request, moment)
        stamp = to_db_ts(moment)
        try:
            return self._upsert(values, stamp)
        except sqlite3.IntegrityError:
            logger.debug(
                "Concurrent insert for %s/%s/%s, retrying as update",
                values["user_id"],
                values["entity_type"],
                values["entity_id"],
            )
            return self._upsert(values, stamp)

    def _upsert(self, values: dict[str, Any], stamp: str) -> PriceAlert:
        key = (values["user_id"], values["entity_type"], values["entity_id"])
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM price_alerts "
                "WHERE user_id = ? AND entity_type = ? AND entity_id = ? "
                "AND status = 'ACTIVE'",
                key,
            ).fetchone()
            if existing is not None:
                alert_id = int(existing["id"])
                conn.execute(
                    "UPDATE price_alerts SET entity_name = ?, "
                    "target_price = ?, current_price = ?, currency = ?, "
                    "price_drop_percentage = ?, channels = ?, "
                    "expires_at = ?, updated_at = ? "
                    "WHERE id = ?",
                    (
                        values["entity_name"],
                        values["target_price"],
                        values["current_price"],
                        values["currency"],
                        values["price_drop_percentage"],
                        values["channels"],
                        values["expires_at"],
                        stamp,
                        alert_id,
                    ),
                )
                action = "Updated"
            else:
                cur = conn.execute(
                    "INSERT INTO price_alerts (user_id, entity_type, "
                    "entity_id, entity_name, target_price, current_price, "
                    "currency, price_drop_percentage, status, channels, "
                    "expires_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'ACTIVE', ?, ?, ?, ?)",
                    (
                        *key,
                        values["entity_name"],
                        values["target_price"],
                        values["current_price"],
                        values["currency"],
                        values["price_drop_percentage"],
                        values["channels"],
                        values["expires_at"],
                        stamp,
                        stamp,
                    ),
                )
                alert_id = int(cur.lastrowid or 0)
                action = "Created"
        logger.info(
            "%s alert %d for %s on %s/%s (target %s)",
            action,
            alert_id,
            key[0],
            key[1],
            key[2],
            values["target_price"],
        )
        alert = self.get(alert_id)
        if alert is None:
            raise StoreUnavailable(f"Alert {alert_id} missing right after write")
        return alert

    # ── Reads ────────────────────────────────────────────

    def get(self, alert_id: int) -> PriceAlert | None:
        """Fetch one alert by id."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM price_alerts WHERE id = ?", (alert_id,),
            ).fetchone()
        return _from_row(row) if row else None

    def active_for_entity(
        self, entity_type: EntityType | str, entity_id: str,
    ) -> list[PriceAlert]:
        """All ACTIVE alerts watching an entity."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM price_alerts "
                "WHERE entity_type = ? AND entity_id = ? "
                "AND status = 'ACTIVE' ORDER BY id",
                (EntityType.parse(entity_type).value, entity_id),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def list_for_user(
        self, user_id: str, status: AlertStatus | None = None,
    ) -> list[PriceAlert]:
        """A user's alerts, newest first, optionally filtered by status."""
        sql = "SELECT * FROM price_alerts WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(AlertStatus(status).value)
        sql += " ORDER BY created_at DESC, id DESC"
        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_from_row(r) for r in rows]

    def due_entities(
        self, now: datetime | None = None,
    ) -> list[tuple[EntityType, str]]:
        """Distinct entities with at least one unexpired ACTIVE alert."""
        stamp = to_db_ts(to_utc(now) if now is not None else utcnow())
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT DISTINCT entity_type, entity_id FROM price_alerts "
                "WHERE status = 'ACTIVE' "
                "AND (expires_at IS NULL OR expires_at > ?) "
                "ORDER BY entity_type, entity_id",
                (stamp,),
            ).fetchall()
        return [(EntityType(r[0]), r[1]) for r in rows]

    # ── Guarded transitions ──────────────────────────────

    def transition(
        self,
        alert_id: int,
        expected: AlertStatus,
        new: AlertStatus,
        now: datetime | None = None,
        triggered_price: Decimal | None = None,
    ) -> None:
        """Compare-and-swap the status of one alert.

        Raises :class:`ConcurrencyConflict` when the alert is no longer
        in *expected* status.
        """
        stamp = to_db_ts(to_utc(now) if now is not None else utcnow())
        sets = "status = ?, updated_at = ?"
        params: list[Any] = [new.value, stamp]
        if new is AlertStatus.TRIGGERED:
            sets += ", triggered_at = ?, triggered_price = ?"
            params += [
                stamp,
                str(triggered_price) if triggered_price is not None else None,
            ]
        params += [alert_id, expected.value]
        with self._db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE price_alerts SET {sets} "
                "WHERE id = ? AND status = ?",
                params,
            )
        if cur.rowcount != 1:
            raise ConcurrencyConflict(alert_id, expected.value)
        logger.info(
            "Alert %d: %s -> %s", alert_id, expected.value, new.value,
        )

    def cancel(self, alert_id: int, now: datetime | None = None) -> bool:
        """Cancel an ACTIVE alert; False when it was not ACTIVE."""
        try:
            self.transition(
                alert_id, AlertStatus.ACTIVE, AlertStatus.CANCELLED, now,
            )
        except ConcurrencyConflict:
            return False
        return True

    def reactivate(
        self,
        alert_id: int,
        current_price: Decimal | float | str | None = None,
        now: datetime | None = None,
    ) -> PriceAlert:
        """Move a TRIGGERED or EXPIRED alert back to ACTIVE.

        Optionally resets the reference price used for percentage-drop
        matching.  Rejected when another ACTIVE alert holds the key.
        """
        alert = self.get(alert_id)
        if alert is None:
            raise ValidationError(f"Unknown alert {alert_id}", field="id")
        if alert.status not in (AlertStatus.TRIGGERED, AlertStatus.EXPIRED):
            raise ValidationError(
                f"Alert {alert_id} is {alert.status.value}, "
                "only TRIGGERED or EXPIRED alerts can be reactivated",
                field="status",
            )
        moment = to_utc(now) if now is not None else utcnow()
        reference = (
            parse_price(current_price, "current_price")
            if current_price is not None
            else alert.current_price_at_creation
        )
        try:
            with self._db.transaction() as conn:
                cur = conn.execute(
                    "UPDATE price_alerts SET status = 'ACTIVE', "
                    "current_price = ?, updated_at = ?, "
                    "triggered_at = NULL, triggered_price = NULL, "
                    "expires_at = CASE WHEN expires_at <= ? "
                    "THEN NULL ELSE expires_at END "
                    "WHERE id = ? AND status = ?",
                    (
                        str(reference),
                        to_db_ts(moment),
                        to_db_ts(moment),
                        alert_id,
                        alert.status.value,
                    ),
                )
        except sqlite3.IntegrityError:
            raise ValidationError(
                "Another ACTIVE alert already exists for this entity",
                field="status",
            ) from None
        if cur.rowcount != 1:
            raise ConcurrencyConflict(alert_id, alert.status.value)
        logger.info("Alert %d reactivated", alert_id)
        refreshed = self.get(alert_id)
        if refreshed is None:
            raise StoreUnavailable(f"Alert {alert_id} missing right after write")
        return refreshed

    def expire_due(self, now: datetime | None = None) -> int:
        """Mark every ACTIVE alert past its ``expires_at`` as EXPIRED."""
        stamp = to_db_ts(to_utc(now) if now is not None else utcnow())
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE price_alerts SET status = 'EXPIRED', updated_at = ? "
                "WHERE status = 'ACTIVE' AND expires_at IS NOT NULL "
                "AND expires_at <= ?",
                (stamp, stamp),
            )
        if cur.rowcount:
            logger.info("Expired %d price alerts", cur.rowcount)
        return cur.rowcount

    def record_delivery(
        self,
        alert_id: int,
        ok: bool,
        error: str = "",
        now: datetime | None = None,
    ) -> None:
        """Store the outcome of a notification attempt.

        Never touches ``status``: a failed delivery does not revert the
        trigger.
        """
        stamp = to_db_ts(to_utc(now) if now is not None else utcnow())
        with self._db.transaction() as conn:
            if ok:
                conn.execute(
                    "UPDATE price_alerts SET last_notified_at = ?, "
                    "notification_count = notification_count + 1, "
                    "last_delivery_error = NULL WHERE id = ?",
                    (stamp, alert_id),
                )
            else:
                conn.execute(
                    "UPDATE price_alerts SET last_delivery_error = ? "
                    "WHERE id = ?",
                    (error[:500], alert_id),
                )
