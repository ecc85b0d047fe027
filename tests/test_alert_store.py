# tests/test_alert_store.py

"""Tests for alert persistence and guarded status transitions."""

import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from price_intel.errors import (
    ConcurrencyConflict,
    StoreUnavailable,
    ValidationError,
)
from price_intel.models.alert import AlertRequest, AlertStatus
from price_intel.models.observation import EntityType
from price_intel.storage.alert_store import AlertStore, validate_request

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _request(**overrides: object) -> AlertRequest:
    values: dict[str, object] = {
        "user_id": "user-1",
        "entity_type": "HOTEL",
        "entity_id": "test-001",
        "entity_name": "Hotel Lisboa",
        "target_price": "1100",
        "current_price": "1150",
        "currency": "eur",
    }
    values.update(overrides)
    return AlertRequest(**values)  # type: ignore[arg-type]


class TestValidateRequest(unittest.TestCase):
    """Input validation for alert creation."""

    def test_normalises_values(self) -> None:
        values = validate_request(
            _request(notification_channels=frozenset({"push", "email"})),
            NOW,
        )
        self.assertEqual(values["currency"], "EUR")
        self.assertEqual(values["channels"], "EMAIL,PUSH")
        self.assertEqual(values["entity_type"], "HOTEL")

    def test_default_entity_name(self) -> None:
        values = validate_request(_request(entity_name=""), NOW)
        self.assertEqual(values["entity_name"], "HOTEL test-001")

    def test_negative_target_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_request(_request(target_price=-1), NOW)
        self.assertEqual(ctx.exception.field, "target_price")

    def test_drop_percentage_bounds(self) -> None:
        for bad in (0, 101):
            with self.assertRaises(ValidationError):
                validate_request(_request(price_drop_percentage=bad), NOW)
        values = validate_request(_request(price_drop_percentage=100), NOW)
        self.assertEqual(values["price_drop_percentage"], "100")

    def test_channels_required_and_known(self) -> None:
        with self.assertRaises(ValidationError):
            validate_request(_request(notification_channels=frozenset()), NOW)
        with self.assertRaises(ValidationError):
            validate_request(
                _request(notification_channels=frozenset({"FAX"})), NOW,
            )

    def test_past_expiry_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            validate_request(
                _request(expires_at=NOW - timedelta(minutes=1)), NOW,
            )

    def test_target_above_current_accepted(self) -> None:
        values = validate_request(_request(target_price="2000"), NOW)
        self.assertEqual(values["target_price"], "2000")


class TestAlertStore(unittest.TestCase):
    """Lifecycle operations against a temp database."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.tmp_dir) / "alerts.db"
        self.store = AlertStore(db_path=self.db_path)

    def tearDown(self) -> None:
        self.store.close()

    def _active_rows(self) -> int:
        conn = sqlite3.connect(str(self.db_path))
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM price_alerts WHERE status = 'ACTIVE'"
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    # ── Create / update ──────────────────────────────────

    def test_create_returns_active_alert(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.assertEqual(alert.status, AlertStatus.ACTIVE)
        self.assertEqual(alert.target_price, Decimal("1100"))
        self.assertEqual(alert.current_price_at_creation, Decimal("1150"))
        self.assertEqual(alert.notification_channels, frozenset({"EMAIL"}))
        self.assertEqual(alert.created_at, NOW)
        self.assertEqual(alert.notification_count, 0)

    def test_second_create_updates_first(self) -> None:
        """Same user and entity while ACTIVE updates the existing row."""
        first = self.store.create_or_update_alert(_request(), now=NOW)
        later = NOW + timedelta(hours=1)
        second = self.store.create_or_update_alert(
            _request(target_price="1000"), now=later,
        )
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.target_price, Decimal("1000"))
        self.assertEqual(second.updated_at, later)
        self.assertEqual(second.created_at, NOW)
        self.assertEqual(self._active_rows(), 1)

    def test_other_user_gets_own_alert(self) -> None:
        a = self.store.create_or_update_alert(_request(), now=NOW)
        b = self.store.create_or_update_alert(
            _request(user_id="user-2"), now=NOW,
        )
        self.assertNotEqual(a.id, b.id)
        self.assertEqual(self._active_rows(), 2)

    def test_new_alert_after_trigger(self) -> None:
        """Once TRIGGERED, a fresh request creates a new ACTIVE row."""
        first = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            first.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
            triggered_price=Decimal("1080"),
        )
        second = self.store.create_or_update_alert(_request(), now=NOW)
        self.assertNotEqual(first.id, second.id)
        self.assertEqual(self._active_rows(), 1)

    def test_partial_index_blocks_second_active_row(self) -> None:
        self.store.create_or_update_alert(_request(), now=NOW)
        conn = sqlite3.connect(str(self.db_path))
        try:
            with self.assertRaises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO price_alerts (user_id, entity_type, "
                    "entity_id, entity_name, target_price, current_price, "
                    "currency, status, channels, created_at, updated_at) "
                    "VALUES ('user-1', 'HOTEL', 'test-001', 'x', '1', '1', "
                    "'EUR', 'ACTIVE', 'EMAIL', 'a', 'a')"
                )
        finally:
            conn.close()

    # ── Transitions ──────────────────────────────────────

    def test_transition_sets_trigger_fields(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
            triggered_price=Decimal("1080"),
        )
        stored = self.store.get(alert.id)
        assert stored is not None
        self.assertEqual(stored.status, AlertStatus.TRIGGERED)
        self.assertEqual(stored.triggered_price, Decimal("1080"))
        self.assertEqual(stored.triggered_at, NOW)

    def test_transition_conflict(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
        )
        with self.assertRaises(ConcurrencyConflict) as ctx:
            self.store.transition(
                alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
            )
        self.assertEqual(ctx.exception.alert_id, alert.id)

    def test_cancel(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.assertTrue(self.store.cancel(alert.id, NOW))
        self.assertFalse(self.store.cancel(alert.id, NOW))
        stored = self.store.get(alert.id)
        assert stored is not None
        self.assertEqual(stored.status, AlertStatus.CANCELLED)

    def test_unreadable_write_raises_store_error(self) -> None:
        with patch.object(self.store, "get", return_value=None):
            with self.assertRaises(StoreUnavailable):
                self.store.create_or_update_alert(_request(), now=NOW)

    def test_reactivate_triggered_alert(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
            triggered_price=Decimal("1080"),
        )
        revived = self.store.reactivate(alert.id, current_price="1080", now=NOW)
        self.assertEqual(revived.status, AlertStatus.ACTIVE)
        self.assertEqual(revived.current_price_at_creation, Decimal("1080"))
        self.assertIsNone(revived.triggered_price)

    def test_reactivate_blocked_by_other_active(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
        )
        self.store.create_or_update_alert(_request(), now=NOW)
        with self.assertRaises(ValidationError):
            self.store.reactivate(alert.id, now=NOW)

    def test_reactivate_active_rejected(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        with self.assertRaises(ValidationError):
            self.store.reactivate(alert.id, now=NOW)

    def test_reactivate_expired_clears_past_expiry(self) -> None:
        alert = self.store.create_or_update_alert(
            _request(expires_at=NOW + timedelta(days=1)), now=NOW,
        )
        later = NOW + timedelta(days=2)
        self.assertEqual(self.store.expire_due(later), 1)
        revived = self.store.reactivate(alert.id, now=later)
        self.assertEqual(revived.status, AlertStatus.ACTIVE)
        self.assertIsNone(revived.expires_at)

    # ── Queries & sweeps ─────────────────────────────────

    def test_expire_due_only_touches_past_alerts(self) -> None:
        self.store.create_or_update_alert(
            _request(entity_id="soon", expires_at=NOW + timedelta(hours=1)),
            now=NOW,
        )
        self.store.create_or_update_alert(
            _request(entity_id="later", expires_at=NOW + timedelta(days=5)),
            now=NOW,
        )
        self.store.create_or_update_alert(
            _request(entity_id="never"), now=NOW,
        )
        self.assertEqual(self.store.expire_due(NOW + timedelta(days=1)), 1)
        expired = self.store.list_for_user("user-1", AlertStatus.EXPIRED)
        self.assertEqual([a.entity_id for a in expired], ["soon"])

    def test_due_entities_are_distinct_and_unexpired(self) -> None:
        self.store.create_or_update_alert(_request(), now=NOW)
        self.store.create_or_update_alert(_request(user_id="u2"), now=NOW)
        self.store.create_or_update_alert(
            _request(entity_type="FLIGHT", entity_id="LIS-JFK"), now=NOW,
        )
        self.store.create_or_update_alert(
            _request(entity_id="gone", expires_at=NOW + timedelta(hours=1)),
            now=NOW,
        )
        due = self.store.due_entities(NOW + timedelta(hours=2))
        self.assertEqual(due, [
            (EntityType.FLIGHT, "LIS-JFK"),
            (EntityType.HOTEL, "test-001"),
        ])

    def test_list_for_user_newest_first(self) -> None:
        self.store.create_or_update_alert(_request(entity_id="a"), now=NOW)
        self.store.create_or_update_alert(
            _request(entity_id="b"), now=NOW + timedelta(minutes=5),
        )
        self.store.create_or_update_alert(
            _request(user_id="someone-else"), now=NOW,
        )
        alerts = self.store.list_for_user("user-1")
        self.assertEqual([a.entity_id for a in alerts], ["b", "a"])

    # ── Delivery bookkeeping ─────────────────────────────

    def test_record_delivery_success_and_failure(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.store.transition(
            alert.id, AlertStatus.ACTIVE, AlertStatus.TRIGGERED, NOW,
        )
        self.store.record_delivery(alert.id, False, "HTTP 502", now=NOW)
        failed = self.store.get(alert.id)
        assert failed is not None
        self.assertEqual(failed.last_delivery_error, "HTTP 502")
        self.assertEqual(failed.status, AlertStatus.TRIGGERED)
        self.assertEqual(failed.notification_count, 0)

        self.store.record_delivery(alert.id, True, now=NOW)
        sent = self.store.get(alert.id)
        assert sent is not None
        self.assertIsNone(sent.last_delivery_error)
        self.assertEqual(sent.notification_count, 1)
        self.assertEqual(sent.last_notified_at, NOW)


if __name__ == "__main__":
    unittest.main()
