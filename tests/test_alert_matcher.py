# tests/test_alert_matcher.py

"""Tests for trigger evaluation and once-only claiming."""

import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from price_intel.models.alert import (
    AlertDecision,
    AlertRequest,
    AlertStatus,
    TriggerReason,
)
from price_intel.models.observation import EntityType, PriceObservation
from price_intel.services.alert_matcher import AlertMatcher, trigger_reason
from price_intel.storage.alert_store import AlertStore
from price_intel.storage.observation_store import ObservationStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _request(**overrides: object) -> AlertRequest:
    values: dict[str, object] = {
        "user_id": "user-1",
        "entity_type": "HOTEL",
        "entity_id": "test-001",
        "entity_name": "Hotel Lisboa",
        "target_price": "1100",
        "current_price": "1150",
        "currency": "EUR",
    }
    values.update(overrides)
    return AlertRequest(**values)  # type: ignore[arg-type]


class TestTriggerReason(unittest.TestCase):
    """Condition evaluation without storage."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.store = AlertStore(db_path=Path(self.tmp_dir) / "a.db")

    def tearDown(self) -> None:
        self.store.close()

    def test_target_met_at_equality(self) -> None:
        alert = self.store.create_or_update_alert(_request(), now=NOW)
        self.assertEqual(
            trigger_reason(alert, Decimal("1100")), TriggerReason.TARGET_PRICE,
        )
        self.assertIsNone(trigger_reason(alert, Decimal("1100.01")))

    def test_percentage_drop(self) -> None:
        alert = self.store.create_or_update_alert(
            _request(
                target_price="500", current_price="1000",
                price_drop_percentage="10",
            ),
            now=NOW,
        )
        self.assertEqual(
            trigger_reason(alert, Decimal("900")), TriggerReason.PRICE_DROP,
        )
        self.assertIsNone(trigger_reason(alert, Decimal("901")))

    def test_target_wins_when_both_hold(self) -> None:
        alert = self.store.create_or_update_alert(
            _request(
                target_price="800", current_price="1000",
                price_drop_percentage="5",
            ),
            now=NOW,
        )
        self.assertEqual(
            trigger_reason(alert, Decimal("700")), TriggerReason.TARGET_PRICE,
        )

    def test_zero_reference_skips_drop_rule(self) -> None:
        alert = self.store.create_or_update_alert(
            _request(
                target_price="0", current_price="0",
                price_drop_percentage="10",
            ),
            now=NOW,
        )
        self.assertIsNone(trigger_reason(alert, Decimal("5")))


class TestAlertMatcher(unittest.TestCase):
    """End-to-end evaluation against a temp database."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.tmp_dir) / "matcher.db"
        self.observations = ObservationStore(db_path=self.db_path)
        self.alerts = AlertStore(db=self.observations.db)
        self.matcher = AlertMatcher(self.alerts)

    def tearDown(self) -> None:
        self.alerts.close()

    def _observe(self, price: str, minutes: int) -> Decimal:
        self.observations.record(PriceObservation(
            entity_type=EntityType.HOTEL,
            entity_id="test-001",
            price=Decimal(price),
            currency="EUR",
            observed_at=NOW + timedelta(minutes=minutes),
        ))
        latest = self.observations.latest("HOTEL", "test-001")
        assert latest is not None
        return latest.price

    def test_trigger_once_on_price_below_target(self) -> None:
        alert = self.alerts.create_or_update_alert(_request(), now=NOW)

        latest = self._observe("1150", 0)
        self.assertEqual(
            self.matcher.evaluate("HOTEL", "test-001", latest, now=NOW), [],
        )

        latest = self._observe("1080", 10)
        decisions = self.matcher.evaluate("HOTEL", "test-001", latest, now=NOW)
        self.assertEqual(len(decisions), 1)
        decision = decisions[0]
        self.assertEqual(decision.alert_id, alert.id)
        self.assertEqual(decision.triggered_price, Decimal("1080"))
        self.assertEqual(decision.previous_price, Decimal("1150"))
        self.assertEqual(decision.reason, TriggerReason.TARGET_PRICE)

        stored = self.alerts.get(alert.id)
        assert stored is not None
        self.assertEqual(stored.status, AlertStatus.TRIGGERED)
        self.assertEqual(stored.triggered_price, Decimal("1080"))

        self.assertEqual(
            self.matcher.evaluate("HOTEL", "test-001", latest, now=NOW), [],
        )

    def test_only_matching_entity_alerts_considered(self) -> None:
        self.alerts.create_or_update_alert(_request(entity_id="other"), now=NOW)
        self.assertEqual(
            self.matcher.evaluate("HOTEL", "test-001", "1", now=NOW), [],
        )

    def test_multiple_users_each_decided(self) -> None:
        self.alerts.create_or_update_alert(_request(), now=NOW)
        self.alerts.create_or_update_alert(
            _request(user_id="user-2", target_price="1000"), now=NOW,
        )
        decisions = self.matcher.evaluate("HOTEL", "test-001", "1050", now=NOW)
        self.assertEqual([d.user_id for d in decisions], ["user-1"])

    def test_expired_alert_flagged_not_triggered(self) -> None:
        alert = self.alerts.create_or_update_alert(
            _request(expires_at=NOW + timedelta(hours=1)), now=NOW,
        )
        result = self.matcher.evaluate_detailed(
            "HOTEL", "test-001", "900", now=NOW + timedelta(hours=2),
        )
        self.assertEqual(result.decisions, [])
        self.assertEqual(result.expired_ids, [alert.id])
        stored = self.alerts.get(alert.id)
        assert stored is not None
        self.assertEqual(stored.status, AlertStatus.ACTIVE)

    def test_concurrent_passes_emit_one_decision(self) -> None:
        """Racing matcher passes on separate connections claim once."""
        alert = self.alerts.create_or_update_alert(_request(), now=NOW)
        decisions: list[AlertDecision] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker() -> None:
            store = AlertStore(db_path=self.db_path)
            try:
                barrier.wait()
                found = AlertMatcher(store).evaluate(
                    "HOTEL", "test-001", "1000", now=NOW,
                )
            finally:
                store.close()
            with lock:
                decisions.extend(found)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(decisions), 1)
        stored = self.alerts.get(alert.id)
        assert stored is not None
        self.assertEqual(stored.status, AlertStatus.TRIGGERED)

    def test_repeated_sequential_passes(self) -> None:
        self.alerts.create_or_update_alert(_request(), now=NOW)
        total = sum(
            len(self.matcher.evaluate("HOTEL", "test-001", "1000", now=NOW))
            for _ in range(5)
        )
        self.assertEqual(total, 1)

    def test_conflicts_counted(self) -> None:
        alert = self.alerts.create_or_update_alert(_request(), now=NOW)
        stale = self.alerts.active_for_entity("HOTEL", "test-001")
        self.alerts.cancel(alert.id, NOW)
        # Simulate a pass that read the alert before the cancel landed
        self.alerts.active_for_entity = lambda *_: stale  # type: ignore[method-assign]
        result = self.matcher.evaluate_detailed(
            "HOTEL", "test-001", "1000", now=NOW,
        )
        self.assertEqual(result.decisions, [])
        self.assertEqual(result.conflicts, 1)


if __name__ == "__main__":
    unittest.main()
