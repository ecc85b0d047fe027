# tests/test_observation_store.py

"""Tests for the SQLite observation store."""

import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from price_intel.errors import StoreUnavailable, ValidationError
from price_intel.models.observation import (
    EntityType,
    PriceObservation,
    StayContext,
)
from price_intel.services.statistics_engine import StatisticsEngine
from price_intel.storage.database import Database, from_db_ts, to_db_ts
from price_intel.storage.observation_store import ObservationStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _obs(
    price: str | int,
    days_ago: float = 0,
    entity_id: str = "test-001",
    source: str = "feed",
) -> PriceObservation:
    return PriceObservation(
        entity_type=EntityType.HOTEL,
        entity_id=entity_id,
        price=Decimal(str(price)),
        currency="EUR",
        observed_at=NOW - timedelta(days=days_ago),
        source=source,
    )


class TestTimestamps(unittest.TestCase):
    """Stored timestamp format."""

    def test_round_trip_preserves_microseconds(self) -> None:
        moment = datetime(2026, 1, 5, 3, 4, 5, 123456, tzinfo=timezone.utc)
        self.assertEqual(from_db_ts(to_db_ts(moment)), moment)

    def test_text_order_is_time_order(self) -> None:
        early = to_db_ts(datetime(2026, 1, 1, 9, tzinfo=timezone.utc))
        late = to_db_ts(datetime(2026, 1, 1, 10, tzinfo=timezone.utc))
        self.assertLess(early, late)


class TestObservationStore(unittest.TestCase):
    """Recording, querying and retention."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.tmp_dir) / "test.db"
        self.store = ObservationStore(db_path=self.db_path)

    def tearDown(self) -> None:
        self.store.close()

    # ── Recording ────────────────────────────────────────

    def test_record_and_read_back(self) -> None:
        ctx = StayContext(guests=2)
        obs = _obs(1200)
        obs.context = ctx
        self.assertTrue(self.store.record(obs))
        rows = list(self.store.query(EntityType.HOTEL, "test-001"))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].price, Decimal("1200"))
        self.assertEqual(rows[0].observed_at, NOW)
        self.assertEqual(rows[0].context, ctx)

    def test_duplicate_natural_key_skipped(self) -> None:
        """Same entity, timestamp and source is stored once."""
        self.assertTrue(self.store.record(_obs(1200)))
        self.assertFalse(self.store.record(_obs(1300)))
        self.assertEqual(self.store.count(EntityType.HOTEL, "test-001"), 1)
        snapshot = StatisticsEngine(self.store).summarize(
            "HOTEL", "test-001", now=NOW,
        )
        self.assertEqual(snapshot.count, 1)
        latest = self.store.latest(EntityType.HOTEL, "test-001")
        assert latest is not None
        self.assertEqual(latest.price, Decimal("1200"))

    def test_same_time_other_source_kept(self) -> None:
        self.store.record(_obs(1200, source="a"))
        self.store.record(_obs(1210, source="b"))
        self.assertEqual(self.store.count("hotel", "test-001"), 2)

    def test_invalid_observation_raises(self) -> None:
        bad = _obs(1200)
        bad.currency = "EURO"
        with self.assertRaises(ValidationError):
            self.store.record(bad)
        self.assertEqual(self.store.total(), 0)

    def test_backfilled_rows_read_in_time_order(self) -> None:
        """Out-of-order writes come back oldest first."""
        for days_ago, price in ((1, 110), (3, 130), (2, 120)):
            self.store.record(_obs(price, days_ago))
        prices = [
            o.price for o in self.store.query(EntityType.HOTEL, "test-001")
        ]
        self.assertEqual(prices, [Decimal(130), Decimal(120), Decimal(110)])

    def test_batch_counts(self) -> None:
        self.store.record(_obs(100, 5))
        bad = _obs(50, 1)
        bad.entity_id = ""
        result = self.store.record_batch([
            _obs(100, 5), _obs(101, 4), bad, _obs(102, 3),
        ])
        self.assertEqual(result.inserted, 2)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(len(result.rejected), 1)
        self.assertEqual(result.rejected[0].index, 2)
        self.assertEqual(result.total, 4)

    # ── Querying ─────────────────────────────────────────

    def test_window_excludes_older_rows(self) -> None:
        self.store.record(_obs(100, 40))
        self.store.record(_obs(110, 10))
        self.store.record(_obs(120, 0))
        rows = list(self.store.window("HOTEL", "test-001", 30, now=NOW))
        self.assertEqual([o.price for o in rows], [Decimal(110), Decimal(120)])

    def test_past_reference_caps_window(self) -> None:
        for days_ago in (10, 5, 1):
            self.store.record(_obs(100 + days_ago, days_ago))
        past = NOW - timedelta(days=3)
        rows = list(self.store.window("HOTEL", "test-001", 30, now=past))
        self.assertEqual([o.price for o in rows], [Decimal(110), Decimal(105)])

    def test_query_until_is_inclusive(self) -> None:
        self.store.record(_obs(100, 2))
        self.store.record(_obs(90, 1))
        rows = list(self.store.query(
            "HOTEL", "test-001", until=NOW - timedelta(days=1),
        ))
        self.assertEqual(len(rows), 2)

    def test_query_is_lazy_and_restartable(self) -> None:
        """A second iteration sees rows recorded after the first."""
        query = self.store.query(EntityType.HOTEL, "test-001")
        self.store.record(_obs(100, 2))
        self.assertEqual(len(list(query)), 1)
        self.store.record(_obs(90, 1))
        self.assertEqual(len(list(query)), 2)

    def test_entities_are_isolated(self) -> None:
        self.store.record(_obs(100, entity_id="a"))
        self.store.record(_obs(200, entity_id="b"))
        self.assertEqual(len(list(self.store.query("HOTEL", "a"))), 1)
        self.assertEqual(self.store.count("FLIGHT", "a"), 0)

    def test_latest_returns_none_when_empty(self) -> None:
        self.assertIsNone(self.store.latest(EntityType.TOUR, "nothing"))

    # ── Retention ────────────────────────────────────────

    def test_purge_older_than_keeps_window(self) -> None:
        """Nothing older than the cutoff survives; newer rows are untouched."""
        for days_ago in (200, 120, 91, 89, 30, 0):
            self.store.record(_obs(100 + days_ago, days_ago))
        purged = self.store.purge_older_than(90, now=NOW)
        self.assertEqual(purged, 3)
        remaining = list(self.store.query(EntityType.HOTEL, "test-001"))
        self.assertEqual(len(remaining), 3)
        cutoff = NOW - timedelta(days=90)
        self.assertTrue(all(o.observed_at >= cutoff for o in remaining))
        self.assertEqual(
            [o.price for o in remaining],
            [Decimal(189), Decimal(130), Decimal(100)],
        )

    def test_purge_negative_days_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.purge_older_than(-1)

    def test_purge_entity(self) -> None:
        self.store.record(_obs(100, entity_id="a"))
        self.store.record(_obs(100, entity_id="b"))
        self.assertEqual(self.store.purge_entity("HOTEL", "a"), 1)
        self.assertEqual(self.store.total(), 1)

    # ── File import ──────────────────────────────────────

    def _write_json(self, payload: object) -> Path:
        path = Path(self.tmp_dir) / "observations.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    def test_import_file_reports_positions(self) -> None:
        path = self._write_json([
            {
                "entity_type": "FLIGHT",
                "entity_id": "LIS-JFK",
                "price": 420,
                "currency": "EUR",
                "observed_at": "2026-03-01T08:00:00+00:00",
            },
            "not a record",
            {
                "entity_type": "FLIGHT",
                "entity_id": "LIS-JFK",
                "price": -3,
                "currency": "EUR",
                "observed_at": "2026-03-01T09:00:00+00:00",
            },
            {
                "entity_type": "FLIGHT",
                "entity_id": "LIS-JFK",
                "price": 415,
                "currency": "EUR",
                "observed_at": "2026-03-01T10:00:00+00:00",
                "context": {"origin": "LIS", "destination": "JFK"},
            },
        ])
        result = self.store.import_file(path)
        self.assertEqual(result.inserted, 2)
        self.assertEqual([r.index for r in result.rejected], [1, 2])

    def test_import_non_array_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.import_file(self._write_json({"price": 1}))

    def test_import_missing_file_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.import_file(Path(self.tmp_dir) / "missing.json")


class TestSharedDatabase(unittest.TestCase):
    """Stores sharing one Database handle."""

    def test_memory_database(self) -> None:
        db = Database(Path(":memory:"))
        store = ObservationStore(db=db)
        store.record(_obs(1))
        self.assertIs(store.db, db)
        self.assertEqual(store.total(), 1)
        db.close()

    def test_closed_database_is_unavailable(self) -> None:
        db = Database(Path(":memory:"))
        store = ObservationStore(db=db)
        db.close()
        with self.assertRaises(StoreUnavailable):
            store.total()


if __name__ == "__main__":
    unittest.main()
