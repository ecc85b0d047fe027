# tests/test_run_lease.py

"""Tests for the scheduler lease and run history."""

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from price_intel.models.observation import EntityType
from price_intel.services.scheduler import (
    EntityFailure,
    RunReport,
    RunStage,
    RunStatus,
)
from price_intel.storage.run_lease import RunLease

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestRunLease(unittest.TestCase):
    """Acquire/release semantics."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.tmp_dir) / "lease.db"
        self.lease = RunLease("cycle", db_path=self.db_path)

    def tearDown(self) -> None:
        self.lease._db.close()

    def test_second_acquire_skipped_while_held(self) -> None:
        token = self.lease.acquire(60, now=NOW)
        self.assertIsNotNone(token)
        self.assertIsNone(self.lease.acquire(60, now=NOW + timedelta(seconds=30)))

    def test_other_connection_sees_held_lease(self) -> None:
        self.assertIsNotNone(self.lease.acquire(60, now=NOW))
        other = RunLease("cycle", db_path=self.db_path)
        try:
            self.assertIsNone(other.acquire(60, now=NOW))
        finally:
            other._db.close()

    def test_expired_lease_reclaimed(self) -> None:
        first = self.lease.acquire(60, now=NOW)
        second = self.lease.acquire(60, now=NOW + timedelta(seconds=61))
        self.assertIsNotNone(second)
        self.assertNotEqual(first, second)
        assert first is not None
        self.assertFalse(self.lease.release(first, "OK", now=NOW))

    def test_release_stamps_last_run(self) -> None:
        token = self.lease.acquire(60, now=NOW)
        assert token is not None
        self.assertTrue(self.lease.release(token, "DEGRADED", now=NOW))
        state = self.lease.state()
        self.assertIsNone(state.owner)
        self.assertIsNone(state.expires_at)
        self.assertEqual(state.last_run_at, NOW)
        self.assertEqual(state.last_status, "DEGRADED")
        self.assertIsNotNone(self.lease.acquire(60, now=NOW))

    def test_release_with_wrong_token(self) -> None:
        self.lease.acquire(60, now=NOW)
        self.assertFalse(self.lease.release("not-mine", "OK", now=NOW))
        self.assertIsNotNone(self.lease.state().owner)

    def test_leases_are_named(self) -> None:
        other = RunLease("retention", db=self.lease._db)
        self.assertIsNotNone(self.lease.acquire(60, now=NOW))
        self.assertIsNotNone(other.acquire(60, now=NOW))


class TestRunHistory(unittest.TestCase):
    """Persisted cycle reports."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp()
        self.lease = RunLease("cycle", db_path=Path(self.tmp_dir) / "runs.db")

    def tearDown(self) -> None:
        self.lease._db.close()

    def test_record_and_read_back(self) -> None:
        report = RunReport(
            run_id="run-1",
            started_at=NOW,
            status=RunStatus.DEGRADED,
            finished_at=NOW + timedelta(seconds=5),
            entities_processed=3,
            alerts_triggered=1,
            notifications_failed=1,
            deferred=[(EntityType.TOUR, "t9")],
            failures=[EntityFailure(
                entity_type=EntityType.HOTEL,
                entity_id="h1",
                stage=RunStage.COLLECTING,
                error_kind="CollectorError",
                message="feed down",
            )],
        )
        self.lease.record_run(report)
        runs = self.lease.recent_runs()
        self.assertEqual(len(runs), 1)
        run = runs[0]
        self.assertEqual(run["status"], "DEGRADED")
        self.assertEqual(run["entities_processed"], 3)
        self.assertEqual(run["notifications_failed"], 1)
        self.assertEqual(run["deferred"], 1)
        self.assertEqual(run["failures"][0]["stage"], "COLLECTING")
        self.assertEqual(run["failures"][0]["entity_id"], "h1")

    def test_newest_first(self) -> None:
        for i in range(3):
            self.lease.record_run(RunReport(
                run_id=f"run-{i}", started_at=NOW + timedelta(minutes=i),
            ))
        runs = self.lease.recent_runs(limit=2)
        self.assertEqual([r["run_id"] for r in runs], ["run-2", "run-1"])


if __name__ == "__main__":
    unittest.main()
