# price_intel/storage/database.py

"""Shared SQLite connection handling for the engine's stores."""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path

from price_intel.config.settings import Settings
from price_intel.errors import StoreUnavailable

logger = logging.getLogger("price_intel.database")

# Fixed-width UTC text timestamps sort lexicographically in time order
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_ts(moment: datetime) -> str:
    """Serialise a timestamp for storage (UTC, fixed width)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_ts(raw: str) -> datetime:
    """Parse a stored timestamp back to an aware UTC datetime."""
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Current aware UTC time."""
    return datetime.now(timezone.utc)


class Database:
    """One SQLite connection shared by worker threads behind a lock.

    Status transitions rely on conditional UPDATE statements rather
    than the lock, so separate processes on the same file stay correct.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        path = db_path or Settings.DB_PATH
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(path), check_same_thread=False, timeout=10.0,
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            raise StoreUnavailable(
                f"Cannot open database {path}: {exc}"
            ) from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.path = path
        logger.debug("Database opened at %s", path)

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def executescript(self, script: str) -> None:
        """Run a multi-statement DDL script."""
        with self.transaction() as conn:
            conn.executescript(script)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialise access and commit (or roll back) as one unit.

        Driver errors other than integrity violations surface as
        :class:`StoreUnavailable`.
        """
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self._conn.rollback()
                raise StoreUnavailable(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise
