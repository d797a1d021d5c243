from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from . import settings
from .errors import StoreUnavailable

logger = logging.getLogger("healthsync.db")

# Health Auto Export writes "2024-01-15 08:30:00 -0800"; everything else is ISO 8601.
_EXPORT_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M %z")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS samples (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      metric_kind TEXT NOT NULL,
      source TEXT NOT NULL,
      timestamp TEXT NOT NULL,
      raw_value REAL NOT NULL,
      unit TEXT,
      normalized_value REAL,
      metadata_json TEXT,
      created_at TEXT NOT NULL,
      UNIQUE(metric_kind, source, timestamp)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS import_batches (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      import_timestamp TEXT NOT NULL,
      source TEXT NOT NULL,
      samples_received INTEGER NOT NULL DEFAULT 0,
      samples_stored INTEGER NOT NULL DEFAULT 0,
      workouts_received INTEGER NOT NULL DEFAULT 0,
      workouts_stored INTEGER NOT NULL DEFAULT 0,
      payload_json TEXT,
      status TEXT NOT NULL DEFAULT 'success',
      error_message TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_samples_kind_timestamp ON samples(metric_kind, timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_samples_timestamp ON samples(timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_import_batches_timestamp ON import_batches(import_timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_import_batches_status ON import_batches(status);",
)


class Store:
    """Handle on the sqlite file holding samples and the import audit trail.

    Passed explicitly into the writer and the aggregation engine so each can be
    pointed at its own database in tests.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path or settings.DB_PATH

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as exc:
            logger.error("Failed to open database %s: %s", self.path, exc)
            raise StoreUnavailable(f"Cannot open database {self.path}: {exc}") from exc
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.DatabaseError as exc:
            conn.rollback()
            logger.error("Database error on %s: %s", self.path, exc)
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()

    def init(self) -> None:
        data_dir = os.path.dirname(os.path.abspath(self.path))
        if not os.path.isdir(data_dir):
            os.makedirs(data_dir, exist_ok=True)
            logger.info("Created data directory: %s", data_dir)
        with self.connect() as conn:
            for ddl in SCHEMA:
                conn.execute(ddl)
        logger.info("Health database ready: %s", self.path)

    def is_healthy(self) -> bool:
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except StoreUnavailable:
            return False
        return True


def parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    s = raw.strip()
    for fmt in _EXPORT_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.astimezone() if settings.LOCAL_TZ is None else dt.replace(tzinfo=settings.LOCAL_TZ)
    return dt


def canonical_timestamp(raw: Any) -> str | None:
    """Render a timestamp so that string order equals time order.

    Output is ``YYYY-MM-DDTHH:MM:SS±HH:MM`` in the configured local zone (or the
    host zone, with the DST offset in force at that instant), so the first
    10/7/4 characters are the local day/month/year.
    """
    dt = parse_timestamp(raw)
    if dt is None:
        return None
    return dt.astimezone(settings.LOCAL_TZ).isoformat(timespec="seconds")


def dumps_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def loads_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Unparseable metadata_json: %r", raw[:80])
        return {}
    return data if isinstance(data, dict) else {}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_local() -> datetime:
    return datetime.now(settings.LOCAL_TZ)
