import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import config
from errors import SettingsConflictError
from ess.models import EnergyStats
from optimizer.actions import Action
from pricing.base import Price
from timeutil import from_iso, to_iso

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    site_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,      -- settings schema version
    revision INTEGER NOT NULL,     -- bumped on every write
    data TEXT NOT NULL,            -- JSON
    updated_at TEXT                -- UTC ISO 8601
);

CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,       -- UTC ISO 8601
    reason TEXT NOT NULL,
    data TEXT NOT NULL             -- JSON
);

CREATE INDEX IF NOT EXISTS idx_actions_site_ts ON actions(site_id, timestamp);

CREATE TABLE IF NOT EXISTS energy_stats (
    site_id TEXT NOT NULL,
    ts_hour_start TEXT NOT NULL,   -- UTC ISO 8601
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (site_id, ts_hour_start)
);

CREATE TABLE IF NOT EXISTS prices (
    provider TEXT NOT NULL,
    ts_start TEXT NOT NULL,        -- UTC ISO 8601
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (provider, ts_start)
);
"""


class Database:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or config.system.db_path
        self._persistent_conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        # For :memory: databases, keep a single connection alive
        if self.db_path == ":memory:":
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
            # Migrations for existing databases
            self._migrate(conn)
            logger.info("Database initialized at %s", self.db_path)

    def _migrate(self, conn):
        """Add columns missing from databases created by older releases."""
        cols = {r[1] for r in conn.execute("PRAGMA table_info(settings)").fetchall()}
        if "updated_at" not in cols:
            conn.execute("ALTER TABLE settings ADD COLUMN updated_at TEXT")
            logger.info("Migrated settings: added updated_at column")

    @contextmanager
    def _connect(self):
        if self._persistent_conn:
            # In-memory DB: reuse the persistent connection, one user at a time
            with self._lock:
                try:
                    yield self._persistent_conn
                    self._persistent_conn.commit()
                except Exception:
                    self._persistent_conn.rollback()
                    raise
        else:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # -- Settings operations --

    def get_settings(self, site_id: str) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version, revision, data FROM settings WHERE site_id = ?",
                (site_id,),
            ).fetchone()
            if row is None:
                return None
            return {
                "version": row["version"],
                "revision": row["revision"],
                "data": json.loads(row["data"]),
            }

    def put_settings(self, site_id: str, data: dict, version: int, expected_revision: int) -> int:
        """Write settings if the stored revision still matches.

        expected_revision 0 creates the site. Returns the new revision.
        """
        now = datetime.now(timezone.utc).isoformat()
        payload = json.dumps(data)
        with self._connect() as conn:
            if expected_revision == 0:
                try:
                    conn.execute(
                        """INSERT INTO settings (site_id, version, revision, data, updated_at)
                           VALUES (?, ?, 1, ?, ?)""",
                        (site_id, version, payload, now),
                    )
                except sqlite3.IntegrityError:
                    raise SettingsConflictError(f"Settings for {site_id} already exist") from None
                return 1
            result = conn.execute(
                """UPDATE settings
                   SET version = ?, revision = revision + 1, data = ?, updated_at = ?
                   WHERE site_id = ? AND revision = ?""",
                (version, payload, now, site_id, expected_revision),
            )
            if result.rowcount == 0:
                raise SettingsConflictError(
                    f"Settings for {site_id} changed since revision {expected_revision}"
                )
            return expected_revision + 1

    def list_sites(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT site_id FROM settings ORDER BY site_id").fetchall()
            return [r["site_id"] for r in rows]

    # -- Action operations --

    def insert_action(self, site_id: str, action: Action):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO actions (site_id, timestamp, reason, data)
                   VALUES (?, ?, ?, ?)""",
                (site_id, to_iso(action.timestamp), action.reason.value,
                 json.dumps(action.to_dict())),
            )

    def get_actions(self, site_id: str, start: datetime, end: datetime) -> list[Action]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT data FROM actions
                   WHERE site_id = ? AND timestamp >= ? AND timestamp < ?
                   ORDER BY timestamp, id""",
                (site_id, to_iso(start), to_iso(end)),
            ).fetchall()
            return [Action.from_dict(json.loads(r["data"])) for r in rows]

    # -- Energy history operations --

    def upsert_energy_stats(self, site_id: str, stats: EnergyStats, version: int):
        """Insert or replace one hour. Older versions never overwrite newer ones."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO energy_stats (site_id, ts_hour_start, version, data)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(site_id, ts_hour_start) DO UPDATE
                   SET version = excluded.version, data = excluded.data
                   WHERE excluded.version >= energy_stats.version""",
                (site_id, to_iso(stats.ts_hour_start), version, json.dumps(stats.to_dict())),
            )

    def get_energy_history(self, site_id: str, start: datetime, end: datetime) -> list[EnergyStats]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT data FROM energy_stats
                   WHERE site_id = ? AND ts_hour_start >= ? AND ts_hour_start < ?
                   ORDER BY ts_hour_start""",
                (site_id, to_iso(start), to_iso(end)),
            ).fetchall()
            return [EnergyStats.from_dict(json.loads(r["data"])) for r in rows]

    def get_latest_energy_time(self, site_id: str) -> tuple[datetime | None, int]:
        """Returns (latest stored hour start, its version)."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT ts_hour_start, version FROM energy_stats
                   WHERE site_id = ? ORDER BY ts_hour_start DESC LIMIT 1""",
                (site_id,),
            ).fetchone()
            if row is None:
                return None, 0
            return from_iso(row["ts_hour_start"]), row["version"]

    # -- Price history operations --

    def upsert_price(self, price: Price, version: int):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO prices (provider, ts_start, version, data)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(provider, ts_start) DO UPDATE
                   SET version = excluded.version, data = excluded.data
                   WHERE excluded.version >= prices.version""",
                (price.provider, to_iso(price.ts_start), version, json.dumps(price.to_dict())),
            )

    def get_price_history(self, provider: str, start: datetime, end: datetime) -> list[Price]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT data FROM prices
                   WHERE provider = ? AND ts_start >= ? AND ts_start < ?
                   ORDER BY ts_start""",
                (provider, to_iso(start), to_iso(end)),
            ).fetchall()
            return [Price.from_dict(json.loads(r["data"])) for r in rows]

    def get_latest_price_time(self, provider: str) -> tuple[datetime | None, int]:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT ts_start, version FROM prices
                   WHERE provider = ? ORDER BY ts_start DESC LIMIT 1""",
                (provider,),
            ).fetchone()
            if row is None:
                return None, 0
            return from_iso(row["ts_start"]), row["version"]

    # -- Maintenance --

    def prune_old_records(self, days: int = 365):
        """Delete energy and price history older than `days`.

        Actions are kept; they are the audit trail.
        """
        cutoff = to_iso(datetime.now(timezone.utc) - timedelta(days=days))
        with self._connect() as conn:
            for table, col in [
                ("energy_stats", "ts_hour_start"),
                ("prices", "ts_start"),
            ]:
                result = conn.execute(
                    f"DELETE FROM {table} WHERE {col} < ?",
                    (cutoff,),
                )
                if result.rowcount > 0:
                    logger.info("Pruned %d rows from %s (older than %d days)",
                                result.rowcount, table, days)
