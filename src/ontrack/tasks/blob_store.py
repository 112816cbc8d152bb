# src/ontrack/tasks/blob_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from pathlib import Path

from .errors import StorageError

logger = logging.getLogger(__name__)


class SqliteBlobStore:
    """
    SQLite-backed named blob storage (key -> JSON text).

    The schema is a single table and migration-safe:
    - create table if missing
    - add missing columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection, so calls may run in worker threads
    """

    def __init__(self, db_path: str | Path = "ontrack.sqlite3") -> None:
        self._db_path = Path(db_path)
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._ensure_schema()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"cannot initialise blob store at {self._db_path}: {e}") from e
        logger.info("SqliteBlobStore ready db=%s", self._db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL DEFAULT 0
                )
                """
            )

            cur.execute("PRAGMA table_info(blobs)")
            cols = {row["name"] for row in cur.fetchall()}
            if "updated_at" not in cols:
                cur.execute("ALTER TABLE blobs ADD COLUMN updated_at REAL NOT NULL DEFAULT 0")
                logger.info("SqliteBlobStore migration: added column updated_at")

            conn.commit()
        finally:
            conn.close()

    # ---- public API ----

    def read(self, key: str) -> str | None:
        try:
            conn = self._get_conn()
            try:
                row = conn.execute("SELECT value FROM blobs WHERE key = ?", (key,)).fetchone()
                return None if row is None else str(row["value"])
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"read {key!r} failed: {e}") from e

    def write(self, key: str, value: str) -> None:
        try:
            conn = self._get_conn()
            try:
                conn.execute(
                    """
                    INSERT INTO blobs(key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, value, time.time()),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"write {key!r} failed: {e}") from e
