"""
Database Connection and Management

SQLite storage for shopping-list rows and offer snapshots. Blocking calls
are made from worker threads (`asyncio.to_thread`); a process-wide lock
serializes access to the shared connection.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "flyer_wizard.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS shopping_list_items (
    id INTEGER PRIMARY KEY,
    list_id INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    quantity REAL NOT NULL DEFAULT 1,
    offer_id INTEGER,
    store_id INTEGER,
    price REAL,
    product_id INTEGER,
    offer_json TEXT,
    product_json TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_list_items_list ON shopping_list_items(list_id);

CREATE TABLE IF NOT EXISTS offer_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL,
    session_id TEXT NOT NULL,
    offer_id INTEGER NOT NULL,
    canonical_product_id INTEGER,
    store_id INTEGER NOT NULL,
    product_name TEXT NOT NULL,
    brand TEXT,
    price REAL NOT NULL,
    valid_from TEXT,
    valid_to TEXT,
    rank INTEGER NOT NULL,
    score REAL NOT NULL,
    selected INTEGER NOT NULL DEFAULT 0,
    explanation TEXT NOT NULL DEFAULT '',
    snapshot_reason TEXT NOT NULL DEFAULT 'wizard_migration',
    created_at TEXT NOT NULL,
    UNIQUE (item_id, session_id, offer_id, store_id)
);

CREATE INDEX IF NOT EXISTS idx_snapshots_session ON offer_snapshots(session_id);
"""


class Database:
    """SQLite connection wrapper with transaction helper."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA journal_mode = WAL")
        return self._connection

    def close(self):
        if self._connection:
            self._connection.close()
            self._connection = None

    @contextmanager
    def transaction(self):
        """Commit on success, roll back and re-raise on any error."""
        with self._lock:
            conn = self.connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connect().execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.connect().execute(query, params).fetchall()

    def init_schema(self):
        with self._lock:
            conn = self.connect()
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"Database schema initialized: {self.db_path}")
