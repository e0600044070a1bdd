"""SQLite database with WAL mode for task and work-order persistence."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ultrawork.config import DEFAULT_DATA_DIR


class Database:
    """SQLite storage layer with WAL mode for the orchestrator."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.db_path = self.data_dir / "data" / "ultrawork.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_update(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute a write and return the number of affected rows."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    request TEXT NOT NULL,
    request_key TEXT NOT NULL,
    intent TEXT,
    category TEXT,
    status TEXT NOT NULL,
    reason TEXT,
    summary TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    started_at REAL NOT NULL,
    finished_at REAL NOT NULL,
    failure_log TEXT DEFAULT '[]',
    escalations TEXT DEFAULT '[]',
    consensus TEXT DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS work_orders (
    order_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    objective TEXT NOT NULL,
    model TEXT NOT NULL,
    capability TEXT,
    state TEXT NOT NULL,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    result TEXT,
    error TEXT
);

CREATE TABLE IF NOT EXISTS escalations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    documentation TEXT NOT NULL,
    recorded_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_orders_task ON work_orders(task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_finished ON tasks(finished_at);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
