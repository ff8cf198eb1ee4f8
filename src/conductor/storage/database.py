"""SQLite database with WAL mode for budgets, executions and routing decisions."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class Database:
    """SQLite storage layer with WAL mode for the engine."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".conductor"
        self.db_path = self.data_dir / "data" / "conductor.db"

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

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return lastrowid."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or 0

    # --- Budgets ---

    def save_budgets(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Upsert ledger snapshot records ``{scope, key, amount, used, timestamp}``."""
        rows = [
            (r["scope"], r["key"], float(r["amount"]), float(r["used"]), float(r["timestamp"]))
            for r in records
        ]
        with self.connect() as conn:
            conn.executemany(
                """INSERT INTO budgets (scope, key, amount, used, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(scope, key) DO UPDATE SET
                       amount = excluded.amount,
                       used = excluded.used,
                       updated_at = excluded.updated_at""",
                rows,
            )
        return len(rows)

    def load_budgets(self) -> list[dict[str, Any]]:
        rows = self.execute(
            "SELECT scope, key, amount, used, updated_at FROM budgets ORDER BY scope, key"
        )
        return [
            {
                "scope": row["scope"],
                "key": row["key"],
                "amount": row["amount"],
                "used": row["used"],
                "timestamp": row["updated_at"],
            }
            for row in rows
        ]

    # --- Executions and decisions ---

    def record_execution(self, record: Mapping[str, Any]) -> int:
        return self.execute_insert(
            """INSERT INTO executions
               (request_id, worker_id, outcome, fallback, confidence, score,
                units_consumed, duration_ms, step_statuses, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record["request_id"],
                record["worker_id"],
                record["outcome"],
                1 if record.get("fallback") else 0,
                record.get("confidence", 0.0),
                record.get("score", 0.0),
                record.get("units_consumed", 0.0),
                record.get("duration_ms", 0.0),
                json.dumps(record.get("step_statuses", {})),
                record["timestamp"],
            ),
        )

    def recent_executions(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.execute(
            "SELECT * FROM executions ORDER BY recorded_at DESC, id DESC LIMIT ?", (limit,)
        )
        results = []
        for row in rows:
            item = dict(row)
            item["fallback"] = bool(item["fallback"])
            item["step_statuses"] = json.loads(item["step_statuses"] or "{}")
            results.append(item)
        return results

    def record_decision(self, decision: Mapping[str, Any]) -> int:
        return self.execute_insert(
            """INSERT INTO decisions
               (request_id, selected, score, confidence, fallback, fallback_reason,
                reasoning, options_considered, alternatives, decided_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                decision["request_id"],
                decision["selected"],
                decision["score"],
                decision["confidence"],
                1 if decision.get("fallback") else 0,
                decision.get("fallback_reason"),
                decision.get("reasoning", ""),
                decision.get("options_considered", 0),
                json.dumps(list(decision.get("alternatives", []))),
                decision["timestamp"],
            ),
        )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS budgets (
    scope TEXT NOT NULL,
    key TEXT NOT NULL,
    amount REAL NOT NULL,
    used REAL NOT NULL DEFAULT 0.0,
    updated_at REAL NOT NULL,
    PRIMARY KEY (scope, key),
    CHECK (used >= 0.0 AND used <= amount)
);

CREATE TABLE IF NOT EXISTS executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL,
    worker_id TEXT NOT NULL,
    outcome TEXT NOT NULL,
    fallback INTEGER NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0.0,
    score REAL NOT NULL DEFAULT 0.0,
    units_consumed REAL NOT NULL DEFAULT 0.0,
    duration_ms REAL NOT NULL DEFAULT 0.0,
    step_statuses TEXT DEFAULT '{}',
    recorded_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL,
    selected TEXT NOT NULL,
    score REAL NOT NULL,
    confidence REAL NOT NULL,
    fallback INTEGER NOT NULL DEFAULT 0,
    fallback_reason TEXT,
    reasoning TEXT NOT NULL DEFAULT '',
    options_considered INTEGER NOT NULL DEFAULT 0,
    alternatives TEXT DEFAULT '[]',
    decided_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_worker ON executions(worker_id, recorded_at DESC);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
