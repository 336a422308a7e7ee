from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any

from .runtime import OperationOutcome, RunResult, utc_now
from .settings import settings


_db_path_override: str | None = None


def configure(db_path: str | None) -> None:
    """Use db_path instead of DDO_DB_PATH for this process (None restores the setting)."""
    global _db_path_override
    _db_path_override = db_path


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount Docker created as a
    directory, for example) the database file is placed inside it.
    """

    p = os.path.abspath(_db_path_override or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "ddo.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              project TEXT NOT NULL,
              started_at TEXT NOT NULL,
              finished_at TEXT NOT NULL,
              status TEXT NOT NULL, -- succeeded|partial|failed
              cancelled INTEGER NOT NULL DEFAULT 0,
              cancel_reason TEXT
            );

            CREATE TABLE IF NOT EXISTS operations (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              op_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              provider TEXT NOT NULL,
              action TEXT NOT NULL,
              state TEXT NOT NULL, -- SUCCEEDED|FAILED|CANCELLED
              attempts INTEGER NOT NULL DEFAULT 0,
              error TEXT,
              error_class TEXT,
              blocked_by TEXT,
              detail TEXT,
              started_at TEXT,
              finished_at TEXT,
              UNIQUE(run_id, op_id),
              FOREIGN KEY(run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              project TEXT,
              run_id TEXT,
              op_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
            CREATE INDEX IF NOT EXISTS idx_operations_run_id ON operations(run_id);
            """
        )


def log_event(
    level: str,
    message: str,
    project: str | None = None,
    run_id: str | None = None,
    op_id: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, project, run_id, op_id, message) VALUES (?, ?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), project, run_id, op_id, message),
        )


@dataclass(frozen=True)
class RunRow:
    run_id: str
    project: str
    started_at: str
    finished_at: str
    status: str
    cancelled: int
    cancel_reason: str | None


def save_run(result: RunResult) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO runs (run_id, project, started_at, finished_at, status, cancelled, cancel_reason)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
              finished_at=excluded.finished_at,
              status=excluded.status,
              cancelled=excluded.cancelled,
              cancel_reason=excluded.cancel_reason
            """,
            (
                result.run_id,
                result.project,
                result.started_at,
                result.finished_at,
                result.status,
                int(result.cancelled),
                result.cancel_reason,
            ),
        )
        conn.execute("DELETE FROM operations WHERE run_id=?", (result.run_id,))
        conn.executemany(
            """
            INSERT INTO operations (run_id, op_id, kind, provider, action, state, attempts, error, error_class,
                                    blocked_by, detail, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    o.op_id,
                    o.kind,
                    o.provider,
                    o.action,
                    o.state.value,
                    o.attempts,
                    o.error,
                    o.error_class,
                    o.blocked_by,
                    o.detail,
                    o.started_at,
                    o.finished_at,
                )
                for o in result.outcomes
            ],
        )


def _load_run(conn: sqlite3.Connection, row: sqlite3.Row) -> RunResult:
    run = RunRow(**dict(row))
    ops = conn.execute("SELECT * FROM operations WHERE run_id=? ORDER BY id", (run.run_id,)).fetchall()
    return RunResult(
        run_id=run.run_id,
        project=run.project,
        started_at=run.started_at,
        finished_at=run.finished_at,
        outcomes=[OperationOutcome.from_dict(dict(r)) for r in ops],
        cancelled=bool(run.cancelled),
        cancel_reason=run.cancel_reason,
    )


def get_run(run_id: str) -> RunResult | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM runs WHERE run_id=?", (run_id,)).fetchone()
        return _load_run(conn, row) if row else None


def latest_run(project: str | None = None) -> RunResult | None:
    with connect() as conn:
        if project:
            row = conn.execute(
                "SELECT * FROM runs WHERE project=? ORDER BY started_at DESC, rowid DESC LIMIT 1", (project,)
            ).fetchone()
        else:
            row = conn.execute("SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT 1").fetchone()
        return _load_run(conn, row) if row else None


def list_runs(limit: int = 20) -> list[RunRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)).fetchall()
        return [RunRow(**dict(r)) for r in rows]


def latest_events(limit: int = 100, run_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if run_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE run_id=? ORDER BY id DESC LIMIT ?", (run_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
