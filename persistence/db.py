from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List

from condor.clock import utc_now

DEFAULT_MIGRATIONS_DIR = Path(__file__).with_name("schema_migrations")
MEMORY = ":memory:"


def connect_db(path: str | Path) -> sqlite3.Connection:
    """Open a WAL-mode connection shared across worker threads (callers serialise access)."""

    target = str(path)
    if target != MEMORY:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    for pragma in (
        "PRAGMA journal_mode=WAL;",
        "PRAGMA synchronous=NORMAL;",
        "PRAGMA busy_timeout=5000;",
    ):
        conn.execute(pragma)
    return conn


def run_migrations(conn: sqlite3.Connection, migrations_dir: Path | None = None) -> List[str]:
    """Apply unapplied ``*.sql`` files in name order; returns the names applied now."""

    migrations_dir = migrations_dir or DEFAULT_MIGRATIONS_DIR
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations(name TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    applied = {row[0] for row in conn.execute("SELECT name FROM schema_migrations")}
    fresh: List[str] = []
    for sql_file in sorted(migrations_dir.glob("*.sql")):
        if sql_file.name in applied:
            continue
        conn.executescript(sql_file.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT INTO schema_migrations(name, applied_at) VALUES (?, ?)",
            (sql_file.name, utc_now().isoformat()),
        )
        fresh.append(sql_file.name)
    conn.commit()
    return fresh


__all__ = ["DEFAULT_MIGRATIONS_DIR", "MEMORY", "connect_db", "run_migrations"]
