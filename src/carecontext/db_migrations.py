"""
SQLite connection helpers and a versioned migration runner shared by the
vector store, the metadata index, conversation memory and sync state.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def connect_sqlite(db_path: str | Path, *, wal: bool = True) -> sqlite3.Connection:
    """Opens a thread-shareable connection; callers serialize access with their own lock."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    if wal:
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as exc:
            logger.warning("sqlite_pragma_failed", db_path=str(path), error=str(exc))
    return conn


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
) -> list[int]:
    """Applies pending migrations for one component in version order; returns the versions applied."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )
    applied_versions = {
        int(row[0])
        for row in conn.execute(
            "SELECT version FROM schema_migrations WHERE component = ?",
            (component,),
        ).fetchall()
    }

    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in applied_versions:
            continue
        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, version, migration.name, _utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)
    return newly_applied
