# /carecontext/metadata_index.py
"""
Inverted index over chunk metadata: "key:value" term -> set of chunk ids.
Writes are set unions, so batches may be applied in any order.
"""
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Mapping

from .config import VECTOR_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite
from .errors import StorageUnavailableError
from .models import Chunk
from .observability import get_logger

logger = get_logger(__name__)

INDEXED_KEYS = ("role", "user", "doc_type", "policy_id", "doc_class")


def make_term(key: str, value: str) -> str:
    return f"{str(key).strip().lower()}:{str(value).strip()}"


def build_postings(chunks: Iterable[Chunk], keys: Iterable[str] = INDEXED_KEYS) -> dict[str, list[str]]:
    """Turns chunk metadata into posting lists for the indexed keys."""
    wanted = tuple(keys)
    postings: dict[str, list[str]] = {}
    for chunk in chunks:
        meta = chunk.metadata or {}
        for key in wanted:
            # Chunks carry "user_id" in metadata; the posting key is "user".
            raw = meta.get(key)
            if raw is None and key == "user":
                raw = meta.get("user_id")
            value = str(raw or "").strip()
            if not value:
                continue
            ids = postings.setdefault(make_term(key, value), [])
            if chunk.id not in ids:
                ids.append(chunk.id)
    return postings


class MetadataIndex:
    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path) if db_path else VECTOR_DB_PATH
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = connect_sqlite(self.db_path)
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise StorageUnavailableError("metadata index connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_postings_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS postings (
                        term TEXT NOT NULL,
                        chunk_id TEXT NOT NULL,
                        PRIMARY KEY(term, chunk_id)
                    )
                    """,
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="metadata_index", migrations=migrations)

    def add_batch(self, term_to_ids: Mapping[str, Iterable[str]]):
        rows = []
        for term, ids in (term_to_ids or {}).items():
            clean_term = str(term or "").strip()
            if not clean_term:
                continue
            for chunk_id in ids or []:
                clean_id = str(chunk_id or "").strip()
                if clean_id:
                    rows.append((clean_term, clean_id))
        if not rows:
            return
        with self._connection() as conn:
            conn.executemany("INSERT OR IGNORE INTO postings (term, chunk_id) VALUES (?, ?)", rows)
        logger.info("metadata_index_batch_added", terms=len(term_to_ids), postings=len(rows))

    def get_ids(self, term: str) -> set[str]:
        clean_term = str(term or "").strip()
        if not clean_term:
            return set()
        with self._connection() as conn:
            rows = conn.execute("SELECT chunk_id FROM postings WHERE term = ?", (clean_term,)).fetchall()
        return {str(row["chunk_id"]) for row in rows}

    def delete_all(self):
        with self._connection() as conn:
            conn.execute("DELETE FROM postings")
        logger.info("metadata_index_cleared")

    def terms(self) -> dict[str, int]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT term, COUNT(*) AS n FROM postings GROUP BY term ORDER BY term"
            ).fetchall()
        return {str(row["term"]): int(row["n"]) for row in rows}

    def count(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM postings").fetchone()
        return int(row["n"]) if row else 0
