# /carecontext/vector_store.py
"""
Durable chunk store: chunk id -> {text, embedding, session scope, metadata}.
SQLite-backed with an in-process LRU read-through cache keyed by chunk id.
"""
import json
import sqlite3
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from .config import VECTOR_CACHE_MAXSIZE, VECTOR_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite
from .errors import DimensionMismatchError, StorageUnavailableError
from .models import GLOBAL_SCOPE, LEGACY_GLOBAL_SCOPES, Chunk
from .observability import get_logger

logger = get_logger(__name__)

_SQLITE_MAX_PARAMS = 900


class VectorStore:
    """Persistent + in-memory chunk store keyed by immutable chunk ids."""

    def __init__(self, db_path: Path | None = None, cache_maxsize: int = VECTOR_CACHE_MAXSIZE):
        self.db_path = Path(db_path) if db_path else VECTOR_DB_PATH
        self._lock = threading.RLock()
        self._cache_maxsize = max(1, int(cache_maxsize))
        self._cache: OrderedDict[str, Chunk] = OrderedDict()
        self._dimension: int | None = None
        self._conn: sqlite3.Connection | None = connect_sqlite(self.db_path)
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise StorageUnavailableError("vector store connection is closed")
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
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_chunks_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS chunks (
                        chunk_id TEXT PRIMARY KEY,
                        text TEXT NOT NULL,
                        session_scope TEXT NOT NULL DEFAULT 'GLOBAL',
                        embedding_json TEXT NOT NULL,
                        dimension INTEGER NOT NULL,
                        metadata_json TEXT NOT NULL DEFAULT '{}'
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_chunks_scope ON chunks(session_scope)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="vector_store", migrations=migrations)

    # ------------------------------------------------------------------
    # Row mapping / cache
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        try:
            embedding = tuple(float(x) for x in json.loads(row["embedding_json"] or "[]"))
        except (TypeError, ValueError):
            embedding = ()
        try:
            raw_meta = json.loads(row["metadata_json"] or "{}")
        except (TypeError, ValueError):
            raw_meta = {}
        metadata = {str(k): str(v) for k, v in raw_meta.items()} if isinstance(raw_meta, dict) else {}
        return Chunk(
            id=str(row["chunk_id"]),
            text=str(row["text"]),
            session_scope=str(row["session_scope"] or GLOBAL_SCOPE),
            embedding=embedding,
            metadata=metadata,
        )

    def _cache_chunks(self, chunks: Iterable[Chunk]):
        with self._lock:
            for chunk in chunks:
                if chunk.id in self._cache:
                    self._cache.move_to_end(chunk.id)
                self._cache[chunk.id] = chunk
                while len(self._cache) > self._cache_maxsize:
                    self._cache.popitem(last=False)

    def _evict(self, chunk_ids: Iterable[str]):
        with self._lock:
            for chunk_id in chunk_ids:
                self._cache.pop(chunk_id, None)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _check_dimensions(self, chunks: list[Chunk]):
        expected = self.dimension()
        for chunk in chunks:
            if not chunk.embedding:
                raise DimensionMismatchError(expected or 0, 0, chunk.id)
            if expected is None:
                expected = chunk.dimension
                continue
            if chunk.dimension != expected:
                raise DimensionMismatchError(expected, chunk.dimension, chunk.id)

    def save(self, chunks: list[Chunk]):
        """Idempotent upsert keyed by chunk id."""
        batch = [c for c in chunks or [] if c.id]
        if not batch:
            return
        with self._lock:
            self._check_dimensions(batch)
            rows = [
                (c.id, c.text, c.session_scope or GLOBAL_SCOPE, c.embedding_json(), c.dimension, c.metadata_json())
                for c in batch
            ]
            with self._connection() as conn:
                conn.executemany(
                    """
                    INSERT INTO chunks (chunk_id, text, session_scope, embedding_json, dimension, metadata_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(chunk_id) DO UPDATE SET
                        text = excluded.text,
                        session_scope = excluded.session_scope,
                        embedding_json = excluded.embedding_json,
                        dimension = excluded.dimension,
                        metadata_json = excluded.metadata_json
                    """,
                    rows,
                )
            # Readers must never see a cached row older than this write.
            self._evict(c.id for c in batch)
            if self._dimension is None:
                self._dimension = batch[0].dimension
        logger.info("vector_store_saved", chunks=len(batch))

    def delete_all(self):
        with self._lock:
            with self._connection() as conn:
                conn.execute("DELETE FROM chunks")
            self._cache.clear()
            self._dimension = None
        logger.info("vector_store_cleared")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_by_ids(self, chunk_ids: Iterable[str]) -> list[Chunk]:
        """
        Returns chunks in request order using batched IN queries for cache misses.
        Ids with no stored chunk are omitted.
        """
        ordered_ids: list[str] = []
        seen = set()
        for raw_id in chunk_ids or []:
            chunk_id = str(raw_id or "").strip()
            if not chunk_id or chunk_id in seen:
                continue
            seen.add(chunk_id)
            ordered_ids.append(chunk_id)
        if not ordered_ids:
            return []

        found: dict[str, Chunk] = {}
        missing: list[str] = []
        with self._lock:
            for chunk_id in ordered_ids:
                cached = self._cache.get(chunk_id)
                if cached is not None:
                    self._cache.move_to_end(chunk_id)
                    found[chunk_id] = cached
                else:
                    missing.append(chunk_id)

        for start in range(0, len(missing), _SQLITE_MAX_PARAMS):
            window = missing[start:start + _SQLITE_MAX_PARAMS]
            placeholders = ",".join("?" for _ in window)
            with self._connection() as conn:
                rows = conn.execute(
                    f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders})",
                    window,
                ).fetchall()
            fetched = [self._row_to_chunk(row) for row in rows]
            self._cache_chunks(fetched)
            for chunk in fetched:
                found[chunk.id] = chunk

        if len(found) < len(ordered_ids):
            logger.info("vector_store_missing_ids", requested=len(ordered_ids), found=len(found))
        return [found[chunk_id] for chunk_id in ordered_ids if chunk_id in found]

    def get_all(self) -> list[Chunk]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM chunks ORDER BY chunk_id").fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def get_by_scope(self, scope: str) -> list[Chunk]:
        """Chunks owned by `scope` plus everything in the shared global scope."""
        scopes = [str(scope or GLOBAL_SCOPE), GLOBAL_SCOPE, *LEGACY_GLOBAL_SCOPES]
        unique_scopes = list(dict.fromkeys(scopes))
        placeholders = ",".join("?" for _ in unique_scopes)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM chunks WHERE session_scope IN ({placeholders}) ORDER BY chunk_id",
                unique_scopes,
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def count(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM chunks").fetchone()
        return int(row["n"]) if row else 0

    def dimension(self) -> int | None:
        with self._lock:
            if self._dimension is not None:
                return self._dimension
            with self._connection() as conn:
                row = conn.execute("SELECT dimension FROM chunks LIMIT 1").fetchone()
            self._dimension = int(row["dimension"]) if row else None
            return self._dimension

    def scope_counts(self) -> dict[str, int]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT session_scope, COUNT(*) AS n FROM chunks GROUP BY session_scope ORDER BY session_scope"
            ).fetchall()
        return {str(row["session_scope"]): int(row["n"]) for row in rows}

    def stats(self) -> dict[str, Any]:
        return {
            "chunks": self.count(),
            "dimension": self.dimension(),
            "scopes": self.scope_counts(),
            "cached": len(self._cache),
        }
