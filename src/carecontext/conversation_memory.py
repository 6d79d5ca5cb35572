"""
Conversation memory for support sessions.

Messages are append-only and ordered by (session_id, timestamp_ms). The SQLite
table is the durable store; when it cannot be written the message lands in a
process-local ring buffer instead, and reads merge both sources so a session
never loses its recent turns because of a storage hiccup.
"""
from __future__ import annotations

import dataclasses
import sqlite3
import threading
import time
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable

from .config import (
    FALLBACK_RING_SIZE,
    MEMORY_CACHE_TTL_S,
    MEMORY_DB_PATH,
    MEMORY_HISTORY_LIMIT,
    MESSAGE_TTL_HOURS,
)
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite
from .errors import StorageUnavailableError
from .models import ROLE_ASSISTANT, ROLE_USER, ConversationMessage
from .observability import get_logger

logger = get_logger(__name__)

_BACKEND_ERRORS = (sqlite3.Error, StorageUnavailableError)


class FallbackMessageBuffer:
    """Per-session bounded ring of messages that could not be persisted."""

    def __init__(self, max_per_session: int = FALLBACK_RING_SIZE):
        self.max_per_session = max(1, int(max_per_session))
        self._lock = threading.Lock()
        self._rings: dict[str, deque[ConversationMessage]] = {}

    def append(self, message: ConversationMessage):
        with self._lock:
            ring = self._rings.get(message.session_id)
            if ring is None:
                ring = deque(maxlen=self.max_per_session)
                self._rings[message.session_id] = ring
            ring.append(message)

    def get(self, session_id: str) -> list[ConversationMessage]:
        with self._lock:
            return list(self._rings.get(session_id, ()))

    def latest_timestamp(self, session_id: str) -> int:
        with self._lock:
            ring = self._rings.get(session_id)
            return max((m.timestamp_ms for m in ring), default=0) if ring else 0

    def clear(self, session_id: str):
        with self._lock:
            self._rings.pop(session_id, None)

    def size(self) -> int:
        with self._lock:
            return sum(len(ring) for ring in self._rings.values())


class _HistoryCache:
    """TTL cache for get_last results keyed by (session_id, limit)."""

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = max(0.0, float(ttl_s))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, int], tuple[float, tuple[ConversationMessage, ...]]] = {}

    def get(self, session_id: str, limit: int) -> list[ConversationMessage] | None:
        if self.ttl_s <= 0.0:
            return None
        key = (session_id, limit)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, messages = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return list(messages)

    def put(self, session_id: str, limit: int, messages: list[ConversationMessage]):
        if self.ttl_s <= 0.0:
            return
        with self._lock:
            self._entries[(session_id, limit)] = (self._clock() + self.ttl_s, tuple(messages))

    def invalidate(self, session_id: str):
        with self._lock:
            for key in [k for k in self._entries if k[0] == session_id]:
                del self._entries[key]


class ConversationMemory:
    """SQLite-backed message log with a fallback buffer and a read cache."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        fallback: FallbackMessageBuffer | None = None,
        *,
        cache_ttl_s: float = MEMORY_CACHE_TTL_S,
        message_ttl_hours: int = MESSAGE_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path) if db_path else MEMORY_DB_PATH
        self.fallback = fallback if fallback is not None else FallbackMessageBuffer()
        self.message_ttl_s = max(1, int(message_ttl_hours)) * 3600
        self._clock = clock
        self._cache = _HistoryCache(cache_ttl_s)
        self._lock = threading.RLock()
        self._clock_lock = threading.Lock()
        self._last_timestamps: dict[str, int] = {}
        self._conn: sqlite3.Connection | None = None
        try:
            self._conn = connect_sqlite(self.db_path)
            self._ensure_schema()
        except sqlite3.Error as exc:
            # Keep serving from the fallback buffer; writes will log each miss.
            logger.warning("memory_backend_unavailable", db_path=str(self.db_path), error=str(exc))
            self._conn = None

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise StorageUnavailableError("conversation memory backend is not available")
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
                name="create_messages_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        session_id TEXT NOT NULL,
                        timestamp_ms INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        message_type TEXT NOT NULL DEFAULT '',
                        intent TEXT NOT NULL DEFAULT '',
                        source TEXT NOT NULL DEFAULT '',
                        confidence REAL NOT NULL DEFAULT 0,
                        ticket_id TEXT NOT NULL DEFAULT '',
                        expires_at INTEGER NOT NULL,
                        PRIMARY KEY(session_id, timestamp_ms)
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_messages_expires ON messages(expires_at)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="conversation_memory", migrations=migrations)

    # ------------------------------------------------------------------
    # Timestamps
    # ------------------------------------------------------------------
    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _stored_max_timestamp(self, session_id: str) -> int:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT MAX(timestamp_ms) AS ts FROM messages WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
        except _BACKEND_ERRORS:
            return 0
        return int(row["ts"] or 0) if row else 0

    def _next_timestamps(self, session_id: str, count: int) -> list[int]:
        """Strictly increasing per session, even within one millisecond."""
        with self._clock_lock:
            last = self._last_timestamps.get(session_id)
            if last is None:
                last = max(self._stored_max_timestamp(session_id), self.fallback.latest_timestamp(session_id))
            stamps = []
            for _ in range(count):
                last = max(self._now_ms(), last + 1)
                stamps.append(last)
            self._last_timestamps[session_id] = last
            return stamps

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    @staticmethod
    def _validate(message: ConversationMessage):
        if not str(message.session_id or "").strip():
            raise ValueError("session_id is required")
        if message.role not in {ROLE_USER, ROLE_ASSISTANT}:
            raise ValueError(f"unsupported role: {message.role!r}")

    def append(self, message: ConversationMessage) -> ConversationMessage:
        return self.append_many([message])[0]

    def append_many(self, messages: Iterable[ConversationMessage]) -> list[ConversationMessage]:
        """Writes a batch for one session; timestamps follow list order."""
        batch = list(messages or [])
        if not batch:
            return []
        for message in batch:
            self._validate(message)
        session_ids = {m.session_id for m in batch}
        if len(session_ids) != 1:
            raise ValueError("append_many expects messages from a single session")
        session_id = batch[0].session_id

        stamps = self._next_timestamps(session_id, len(batch))
        expires_at = int(self._clock()) + self.message_ttl_s
        stored = [
            dataclasses.replace(m, timestamp_ms=ts, expires_at=expires_at, content=str(m.content or ""))
            for m, ts in zip(batch, stamps)
        ]
        try:
            with self._connection() as conn:
                conn.executemany(
                    """
                    INSERT INTO messages (
                        session_id, timestamp_ms, role, content, message_type,
                        intent, source, confidence, ticket_id, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            m.session_id, m.timestamp_ms, m.role, m.content, m.message_type,
                            m.intent, m.source, float(m.confidence), m.ticket_id, m.expires_at,
                        )
                        for m in stored
                    ],
                )
        except _BACKEND_ERRORS as exc:
            for message in stored:
                self.fallback.append(message)
            logger.warning("memory_fallback_write", session_id=session_id, messages=len(stored), error=str(exc))
        finally:
            self._cache.invalidate(session_id)
        return stored

    def record(self, session_id: str, role: str, content: str, **fields: Any) -> ConversationMessage:
        return self.append(ConversationMessage(session_id=session_id, role=role, content=content, **fields))

    def clear(self, session_id: str):
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        except _BACKEND_ERRORS as exc:
            logger.warning("memory_clear_failed", session_id=session_id, error=str(exc))
        finally:
            self.fallback.clear(session_id)
            self._cache.invalidate(session_id)

    def purge_expired(self) -> int:
        now_s = int(self._clock())
        try:
            with self._connection() as conn:
                cursor = conn.execute("DELETE FROM messages WHERE expires_at <= ?", (now_s,))
                removed = int(cursor.rowcount or 0)
        except _BACKEND_ERRORS as exc:
            logger.warning("memory_purge_failed", error=str(exc))
            return 0
        if removed:
            logger.info("memory_purged_expired", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ConversationMessage:
        return ConversationMessage(
            session_id=str(row["session_id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            timestamp_ms=int(row["timestamp_ms"]),
            message_type=str(row["message_type"] or ""),
            intent=str(row["intent"] or ""),
            source=str(row["source"] or ""),
            confidence=float(row["confidence"] or 0.0),
            ticket_id=str(row["ticket_id"] or ""),
            expires_at=int(row["expires_at"]),
        )

    def get_last(self, session_id: str, limit: int = MEMORY_HISTORY_LIMIT) -> list[ConversationMessage]:
        """Returns up to `limit` unexpired messages, oldest first."""
        size = max(1, int(limit))
        cached = self._cache.get(session_id, size)
        if cached is not None:
            return cached

        now_s = int(self._clock())
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM messages
                    WHERE session_id = ? AND expires_at > ?
                    ORDER BY timestamp_ms DESC
                    LIMIT ?
                    """,
                    (session_id, now_s, size),
                ).fetchall()
            stored = [self._row_to_message(row) for row in rows]
            backend_ok = True
        except _BACKEND_ERRORS as exc:
            logger.warning("memory_read_failed", session_id=session_id, error=str(exc))
            stored = []
            backend_ok = False

        merged: dict[int, ConversationMessage] = {m.timestamp_ms: m for m in stored}
        for message in self.fallback.get(session_id):
            if message.expires_at > now_s:
                merged.setdefault(message.timestamp_ms, message)
        history = [merged[ts] for ts in sorted(merged)][-size:]
        if backend_ok:
            self._cache.put(session_id, size, history)
        return history
