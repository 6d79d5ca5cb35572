"""
Knowledge-base ingestion.

Documents are read from a `DocumentSource`; their path decides who owns them:

    users/<id>/...   personal documents for one customer
    global/...       shared reference material (also the default)
    internal/...     employee-only material, never served to customers

Each document is chunked, embedded concurrently, saved to the vector store and
only then indexed, so an index term never points at an id that was not written.
"""
from __future__ import annotations

import hashlib
import re
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterable, Iterator, Protocol

from .chunking import chunk_text
from .config import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    INGEST_MAX_WORKERS,
    SYNC_INTERVAL_S,
    SYNC_STARTUP_DELAY_S,
    SYNC_STATE_DB_PATH,
)
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite
from .embeddings import EmbeddingClient
from .errors import DimensionMismatchError, EmbeddingError, StorageUnavailableError
from .identity import normalize_user_id
from .metadata_index import MetadataIndex, build_postings
from .metrics import MetricsCollector
from .models import GLOBAL_SCOPE, Chunk, SourceDocument, SyncResult, SyncState
from .observability import get_logger
from .vector_store import VectorStore

logger = get_logger(__name__)

INTERNAL_SCOPE = "INTERNAL"
SUPPORTED_SUFFIXES = (".txt", ".md")


# ------------------------------------------------------------------
# Sources
# ------------------------------------------------------------------
class DocumentSource(Protocol):
    def iter_documents(self, modified_after: float | None = None) -> Iterator[SourceDocument]:
        ...


class LocalDirectorySource:
    """Walks a directory tree; document paths are POSIX paths relative to the root."""

    def __init__(self, root: str | Path, suffixes: Iterable[str] = SUPPORTED_SUFFIXES):
        self.root = Path(root)
        self.suffixes = tuple(s.lower() for s in suffixes)

    def iter_documents(self, modified_after: float | None = None) -> Iterator[SourceDocument]:
        if not self.root.exists():
            logger.warning("document_source_missing", root=str(self.root))
            return
        for file_path in sorted(self.root.rglob("*")):
            if not file_path.is_file() or file_path.suffix.lower() not in self.suffixes:
                continue
            rel_path = file_path.relative_to(self.root).as_posix()
            try:
                mtime = file_path.stat().st_mtime
                if modified_after is not None and mtime <= modified_after:
                    continue
                content = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("ingest_document_unreadable", path=rel_path, error=str(exc))
                continue
            yield SourceDocument(path=rel_path, last_modified=mtime, content=content)


# ------------------------------------------------------------------
# Path parsing / classification
# ------------------------------------------------------------------
@dataclass(frozen=True)
class DocumentOwnership:
    user_id: str
    doc_type: str
    role: str

    @property
    def session_scope(self) -> str:
        if self.doc_type == "personal":
            return self.user_id
        if self.doc_type == "internal":
            return INTERNAL_SCOPE
        return GLOBAL_SCOPE


SHARED_OWNERSHIP = DocumentOwnership(user_id="global", doc_type="reference", role="customer")
INTERNAL_OWNERSHIP = DocumentOwnership(user_id="internal", doc_type="internal", role="employee")


def parse_ownership(path: str) -> DocumentOwnership:
    parts = [p for p in PurePosixPath(str(path or "").replace("\\", "/")).parts if p not in {"", "/", "."}]
    if not parts:
        return SHARED_OWNERSHIP
    head = parts[0].lower()
    if head == "users" and len(parts) >= 3:
        user_id = normalize_user_id(parts[1])
        if user_id is None:
            return SHARED_OWNERSHIP
        return DocumentOwnership(user_id=user_id, doc_type="personal", role="customer")
    if head == "internal":
        return INTERNAL_OWNERSHIP
    return SHARED_OWNERSHIP


# Checked in order against the file name; first match wins.
_DOC_CLASSES = (
    ("faq", re.compile(r"faq|frequently", re.IGNORECASE), 0.85),
    ("claim_history", re.compile(r"claim", re.IGNORECASE), 0.95),
    ("support_log", re.compile(r"support|chat[-_]?log|transcript|\blog", re.IGNORECASE), 0.70),
    ("official_policy", re.compile(r"polic|official|terms|benefit|sop", re.IGNORECASE), 1.0),
)
UNCLASSIFIED = ("unclassified", 0.80)


def classify_document(path: str) -> tuple[str, float]:
    """Returns (doc_class, confidence) for a document path."""
    name = PurePosixPath(str(path or "").replace("\\", "/")).name
    for doc_class, pattern, confidence in _DOC_CLASSES:
        if pattern.search(name):
            return doc_class, confidence
    return UNCLASSIFIED


def make_chunk_id(path: str, last_modified: float, index: int) -> str:
    return f"{path}::{int(last_modified)}::{index}"


def _slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(text or "").lower()).strip("-")
    return slug or "policy"


# ------------------------------------------------------------------
# Sync state
# ------------------------------------------------------------------
class SyncStateStore:
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else SYNC_STATE_DB_PATH
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = connect_sqlite(self.db_path)
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise StorageUnavailableError("sync state connection is closed")
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
                name="create_sync_state_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS sync_state (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        last_sync_timestamp REAL NOT NULL DEFAULT 0,
                        files_processed INTEGER NOT NULL DEFAULT 0,
                        last_sync_duration REAL NOT NULL DEFAULT 0
                    )
                    """,
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="sync_state", migrations=migrations)

    def load(self) -> SyncState:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM sync_state WHERE id = 1").fetchone()
        if row is None:
            return SyncState()
        return SyncState(
            last_sync_timestamp=float(row["last_sync_timestamp"]),
            files_processed=int(row["files_processed"]),
            last_sync_duration=float(row["last_sync_duration"]),
        )

    def save(self, state: SyncState):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (id, last_sync_timestamp, files_processed, last_sync_duration)
                VALUES (1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_sync_timestamp = excluded.last_sync_timestamp,
                    files_processed = excluded.files_processed,
                    last_sync_duration = excluded.last_sync_duration
                """,
                (state.last_sync_timestamp, state.files_processed, state.last_sync_duration),
            )

    def reset(self):
        with self._connection() as conn:
            conn.execute("DELETE FROM sync_state")


# ------------------------------------------------------------------
# Ingestion service
# ------------------------------------------------------------------
class IngestionService:
    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        metadata_index: MetadataIndex,
        source: DocumentSource,
        sync_state: SyncStateStore,
        *,
        metrics: MetricsCollector | None = None,
        max_workers: int = INGEST_MAX_WORKERS,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        clock: Callable[[], float] = time.time,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.metadata_index = metadata_index
        self.source = source
        self.sync_state = sync_state
        self.metrics = metrics
        self.chunk_size = int(chunk_size)
        self.chunk_overlap = int(chunk_overlap)
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="ingest")
        self._sync_lock = threading.Lock()

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _embed_all(self, texts: list[str]) -> list[list[float]]:
        futures = [self._executor.submit(self.embedder.embed_document, text) for text in texts]
        return [future.result() for future in futures]

    def _build_chunks(
        self,
        path: str,
        last_modified: float,
        pieces: list[str],
        *,
        skip_texts: set[str] | None = None,
    ) -> list[Chunk]:
        ownership = parse_ownership(path)
        doc_class, confidence = classify_document(path)
        indexed = [(idx, text) for idx, text in enumerate(pieces) if text.strip() and text not in (skip_texts or set())]
        if not indexed:
            return []
        vectors = self._embed_all([text for _, text in indexed])
        chunks = []
        for (idx, text), vector in zip(indexed, vectors):
            chunks.append(
                Chunk(
                    id=make_chunk_id(path, last_modified, idx),
                    text=text,
                    session_scope=ownership.session_scope,
                    embedding=tuple(vector),
                    metadata={
                        "policy_id": path,
                        "doc_type": ownership.doc_type,
                        "doc_class": doc_class,
                        "confidence": f"{confidence:.2f}",
                        "user_id": ownership.user_id,
                        "role": ownership.role,
                        "source": path,
                        "chunk_index": str(idx),
                    },
                )
            )
        return chunks

    def _store(self, chunks: list[Chunk]):
        # Vectors first: an index entry must never reference an unwritten chunk.
        self.vector_store.save(chunks)
        self.metadata_index.add_batch(build_postings(chunks))

    def ingest_document(self, document: SourceDocument) -> int:
        """Returns the number of chunks written; 0 when the document was skipped."""
        if not str(document.content or "").strip():
            logger.warning("ingest_document_skipped", path=document.path, reason="empty")
            return 0
        pieces = chunk_text(document.content, self.chunk_size, self.chunk_overlap)
        try:
            chunks = self._build_chunks(document.path, document.last_modified, pieces)
        except EmbeddingError as exc:
            logger.warning("ingest_document_skipped", path=document.path, reason="embedding_failed", error=str(exc))
            return 0
        if not chunks:
            return 0
        try:
            self._store(chunks)
        except DimensionMismatchError as exc:
            logger.warning("ingest_document_skipped", path=document.path, reason="dimension_mismatch", error=str(exc))
            return 0
        except (sqlite3.Error, StorageUnavailableError) as exc:
            logger.warning("ingest_document_skipped", path=document.path, reason="storage_failed", error=str(exc))
            return 0
        logger.info("ingest_document_completed", path=document.path, chunks=len(chunks))
        return len(chunks)

    def _run(self, documents: Iterable[SourceDocument], cancel_event: threading.Event | None, mode: str) -> SyncResult:
        started_wall = self._clock()
        started = time.perf_counter()
        result = SyncResult(sync_timestamp=started_wall)
        for document in documents:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info("sync_cancelled", mode=mode, files_processed=result.files_processed)
                break
            added = self.ingest_document(document)
            if added:
                result.files_processed += 1
                result.chunks_added += added
                result.processed_files.append(document.path)
            else:
                result.skipped_files.append(document.path)
        result.duration_seconds = time.perf_counter() - started

        if not result.cancelled:
            self.sync_state.save(
                SyncState(
                    last_sync_timestamp=started_wall,
                    files_processed=result.files_processed,
                    last_sync_duration=result.duration_seconds,
                )
            )
        if self.metrics is not None:
            self.metrics.record_sync(result)
        logger.info(
            "sync_completed",
            mode=mode,
            files_processed=result.files_processed,
            chunks_added=result.chunks_added,
            skipped=len(result.skipped_files),
            cancelled=result.cancelled,
            duration_s=round(result.duration_seconds, 3),
        )
        return result

    def full_resync(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """Wipes the store and index, then ingests every document."""
        with self._sync_lock:
            self.vector_store.delete_all()
            self.metadata_index.delete_all()
            self.sync_state.reset()
            return self._run(self.source.iter_documents(), cancel_event, "full")

    def incremental_sync(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """Ingests documents modified after the last completed sync; never deletes."""
        with self._sync_lock:
            state = self.sync_state.load()
            modified_after = state.last_sync_timestamp if state.last_sync_timestamp > 0 else None
            return self._run(self.source.iter_documents(modified_after=modified_after), cancel_event, "incremental")

    def add_user_policy(self, user_id: str, text: str, title: str = "policy") -> int:
        """Uploads ad-hoc text into one customer's scope; chunks already stored for that user are skipped."""
        canonical = normalize_user_id(user_id)
        if canonical is None:
            raise ValueError("a concrete user id is required for a personal policy")
        if not str(text or "").strip():
            raise ValueError("policy text is empty")

        # Same title, different text must not collide on path::mtime::index.
        digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:10]
        path = f"users/{canonical}/{_slug(title)}-{digest}.txt"
        existing = {c.text for c in self.vector_store.get_by_scope(canonical) if c.session_scope == canonical}
        pieces = chunk_text(text, self.chunk_size, self.chunk_overlap)
        chunks = self._build_chunks(path, self._clock(), pieces, skip_texts=existing)
        skipped = len(pieces) - len(chunks)
        if chunks:
            self._store(chunks)
        logger.info("user_policy_added", user_id=canonical, path=path, chunks=len(chunks), duplicates=skipped)
        return len(chunks)

    def diagnostics(self) -> dict[str, Any]:
        terms = self.metadata_index.terms()
        doc_types = {term.split(":", 1)[1]: n for term, n in terms.items() if term.startswith("doc_type:")}
        return {
            "chunks": self.vector_store.count(),
            "dimension": self.vector_store.dimension(),
            "scopes": self.vector_store.scope_counts(),
            "doc_types": doc_types,
            "postings": self.metadata_index.count(),
            "terms": len(terms),
            "last_sync": asdict(self.sync_state.load()),
        }


class SyncScheduler:
    """Background thread running incremental syncs on a fixed interval."""

    def __init__(
        self,
        service: IngestionService,
        interval_s: float = SYNC_INTERVAL_S,
        startup_delay_s: float = SYNC_STARTUP_DELAY_S,
    ):
        self.service = service
        self.interval_s = max(0.01, float(interval_s))
        self.startup_delay_s = max(0.0, float(startup_delay_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("sync_scheduler_started", interval_s=self.interval_s, startup_delay_s=self.startup_delay_s)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("sync_scheduler_stopped")

    def _loop(self):
        if self._stop.wait(self.startup_delay_s):
            return
        while not self._stop.is_set():
            try:
                self.service.incremental_sync(cancel_event=self._stop)
            except Exception as exc:
                logger.error("sync_scheduler_run_failed", error=str(exc), exc_info=True)
            if self._stop.wait(self.interval_s):
                break
