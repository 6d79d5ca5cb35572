"""
Core data types shared across the knowledge store, memory and context engine.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from .config import DEFAULT_DOC_CONFIDENCE

GLOBAL_SCOPE = "GLOBAL"
# Scope label written by earlier ingestion runs; still readable as global.
LEGACY_GLOBAL_SCOPES = ("GLOBAL_POLICY",)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

MESSAGE_TYPE_QUESTION = "QUESTION"
MESSAGE_TYPE_ANSWER = "ANSWER"

SOURCE_VECTOR_RAG = "VECTOR_RAG"
SOURCE_LLM = "LLM"
SOURCE_USER = "USER"
SOURCE_BOT = "BOT"


@dataclass(frozen=True)
class Chunk:
    """A slice of a source document with its embedding and open metadata map."""

    id: str
    text: str
    session_scope: str = GLOBAL_SCOPE
    embedding: tuple[float, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def dimension(self) -> int:
        return len(self.embedding)

    def embedding_json(self) -> str:
        return json.dumps(list(self.embedding))

    def metadata_json(self) -> str:
        return json.dumps(self.metadata, ensure_ascii=True, sort_keys=True)


class ChunkMetadata(BaseModel):
    """
    Validated view over a chunk's metadata map, used by the scoring code.
    Storage keeps the raw string map; ranking never parses strings itself.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    policy_id: str = ""
    doc_type: str = "reference"
    confidence: float = DEFAULT_DOC_CONFIDENCE
    user_id: str = ""
    role: str = ""
    source: str = ""
    doc_class: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _parse_confidence(cls, value: Any) -> float:
        if value is None or value == "":
            return DEFAULT_DOC_CONFIDENCE
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return DEFAULT_DOC_CONFIDENCE
        if parsed != parsed:  # NaN
            return DEFAULT_DOC_CONFIDENCE
        return min(1.0, max(0.0, parsed))

    @field_validator("doc_type", mode="before")
    @classmethod
    def _normalize_doc_type(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text or "reference"

    @property
    def is_personal(self) -> bool:
        return self.doc_type == "personal"

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "ChunkMetadata":
        raw = {str(k): v for k, v in (chunk.metadata or {}).items()}
        view = cls.model_validate(raw)
        if not view.policy_id:
            view = view.model_copy(update={"policy_id": chunk.id})
        return view


@dataclass
class ConversationMessage:
    session_id: str
    role: str
    content: str
    timestamp_ms: int = 0
    message_type: str = ""
    intent: str = ""
    source: str = ""
    confidence: float = 0.0
    ticket_id: str = ""
    expires_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetrievalResult:
    context_text: str = ""
    found: bool = False
    confidence: float = 0.0
    sources: tuple[str, ...] = ()

    @classmethod
    def not_found(cls) -> "RetrievalResult":
        return cls(context_text="", found=False, confidence=0.0, sources=())


class ContextRoute(str, Enum):
    EXPLAIN_AGAIN = "EXPLAIN_AGAIN"
    FOLLOW_UP = "FOLLOW_UP"
    RETRIEVAL = "RETRIEVAL"
    NO_RETRIEVAL = "NO_RETRIEVAL"


@dataclass(frozen=True)
class HybridContextResult:
    context_text: str
    is_low_confidence: bool = False
    is_frustrated: bool = False
    confidence: float = 0.0
    sources: tuple[str, ...] = ()
    route: ContextRoute = ContextRoute.NO_RETRIEVAL
    intent: str = ""

    @property
    def should_escalate(self) -> bool:
        return self.is_frustrated or self.is_low_confidence

    @property
    def escalation_reason(self) -> str:
        # Frustration outranks a confidence miss.
        if self.is_frustrated:
            return "frustration"
        if self.is_low_confidence:
            return "low_confidence"
        return ""


@dataclass(frozen=True)
class SourceDocument:
    path: str
    last_modified: float
    content: str


@dataclass
class SyncResult:
    files_processed: int = 0
    chunks_added: int = 0
    duration_seconds: float = 0.0
    sync_timestamp: float = 0.0
    processed_files: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass(frozen=True)
class SyncState:
    last_sync_timestamp: float = 0.0
    files_processed: int = 0
    last_sync_duration: float = 0.0
