# /carecontext/retriever.py
"""
Filtered semantic search over the knowledge store.

Candidates come from the metadata index (posting lists), never from a scan of
the vector store, so a user only ever sees their own documents plus the shared
ones.
"""
import sqlite3
import time
from typing import Mapping

from .embeddings import EmbeddingClient
from .errors import CareContextError
from .identity import normalize_user_id
from .metadata_index import MetadataIndex, make_term
from .models import RetrievalResult
from .observability import get_logger
from .ranking import RankingWeights, distinct_sources, format_context, rank_chunks
from .vector_store import VectorStore

logger = get_logger(__name__)

GENERIC_AUDIENCE_TERM = make_term("role", "customer")
SHARED_USER_TERM = make_term("user", "global")


class PolicyRetriever:
    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        metadata_index: MetadataIndex,
        weights: RankingWeights | None = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.metadata_index = metadata_index
        self.weights = weights or RankingWeights()

    def candidate_ids(self, session_or_user_id: str, filters: Mapping[str, str] | None = None) -> set[str]:
        user_id = normalize_user_id(session_or_user_id)
        if user_id is None:
            candidates = self.metadata_index.get_ids(GENERIC_AUDIENCE_TERM)
        else:
            candidates = self.metadata_index.get_ids(make_term("user", user_id))
            candidates |= self.metadata_index.get_ids(SHARED_USER_TERM)

        for key, value in (filters or {}).items():
            if not candidates:
                break
            candidates &= self.metadata_index.get_ids(make_term(key, value))
        return candidates

    def retrieve(
        self,
        session_or_user_id: str,
        query_text: str,
        filters: Mapping[str, str] | None = None,
    ) -> RetrievalResult:
        started = time.perf_counter()
        try:
            query_vector = self.embedder.embed_query(query_text)
            candidates = self.candidate_ids(session_or_user_id, filters)
            if not candidates:
                logger.info("retrieval_candidates_empty", session_id=session_or_user_id, filters=dict(filters or {}))
                return RetrievalResult.not_found()

            # Sorted so equal scores rank deterministically.
            chunks = self.vector_store.get_by_ids(sorted(candidates))
            ranked = rank_chunks(query_vector, chunks, self.weights)
        except (CareContextError, sqlite3.Error) as exc:
            logger.warning("retrieval_failed", session_id=session_or_user_id, error=str(exc))
            return RetrievalResult.not_found()

        if not ranked:
            logger.info(
                "retrieval_below_floor",
                session_id=session_or_user_id,
                candidates=len(candidates),
                floor=self.weights.relevance_floor,
            )
            return RetrievalResult.not_found()

        result = RetrievalResult(
            context_text=format_context(ranked),
            found=True,
            confidence=ranked[0].score,
            sources=distinct_sources(ranked),
        )
        logger.info(
            "retrieval_completed",
            session_id=session_or_user_id,
            candidates=len(candidates),
            returned=len(ranked),
            confidence=round(result.confidence, 4),
            latency_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        return result
