"""
Similarity and re-ranking for retrieved chunks.

final = similarity_weight * cosine + confidence_weight * doc_confidence,
multiplied by the personal boost when the chunk belongs to the user.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from .config import (
    CONFIDENCE_WEIGHT,
    PERSONAL_BOOST,
    RELEVANCE_FLOOR,
    RETRIEVAL_TOP_K,
    SIMILARITY_WEIGHT,
)
from .models import Chunk, ChunkMetadata


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """0.0 for empty, zero-magnitude or mismatched-dimension inputs."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a <= 0.0 or norm_b <= 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


@dataclass(frozen=True)
class ScoredChunk:
    chunk: Chunk
    meta: ChunkMetadata
    similarity: float
    score: float

    @property
    def policy_id(self) -> str:
        return self.meta.policy_id


@dataclass(frozen=True)
class RankingWeights:
    relevance_floor: float = RELEVANCE_FLOOR
    similarity_weight: float = SIMILARITY_WEIGHT
    confidence_weight: float = CONFIDENCE_WEIGHT
    personal_boost: float = PERSONAL_BOOST
    top_k: int = RETRIEVAL_TOP_K

    def score(self, similarity: float, meta: ChunkMetadata) -> float:
        value = self.similarity_weight * similarity + self.confidence_weight * meta.confidence
        if meta.is_personal:
            value *= self.personal_boost
        return value


def rank_chunks(
    query_vector: Sequence[float],
    chunks: Iterable[Chunk],
    weights: RankingWeights | None = None,
) -> list[ScoredChunk]:
    """Drops chunks at or below the relevance floor and returns the top-k by final score."""
    weights = weights or RankingWeights()
    scored: list[ScoredChunk] = []
    for chunk in chunks:
        similarity = cosine_similarity(query_vector, chunk.embedding)
        if similarity <= weights.relevance_floor:
            continue
        meta = ChunkMetadata.from_chunk(chunk)
        scored.append(ScoredChunk(chunk=chunk, meta=meta, similarity=similarity, score=weights.score(similarity, meta)))
    # sorted() is stable, so ties keep fetch order.
    scored = sorted(scored, key=lambda item: item.score, reverse=True)
    return scored[: max(1, int(weights.top_k))]


def format_context(ranked: Sequence[ScoredChunk]) -> str:
    return "\n\n".join(f"[{item.policy_id}] {item.chunk.text}" for item in ranked)


def distinct_sources(ranked: Sequence[ScoredChunk]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(item.policy_id for item in ranked))
