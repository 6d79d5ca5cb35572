"""
Embedding client used for both ingestion and query time.

Documents and queries are embedded with different task prefixes
(`search_document: ` / `search_query: `); similarity scores degrade badly when
the two sides are embedded the same way.
"""
from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol

from langchain_core.embeddings import Embeddings

from .config import (
    DOCUMENT_EMBED_PREFIX,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_TIMEOUT_S,
    OLLAMA_BASE_URL,
    QUERY_EMBED_PREFIX,
)
from .errors import EmbeddingError
from .observability import get_logger

logger = get_logger(__name__)


class EmbeddingClient(Protocol):
    def embed(self, text: str) -> list[float]:
        ...

    def embed_query(self, text: str) -> list[float]:
        ...

    def embed_document(self, text: str) -> list[float]:
        ...


def _validate_vector(raw) -> list[float]:
    try:
        vector = [float(x) for x in raw]
    except (TypeError, ValueError) as exc:
        raise EmbeddingError(f"embedding backend returned a non-numeric vector: {exc}") from exc
    if not vector:
        raise EmbeddingError("embedding backend returned an empty vector")
    if any(math.isnan(x) or math.isinf(x) for x in vector):
        raise EmbeddingError("embedding backend returned NaN/inf components")
    return vector


class LangChainEmbeddingClient:
    """
    Wraps any langchain `Embeddings` backend with the prefix convention,
    a bounded per-call timeout, and `EmbeddingError` as the only failure type.
    """

    def __init__(
        self,
        backend: Embeddings,
        *,
        timeout_s: float = EMBEDDING_TIMEOUT_S,
        document_prefix: str = DOCUMENT_EMBED_PREFIX,
        query_prefix: str = QUERY_EMBED_PREFIX,
        max_workers: int = 4,
    ):
        self.backend = backend
        self.timeout_s = float(timeout_s)
        self.document_prefix = str(document_prefix)
        self.query_prefix = str(query_prefix)
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="embed")

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def embed(self, text: str) -> list[float]:
        """Embeds text verbatim (no task prefix)."""
        payload = str(text or "")
        future = self._executor.submit(self.backend.embed_query, payload)
        try:
            raw = future.result(timeout=self.timeout_s)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("embedding_timeout", timeout_s=self.timeout_s, chars=len(payload))
            raise EmbeddingError(f"embedding call exceeded {self.timeout_s:.1f}s") from exc
        except EmbeddingError:
            raise
        except Exception as exc:
            logger.warning("embedding_backend_failed", error=str(exc), chars=len(payload))
            raise EmbeddingError(str(exc)) from exc
        return _validate_vector(raw)

    def embed_query(self, text: str) -> list[float]:
        return self.embed(f"{self.query_prefix}{text}")

    def embed_document(self, text: str) -> list[float]:
        return self.embed(f"{self.document_prefix}{text}")


def build_ollama_embedding_client(
    model: str = EMBEDDING_MODEL_NAME,
    base_url: str = OLLAMA_BASE_URL,
    timeout_s: float = EMBEDDING_TIMEOUT_S,
) -> LangChainEmbeddingClient:
    from langchain_ollama import OllamaEmbeddings

    backend = OllamaEmbeddings(
        model=model,
        base_url=base_url,
        client_kwargs={"timeout": timeout_s},
    )
    return LangChainEmbeddingClient(backend, timeout_s=timeout_s)
