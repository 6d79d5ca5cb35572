"""
Process wiring. Constructors only open SQLite files; the first sync happens in
`warm_up`, which the process startup sequence awaits explicitly.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from .config import (
    DATA_DIR,
    KNOWLEDGE_DIR,
    MEMORY_DB_PATH,
    SYNC_INTERVAL_S,
    SYNC_ON_STARTUP,
    SYNC_STARTUP_DELAY_S,
    SYNC_STATE_DB_PATH,
    VECTOR_DB_PATH,
)
from .context_engine import HybridContextEngine
from .conversation_memory import ConversationMemory, FallbackMessageBuffer
from .embeddings import EmbeddingClient, build_ollama_embedding_client
from .generation import GenerationClient, build_ollama_generation_client
from .ingestion import DocumentSource, IngestionService, LocalDirectorySource, SyncScheduler, SyncStateStore
from .intent import IntentClassifier
from .metadata_index import MetadataIndex
from .metrics import MetricsCollector
from .models import SyncResult
from .observability import get_logger
from .query_processor import EscalationHandler, QueryProcessor
from .retriever import PolicyRetriever
from .vector_store import VectorStore

logger = get_logger(__name__)


@dataclass
class ContextServices:
    embedder: EmbeddingClient
    generator: GenerationClient
    vector_store: VectorStore
    metadata_index: MetadataIndex
    fallback_buffer: FallbackMessageBuffer
    memory: ConversationMemory
    retriever: PolicyRetriever
    context_engine: HybridContextEngine
    intent_classifier: IntentClassifier
    sync_state: SyncStateStore
    ingestion: IngestionService
    scheduler: SyncScheduler
    query_processor: QueryProcessor
    metrics: MetricsCollector


def build_services(
    *,
    embedder: EmbeddingClient | None = None,
    generator: GenerationClient | None = None,
    source: DocumentSource | None = None,
    vector_db_path: str | Path | None = None,
    memory_db_path: str | Path | None = None,
    sync_state_db_path: str | Path | None = None,
    metrics_dir: str | Path | None = None,
    escalation_handler: EscalationHandler | None = None,
    sync_interval_s: float = SYNC_INTERVAL_S,
    sync_startup_delay_s: float = SYNC_STARTUP_DELAY_S,
) -> ContextServices:
    embedder = embedder or build_ollama_embedding_client()
    generator = generator or build_ollama_generation_client()
    vector_path = Path(vector_db_path) if vector_db_path else VECTOR_DB_PATH

    metrics = MetricsCollector(metrics_dir if metrics_dir is not None else DATA_DIR / "logs")
    vector_store = VectorStore(vector_path)
    metadata_index = MetadataIndex(vector_path)
    fallback_buffer = FallbackMessageBuffer()
    memory = ConversationMemory(memory_db_path or MEMORY_DB_PATH, fallback_buffer)
    retriever = PolicyRetriever(embedder, vector_store, metadata_index)
    context_engine = HybridContextEngine(memory, retriever)
    intent_classifier = IntentClassifier(generator)
    sync_state = SyncStateStore(sync_state_db_path or SYNC_STATE_DB_PATH)
    ingestion = IngestionService(
        embedder,
        vector_store,
        metadata_index,
        source or LocalDirectorySource(KNOWLEDGE_DIR),
        sync_state,
        metrics=metrics,
    )
    scheduler = SyncScheduler(ingestion, interval_s=sync_interval_s, startup_delay_s=sync_startup_delay_s)
    query_processor = QueryProcessor(
        memory=memory,
        context_engine=context_engine,
        intent_classifier=intent_classifier,
        generator=generator,
        metrics=metrics,
        escalation_handler=escalation_handler,
    )
    logger.info("services_built", vector_db=str(vector_path), chunks=vector_store.count())
    return ContextServices(
        embedder=embedder,
        generator=generator,
        vector_store=vector_store,
        metadata_index=metadata_index,
        fallback_buffer=fallback_buffer,
        memory=memory,
        retriever=retriever,
        context_engine=context_engine,
        intent_classifier=intent_classifier,
        sync_state=sync_state,
        ingestion=ingestion,
        scheduler=scheduler,
        query_processor=query_processor,
        metrics=metrics,
    )


async def warm_up(services: ContextServices, *, sync: bool = SYNC_ON_STARTUP) -> SyncResult | None:
    """Runs the initial incremental sync and memory purge off the event loop."""
    await asyncio.to_thread(services.memory.purge_expired)
    if not sync:
        return None
    try:
        return await asyncio.to_thread(services.ingestion.incremental_sync)
    except Exception as exc:
        # A cold knowledge base still serves chats; retrieval reports low confidence.
        logger.error("warm_up_sync_failed", error=str(exc), exc_info=True)
        return None


def shutdown(services: ContextServices):
    services.scheduler.stop()
    services.ingestion.close()
    for component in (services.embedder, services.generator):
        close = getattr(component, "close", None)
        if callable(close):
            close()
    services.memory.close()
    services.metadata_index.close()
    services.vector_store.close()
    services.sync_state.close()
    logger.info("services_shutdown")
