"""
FastAPI service layer for the support-agent context assembler.

Exposes chat, context inspection, admin sync/upload/diagnostic and metrics
endpoints over the components built in `bootstrap`.

Run with:
    uvicorn carecontext.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .bootstrap import ContextServices, build_services, shutdown, warm_up
from .intent import IntentType
from .observability import get_logger

logger = get_logger(__name__)

_THREAD_POOL_WORKERS = 8


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User message")
    session_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Session identifier; customer sessions carry the user id (e.g. U101 or user-1)",
    )


class ChatResponse(BaseModel):
    session_id: str
    answer: str
    intent: str
    route: str
    confidence: float
    sources: list[str]
    escalated: bool
    escalation_reason: str = ""
    ticket_id: str = ""
    latency_ms: float


class ContextRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)
    intent: str = Field(default=IntentType.UNKNOWN.value, description="Intent label; unknown labels map to UNKNOWN")
    filters: dict[str, str] | None = None


class ContextResponse(BaseModel):
    context_text: str
    route: str
    intent: str
    confidence: float
    sources: list[str]
    is_low_confidence: bool
    is_frustrated: bool
    should_escalate: bool


class SyncRequest(BaseModel):
    full: bool = Field(default=False, description="Wipe the knowledge store and re-ingest everything")


class PolicyUploadRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    title: str = "policy"


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}

# Thread pool for running synchronous service calls off the event loop.
_executor = ThreadPoolExecutor(max_workers=_THREAD_POOL_WORKERS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services, run the initial sync, then start the periodic sync worker."""
    services = build_services()
    await warm_up(services)
    services.scheduler.start()
    _state["services"] = services

    yield  # Application is running.

    shutdown(services)
    _executor.shutdown(wait=False)
    _state.clear()


app = FastAPI(
    title="CareContext API",
    description="Retrieval-augmented context assembly for health-insurance support chat",
    version="1.0.0",
    lifespan=lifespan,
)


def _services() -> ContextServices:
    services = _state.get("services")
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not initialized.")
    return services


async def _run(fn, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, fn, *args)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/chat", response_model=ChatResponse)
async def chat_endpoint(request: ChatRequest):
    """Answer one chat turn, or hand it off when the user is frustrated or the policy has no answer."""
    services = _services()
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        turn = await _run(services.query_processor.process, request.session_id, request.message)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("chat_endpoint_failed", session_id=request.session_id, error=str(exc), exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return ChatResponse(
        session_id=turn.session_id,
        answer=turn.answer,
        intent=turn.intent,
        route=turn.route,
        confidence=round(turn.confidence, 4),
        sources=list(turn.sources),
        escalated=turn.escalated,
        escalation_reason=turn.escalation_reason,
        ticket_id=turn.ticket_id,
        latency_ms=round((loop.time() - start) * 1000.0, 2),
    )


@app.post("/context", response_model=ContextResponse)
async def context_endpoint(request: ContextRequest):
    """Build the context blob for a question without generating or recording anything."""
    services = _services()
    result = await _run(
        services.context_engine.build_context,
        request.session_id,
        request.question,
        IntentType.parse(request.intent),
        None,
        request.filters,
    )
    return ContextResponse(
        context_text=result.context_text,
        route=result.route.value,
        intent=result.intent,
        confidence=round(result.confidence, 4),
        sources=list(result.sources),
        is_low_confidence=result.is_low_confidence,
        is_frustrated=result.is_frustrated,
        should_escalate=result.should_escalate,
    )


@app.post("/admin/sync")
async def sync_endpoint(request: SyncRequest | None = None):
    """Run a full resync or an incremental sync of the knowledge base."""
    services = _services()
    full = bool(request and request.full)
    fn = services.ingestion.full_resync if full else services.ingestion.incremental_sync
    result = await _run(fn)
    return {"mode": "full" if full else "incremental", **asdict(result)}


@app.post("/admin/policies")
async def policy_upload_endpoint(request: PolicyUploadRequest):
    """Upload policy text into one customer's personal scope."""
    services = _services()
    try:
        added = await _run(services.ingestion.add_user_policy, request.user_id, request.text, request.title)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"user_id": request.user_id, "chunks_added": added}


@app.get("/admin/diagnostic")
async def diagnostic_endpoint():
    """Return knowledge-store and sync diagnostics."""
    services = _services()
    diagnostics = await _run(services.ingestion.diagnostics)
    diagnostics["scheduler_running"] = services.scheduler.running
    diagnostics["fallback_buffered_messages"] = services.fallback_buffer.size()
    return diagnostics


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return _services().metrics.get_summary()


def serve(host: str = "0.0.0.0", port: int = 8000):
    import uvicorn

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    serve()
