"""
Runtime metrics for the context assembler.

Tracks: chat latency, context routes, retrieval hit rate, escalations, sync runs
and process memory. Each chat turn is appended to logs/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .models import ContextRoute, HybridContextResult, SyncResult
from .observability import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Thread-safe chat/sync metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path | None = None):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Chat turns.
        self._total_turns: int = 0
        self._total_latency_ms: float = 0.0
        self._max_latency_ms: float = 0.0
        self._generation_failures: int = 0
        self._routes: Counter[str] = Counter()
        self._escalations: Counter[str] = Counter()

        # Retrieval.
        self._retrieval_attempts: int = 0
        self._retrieval_hits: int = 0

        # Sync.
        self._sync_runs: int = 0
        self._sync_cancelled: int = 0
        self._chunks_ingested: int = 0
        self._last_sync_duration_s: float = 0.0

        self._log_path: Path | None = None
        if log_dir is not None:
            log_root = Path(log_dir)
            log_root.mkdir(parents=True, exist_ok=True)
            self._log_path = log_root / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    def record_turn(
        self,
        session_id: str,
        context: HybridContextResult,
        latency_ms: float,
        generation_ok: bool = True,
    ) -> None:
        route = context.route.value
        reason = context.escalation_reason
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "session_id": session_id,
            "route": route,
            "intent": context.intent,
            "confidence": round(float(context.confidence), 4),
            "escalation": reason,
            "latency_ms": round(latency_ms, 2),
            "generation_ok": generation_ok,
        }

        with self._lock:
            self._total_turns += 1
            self._total_latency_ms += latency_ms
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            self._routes[route] += 1
            if reason:
                self._escalations[reason] += 1
            if not generation_ok:
                self._generation_failures += 1
            if context.route == ContextRoute.RETRIEVAL:
                self._retrieval_attempts += 1
                if not context.is_low_confidence:
                    self._retrieval_hits += 1

        if self._log_path is None:
            return
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_log_write_failed", path=str(self._log_path), error=str(exc))

    def record_sync(self, result: SyncResult) -> None:
        with self._lock:
            self._sync_runs += 1
            if result.cancelled:
                self._sync_cancelled += 1
            self._chunks_ingested += int(result.chunks_added)
            self._last_sync_duration_s = float(result.duration_seconds)

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total_turns
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            max_lat = self._max_latency_ms
            routes = dict(self._routes)
            escalations = dict(self._escalations)
            attempts = self._retrieval_attempts
            hits = self._retrieval_hits
            generation_failures = self._generation_failures
            sync = {
                "runs": self._sync_runs,
                "cancelled": self._sync_cancelled,
                "chunks_ingested": self._chunks_ingested,
                "last_duration_s": round(self._last_sync_duration_s, 3),
            }

        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()

        return {
            "turns": {
                "total": total,
                "avg_latency_ms": round(avg_lat, 2),
                "max_latency_ms": round(max_lat, 2),
                "generation_failures": generation_failures,
                "uptime_seconds": round(uptime_s, 1),
            },
            "routes": routes,
            "retrieval": {
                "attempts": attempts,
                "hits": hits,
                "hit_rate_percent": round((hits / attempts * 100) if attempts > 0 else 0.0, 2),
            },
            "escalations": escalations,
            "sync": sync,
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
        }
