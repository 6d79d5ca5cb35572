# /carecontext/config.py
"""
Centralized configuration for the support-agent context assembler.
Includes model endpoints, storage paths, ranking weights and memory tuning.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Backends ---
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "nomic-embed-text")
GENERATION_MODEL_NAME = os.getenv("GENERATION_MODEL_NAME", "gemma3:4b")
GENERATION_MAX_TOKENS = _env_int("GENERATION_MAX_TOKENS", 400, minimum=16)
# nomic-embed-text is trained with asymmetric task prefixes.
DOCUMENT_EMBED_PREFIX = os.getenv("DOCUMENT_EMBED_PREFIX", "search_document: ")
QUERY_EMBED_PREFIX = os.getenv("QUERY_EMBED_PREFIX", "search_query: ")

# --- Timeouts ---
EMBEDDING_TIMEOUT_S = _env_float("EMBEDDING_TIMEOUT_S", 10.0, minimum=0.1)
GENERATION_TIMEOUT_S = _env_float("GENERATION_TIMEOUT_S", 60.0, minimum=0.1)
STREAM_POLL_INTERVAL_S = _env_float("STREAM_POLL_INTERVAL_S", 0.20, minimum=0.01)
# Set to 0 to disable stall timeout and prefer continuous streaming.
STREAM_IDLE_TIMEOUT_S = _env_float("STREAM_IDLE_TIMEOUT_S", 30.0, minimum=0.0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/carecontext/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

DATA_DIR = Path(os.getenv("DATA_DIR", str(_DATA_DIR)))
KNOWLEDGE_DIR = Path(os.getenv("KNOWLEDGE_DIR", str(DATA_DIR / "knowledge_base")))
VECTOR_DB_PATH = Path(os.getenv("VECTOR_DB_PATH", str(DATA_DIR / "vector_store.sqlite")))
MEMORY_DB_PATH = Path(os.getenv("MEMORY_DB_PATH", str(DATA_DIR / "conversation_memory.sqlite")))
SYNC_STATE_DB_PATH = Path(os.getenv("SYNC_STATE_DB_PATH", str(DATA_DIR / "sync_state.sqlite")))

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 1000, minimum=16)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 200, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 5)

# --- Retrieval / Ranking ---
RELEVANCE_FLOOR = _env_float("RELEVANCE_FLOOR", 0.45, minimum=0.0)
SIMILARITY_WEIGHT = _env_float("SIMILARITY_WEIGHT", 0.7, minimum=0.0)
CONFIDENCE_WEIGHT = _env_float("CONFIDENCE_WEIGHT", 0.3, minimum=0.0)
PERSONAL_BOOST = _env_float("PERSONAL_BOOST", 1.5, minimum=1.0)
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 3, minimum=1)
DEFAULT_DOC_CONFIDENCE = _env_float("DEFAULT_DOC_CONFIDENCE", 0.5, minimum=0.0)
VECTOR_CACHE_MAXSIZE = _env_int("VECTOR_CACHE_MAXSIZE", 5000, minimum=16)

# --- Memory Tuning ---
MEMORY_HISTORY_LIMIT = _env_int("MEMORY_HISTORY_LIMIT", 10, minimum=1)
MEMORY_CONTEXT_TURNS = _env_int("MEMORY_CONTEXT_TURNS", 5, minimum=1)
MEMORY_CACHE_TTL_S = _env_float("MEMORY_CACHE_TTL_S", 120.0, minimum=0.0)
MESSAGE_TTL_HOURS = _env_int("MESSAGE_TTL_HOURS", 24, minimum=1)
FALLBACK_RING_SIZE = _env_int("FALLBACK_RING_SIZE", 50, minimum=1)
FRUSTRATION_THRESHOLD = _env_int("FRUSTRATION_THRESHOLD", 3, minimum=1)

# --- Ingestion / Sync ---
INGEST_MAX_WORKERS = _env_int("INGEST_MAX_WORKERS", 4, minimum=1)
SYNC_INTERVAL_S = _env_float("SYNC_INTERVAL_S", 300.0, minimum=1.0)
SYNC_STARTUP_DELAY_S = _env_float("SYNC_STARTUP_DELAY_S", 30.0, minimum=0.0)
SYNC_ON_STARTUP = _env_bool("SYNC_ON_STARTUP", True)

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
KNOWLEDGE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "logs" / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
