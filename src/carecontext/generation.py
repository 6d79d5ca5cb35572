"""Generation client: prompt -> text, prompt -> token stream."""
from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Iterator, Protocol

from langchain_core.language_models import BaseLLM

from .config import (
    GENERATION_MAX_TOKENS,
    GENERATION_MODEL_NAME,
    GENERATION_TIMEOUT_S,
    OLLAMA_BASE_URL,
    STREAM_IDLE_TIMEOUT_S,
    STREAM_POLL_INTERVAL_S,
)
from .errors import GenerationError
from .observability import get_logger

logger = get_logger(__name__)


class GenerationClient(Protocol):
    def generate(self, prompt: str) -> str:
        ...

    def stream(self, prompt: str) -> Iterator[str]:
        ...


def _coerce_chunk(chunk: Any) -> str:
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    text = getattr(chunk, "text", None)
    if isinstance(text, str):
        return text
    return str(chunk)


class LangChainGenerationClient:
    """Wraps a langchain LLM with bounded timeouts; failures surface as `GenerationError`."""

    def __init__(
        self,
        llm: BaseLLM,
        *,
        timeout_s: float = GENERATION_TIMEOUT_S,
        idle_timeout_s: float = STREAM_IDLE_TIMEOUT_S,
        poll_interval_s: float = STREAM_POLL_INTERVAL_S,
    ):
        self.llm = llm
        self.timeout_s = float(timeout_s)
        self.idle_timeout_s = float(idle_timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="generate")

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def generate(self, prompt: str) -> str:
        future = self._executor.submit(self.llm.invoke, str(prompt))
        try:
            raw = future.result(timeout=self.timeout_s)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("generation_timeout", timeout_s=self.timeout_s)
            raise GenerationError(f"generation exceeded {self.timeout_s:.1f}s") from exc
        except Exception as exc:
            logger.warning("generation_failed", error=str(exc))
            raise GenerationError(str(exc)) from exc
        return _coerce_chunk(raw).strip()

    def stream(self, prompt: str) -> Iterator[str]:
        """
        Yields tokens as the backend produces them. The iterator is single-use.
        Raises `GenerationError` when the backend fails or stays silent longer
        than the idle timeout.
        """
        stream_queue: queue.Queue[tuple[str, Any]] = queue.Queue()
        stream_done = threading.Event()

        def _stream_worker():
            try:
                for chunk in self.llm.stream(str(prompt)):
                    stream_queue.put(("chunk", chunk))
            except Exception as exc:
                stream_queue.put(("error", exc))
            finally:
                stream_done.set()

        worker = threading.Thread(target=_stream_worker, daemon=True)
        worker.start()

        last_event_at = time.perf_counter()
        try:
            while True:
                try:
                    event, chunk = stream_queue.get(timeout=self.poll_interval_s)
                    last_event_at = time.perf_counter()
                except queue.Empty:
                    if stream_done.is_set() and stream_queue.empty():
                        break
                    if self.idle_timeout_s > 0.0 and (time.perf_counter() - last_event_at) > self.idle_timeout_s:
                        logger.warning("generation_stream_stalled", idle_timeout_s=self.idle_timeout_s)
                        raise GenerationError("streaming response stalled")
                    continue

                if event == "error":
                    logger.warning("generation_stream_failed", error=str(chunk))
                    raise GenerationError(str(chunk)) from chunk
                text = _coerce_chunk(chunk)
                if text:
                    yield text
        finally:
            worker.join(timeout=1.0)


def build_ollama_generation_client(
    model: str = GENERATION_MODEL_NAME,
    base_url: str = OLLAMA_BASE_URL,
    timeout_s: float = GENERATION_TIMEOUT_S,
) -> LangChainGenerationClient:
    from langchain_ollama import OllamaLLM

    llm = OllamaLLM(
        model=model,
        base_url=base_url,
        num_predict=GENERATION_MAX_TOKENS,
        client_kwargs={"timeout": timeout_s},
    )
    return LangChainGenerationClient(llm, timeout_s=timeout_s)
