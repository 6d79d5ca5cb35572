"""Fixed-size overlapping character windows for document ingestion."""
from __future__ import annotations

import math

from .config import CHUNK_OVERLAP, CHUNK_SIZE


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> list[str]:
    """
    Splits text into windows of `chunk_size` characters whose starts advance by
    `chunk_size - overlap`. Slicing is purely positional; the last window may be
    shorter. Every character lands in at least one window.
    """
    size = int(chunk_size)
    step_back = int(overlap)
    if size <= 0:
        raise ValueError("chunk_size must be positive")
    if step_back < 0 or step_back >= size:
        raise ValueError("overlap must satisfy 0 <= overlap < chunk_size")

    payload = str(text or "")
    if not payload:
        return []

    stride = size - step_back
    chunks: list[str] = []
    start = 0
    while True:
        end = min(start + size, len(payload))
        chunks.append(payload[start:end])
        if end >= len(payload):
            break
        start += stride
    return chunks


def expected_chunk_count(text_length: int, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> int:
    if text_length <= 0:
        return 0
    stride = int(chunk_size) - int(overlap)
    return max(1, math.ceil((int(text_length) - int(overlap)) / stride))
