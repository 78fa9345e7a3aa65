"""Cosine-similarity ranking for extended memories."""

import logging
from typing import List, Sequence

import numpy as np

from schemas.memory import ExtendedMemory

logger = logging.getLogger(__name__)

EMBEDDING_DTYPE = np.dtype("<f4")


def encode_embedding(embedding: Sequence[float]) -> bytes:
    """Pack an embedding as little-endian float32 bytes."""
    return np.asarray(embedding, dtype=EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: bytes) -> List[float]:
    """Unpack float32 bytes into a list of Python floats."""
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE).astype(float).tolist()


def normalize_embedding(embedding: Sequence[float]) -> List[float]:
    """Round-trip through storage precision so every backend returns the same values."""
    return decode_embedding(encode_embedding(embedding))


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 when either vector has zero norm."""
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def rank_by_similarity(
    query: Sequence[float],
    memories: List[ExtendedMemory],
    limit: int
) -> List[ExtendedMemory]:
    """
    Order memories by similarity to the query, most similar first.

    Memories without an embedding, or whose dimension differs from the
    query, are skipped. Equal scores fall back to most recent first.

    Args:
        query: Query embedding
        memories: Candidate memories
        limit: Maximum number of results

    Returns:
        Up to `limit` memories
    """
    query_vec = np.asarray(query, dtype=float)
    scored = []
    skipped = 0

    for memory in memories:
        if not memory.embedding:
            continue
        if len(memory.embedding) != len(query_vec):
            skipped += 1
            continue
        score = cosine_similarity(query_vec, np.asarray(memory.embedding, dtype=float))
        scored.append((score, memory))

    if skipped:
        logger.warning(f"Skipped {skipped} memories with mismatched embedding dimension")

    scored.sort(key=lambda item: (-item[0], -item[1].created_at, item[1].memory_id))
    return [memory for _, memory in scored[:limit]]
