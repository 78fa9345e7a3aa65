"""Tests for embedding encoding and similarity ranking."""

import numpy as np

from database.similarity import (
    cosine_similarity,
    decode_embedding,
    encode_embedding,
    normalize_embedding,
    rank_by_similarity,
)
from schemas.memory import ExtendedMemory


def make_memory(memory_id, embedding, created_at=1):
    return ExtendedMemory(
        memory_id=memory_id,
        user_id="u1",
        conversation_summary=f"summary {memory_id}",
        embedding=embedding,
        created_at=created_at,
    )


class TestEmbeddingEncoding:
    """Test float32 storage encoding."""

    def test_encoded_size(self):
        """Test each value takes four bytes."""
        assert len(encode_embedding([0.1, 0.2, 0.3])) == 12

    def test_normalized_values_survive_storage(self):
        """Test normalized embeddings are unchanged by another encode/decode."""
        normalized = normalize_embedding([0.1, 0.2, 0.3])

        assert decode_embedding(encode_embedding(normalized)) == normalized
        assert normalized[0] != 0.1  # float32 precision


class TestCosineSimilarity:
    """Test the similarity metric."""

    def test_identical_and_orthogonal(self):
        """Test the metric's extremes."""
        a = np.array([1.0, 0.0])

        assert cosine_similarity(a, np.array([2.0, 0.0])) == 1.0
        assert cosine_similarity(a, np.array([0.0, 3.0])) == 0.0
        assert cosine_similarity(a, np.array([-1.0, 0.0])) == -1.0

    def test_zero_vector_scores_zero(self):
        """Test zero-norm vectors do not divide by zero."""
        assert cosine_similarity(np.zeros(3), np.array([1.0, 2.0, 3.0])) == 0.0


class TestRankBySimilarity:
    """Test memory ranking."""

    def test_orders_by_similarity(self):
        """Test most similar memories come first."""
        memories = [
            make_memory("far", [0.0, 1.0]),
            make_memory("near", [1.0, 0.1]),
            make_memory("middle", [1.0, 1.0]),
        ]

        ranked = rank_by_similarity([1.0, 0.0], memories, limit=5)

        assert [m.memory_id for m in ranked] == ["near", "middle", "far"]

    def test_limit(self):
        """Test results are capped at the limit."""
        memories = [make_memory(str(i), [1.0, float(i)]) for i in range(5)]

        assert len(rank_by_similarity([1.0, 0.0], memories, limit=2)) == 2

    def test_skips_missing_and_mismatched_embeddings(self):
        """Test memories that cannot be scored are left out."""
        memories = [
            make_memory("none", None),
            make_memory("short", [1.0]),
            make_memory("ok", [1.0, 0.0]),
        ]

        ranked = rank_by_similarity([1.0, 0.0], memories, limit=5)

        assert [m.memory_id for m in ranked] == ["ok"]

    def test_ties_prefer_most_recent(self):
        """Test equal scores fall back to newest first."""
        memories = [
            make_memory("old", [1.0, 0.0], created_at=1),
            make_memory("new", [2.0, 0.0], created_at=2),
        ]

        ranked = rank_by_similarity([1.0, 0.0], memories, limit=5)

        assert [m.memory_id for m in ranked] == ["new", "old"]
