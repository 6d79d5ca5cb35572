import unittest

from carecontext.models import Chunk, ChunkMetadata
from carecontext.ranking import (
    RankingWeights,
    cosine_similarity,
    distinct_sources,
    format_context,
    rank_chunks,
)


def _chunk(chunk_id, embedding, **metadata):
    return Chunk(id=chunk_id, text=f"text of {chunk_id}", embedding=tuple(embedding), metadata=metadata)


class TestCosineSimilarity(unittest.TestCase):
    def test_identity_is_one(self):
        for vector in ([1.0, 0.0], [3.0, 4.0], [0.2, 0.5, 0.1, 0.9]):
            self.assertAlmostEqual(cosine_similarity(vector, vector), 1.0, places=9)

    def test_zero_vector_and_dimension_mismatch_score_zero(self):
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 2.0]), 0.0)
        self.assertEqual(cosine_similarity([1.0, 2.0], [0.0, 0.0]), 0.0)
        self.assertEqual(cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]), 0.0)
        self.assertEqual(cosine_similarity([], []), 0.0)

    def test_symmetric(self):
        a, b = [0.3, -0.2, 0.9], [0.1, 0.4, 0.5]
        self.assertEqual(cosine_similarity(a, b), cosine_similarity(b, a))


class TestChunkMetadataView(unittest.TestCase):
    def test_defaults_and_policy_id_fallback(self):
        meta = ChunkMetadata.from_chunk(_chunk("c1", [1.0]))
        self.assertEqual(meta.policy_id, "c1")
        self.assertEqual(meta.doc_type, "reference")
        self.assertEqual(meta.confidence, 0.5)

    def test_bad_confidence_values_fall_back_or_clamp(self):
        self.assertEqual(ChunkMetadata.from_chunk(_chunk("c", [1.0], confidence="abc")).confidence, 0.5)
        self.assertEqual(ChunkMetadata.from_chunk(_chunk("c", [1.0], confidence="1.7")).confidence, 1.0)
        self.assertEqual(ChunkMetadata.from_chunk(_chunk("c", [1.0], confidence="-2")).confidence, 0.0)
        self.assertEqual(ChunkMetadata.from_chunk(_chunk("c", [1.0], confidence="nan")).confidence, 0.5)

    def test_doc_type_is_case_insensitive(self):
        self.assertTrue(ChunkMetadata.from_chunk(_chunk("c", [1.0], doc_type="Personal")).is_personal)


class TestRankChunks(unittest.TestCase):
    def test_personal_outranks_reference_at_equal_similarity_and_confidence(self):
        reference = _chunk("ref", [1.0, 0.0], doc_type="reference", confidence="0.8", policy_id="faq")
        personal = _chunk("mine", [1.0, 0.0], doc_type="personal", confidence="0.8", policy_id="policy")
        ranked = rank_chunks([1.0, 0.0], [reference, personal])
        self.assertEqual([r.chunk.id for r in ranked], ["mine", "ref"])
        self.assertGreater(ranked[0].score, ranked[1].score)
        self.assertAlmostEqual(ranked[0].score, ranked[1].score * 1.5, places=9)

    def test_final_score_blends_similarity_and_confidence(self):
        ranked = rank_chunks([1.0, 0.0], [_chunk("a", [1.0, 0.0], confidence="1.0")])
        self.assertAlmostEqual(ranked[0].score, 0.7 * 1.0 + 0.3 * 1.0, places=9)

    def test_chunks_at_or_below_floor_are_dropped(self):
        orthogonal = _chunk("o", [0.0, 1.0])
        weak = _chunk("w", [0.4, 0.9165])  # cosine ~0.4
        self.assertEqual(rank_chunks([1.0, 0.0], [orthogonal, weak]), [])

    def test_dimension_mismatch_scores_zero_instead_of_raising(self):
        self.assertEqual(rank_chunks([1.0, 0.0], [_chunk("bad", [1.0, 0.0, 0.0])]), [])

    def test_equal_scores_keep_input_order_and_top_k_applies(self):
        chunks = [_chunk(f"c{i}", [1.0, 0.0], confidence="0.5") for i in range(5)]
        ranked = rank_chunks([1.0, 0.0], chunks)
        self.assertEqual([r.chunk.id for r in ranked], ["c0", "c1", "c2"])

    def test_weights_are_configurable(self):
        weights = RankingWeights(top_k=1, personal_boost=1.0)
        ranked = rank_chunks(
            [1.0, 0.0],
            [_chunk("a", [1.0, 0.0], confidence="0.9"), _chunk("b", [1.0, 0.0], confidence="0.1", doc_type="personal")],
            weights,
        )
        self.assertEqual([r.chunk.id for r in ranked], ["a"])

    def test_context_tags_and_distinct_sources(self):
        chunks = [
            _chunk("p1", [1.0, 0.0], policy_id="POL-1", confidence="1.0"),
            _chunk("p2", [1.0, 0.0], policy_id="POL-1", confidence="0.9"),
            _chunk("f1", [1.0, 0.0], policy_id="FAQ", confidence="0.8"),
        ]
        ranked = rank_chunks([1.0, 0.0], chunks)
        self.assertEqual(distinct_sources(ranked), ("POL-1", "FAQ"))
        context = format_context(ranked)
        self.assertTrue(context.startswith("[POL-1] text of p1"))
        self.assertEqual(context.count("\n\n"), 2)


if __name__ == "__main__":
    unittest.main()
