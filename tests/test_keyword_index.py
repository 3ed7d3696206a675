"""
Tests for the BM25 Keyword Index

Tests cover:
- Tokenization
- BM25 formula and length normalization
- Snapshot consistency across mutations
- Reindex, remove and clear
"""

import math

import pytest
from rank_bm25 import BM25Okapi

from chartrag.rag.keyword_index import KeywordIndex, tokenize


@pytest.fixture
def index(chunk_factory):
    idx = KeywordIndex()
    idx.add_many(
        [
            chunk_factory("c1", "Metformin started for diabetes."),
            chunk_factory("c2", "Metformin dose increased after review of diabetes labs and diet."),
            chunk_factory("c3", "Knee pain treated with ibuprofen."),
        ]
    )
    return idx


class TestTokenize:
    @pytest.mark.unit
    def test_lowercase_alphanumeric(self):
        assert tokenize("HbA1c 8.2% on 2024-05-01") == ["hba1c", "2024", "05", "01"]

    @pytest.mark.unit
    def test_drops_stop_words_and_single_chars(self):
        assert tokenize("The patient is on a low dose of x") == ["patient", "low", "dose"]

    @pytest.mark.unit
    def test_empty(self):
        assert tokenize("") == []


class TestBM25:
    @pytest.mark.unit
    def test_idf_formula(self, index):
        snap = index.snapshot()
        # N=3, df(metformin)=2
        assert snap.idf("metformin") == pytest.approx(math.log(1 + (3 - 2 + 0.5) / (2 + 0.5)))

    @pytest.mark.unit
    def test_score_matches_formula(self, chunk_factory):
        k1, b = 1.2, 0.75
        idx = KeywordIndex(k1=k1, b=b)
        idx.add_many(
            [
                chunk_factory("c1", "Metformin started for diabetes."),
                chunk_factory("c2", "Metformin dose increased after review of diabetes labs."),
                chunk_factory("c3", "Knee pain treated with ibuprofen."),
            ]
        )
        snap = idx.snapshot()
        dl = snap.doc_lengths["c1"]
        avgdl = snap.average_document_length
        expected = snap.idf("metformin") * (1 * (k1 + 1)) / (1 + k1 * (1 - b + b * dl / avgdl))
        assert snap.bm25(["metformin"], "c1") == pytest.approx(expected)

    @pytest.mark.unit
    def test_scores_come_from_okapi_model(self, index):
        snap = index.snapshot()
        assert isinstance(snap.model, BM25Okapi)
        assert snap.model.corpus_size == 3

        full = snap.model.get_scores(["metformin", "diabetes"])
        scores = snap.score_candidates(["metformin", "diabetes"])
        for chunk_id, score in scores.items():
            assert score == pytest.approx(full[snap.positions[chunk_id]])

    @pytest.mark.unit
    def test_length_normalization(self, chunk_factory):
        """Equal term frequency: the shortest document ranks highest."""
        idx = KeywordIndex()
        idx.add_many(
            [
                chunk_factory("long", "metformin " + "review of systems unremarkable " * 6),
                chunk_factory("short", "metformin refill"),
                chunk_factory("medium", "metformin continued, kidney function stable"),
            ]
        )
        scores = idx.snapshot().score_candidates(["metformin"])
        ranked = sorted(scores, key=scores.get, reverse=True)
        assert ranked == ["short", "medium", "long"]

    @pytest.mark.unit
    @pytest.mark.parametrize("tf", [1, 2, 3, 4])
    def test_monotonic_in_term_frequency(self, chunk_factory, tf):
        """More occurrences at equal length never lower the score."""

        def score_with(count):
            idx = KeywordIndex()
            words = ["metformin"] * count + ["filler"] * (6 - count)
            idx.add_many(
                [
                    chunk_factory("target", " ".join(words)),
                    chunk_factory("other", "unrelated note about knee pain"),
                ]
            )
            return idx.snapshot().bm25(["metformin"], "target")

        assert score_with(tf + 1) >= score_with(tf)

    @pytest.mark.unit
    def test_candidate_restriction(self, index):
        scores = index.snapshot().score_candidates(["metformin"], candidate_ids={"c2", "c3"})
        assert set(scores) == {"c2"}

    @pytest.mark.unit
    def test_no_matching_terms(self, index):
        assert index.snapshot().score_candidates(["warfarin"]) == {}
        assert index.snapshot().score_candidates([]) == {}


class TestSnapshots:
    @pytest.mark.unit
    def test_corpus_statistics(self, index):
        snap = index.snapshot()
        assert snap.document_count == 3
        assert snap.total_document_length == sum(snap.doc_lengths.values())
        assert snap.average_document_length == snap.total_document_length / 3

    @pytest.mark.unit
    def test_captured_snapshot_unaffected_by_writes(self, index, chunk_factory):
        before = index.snapshot()
        index.add(chunk_factory("c4", "Metformin held before contrast imaging."))

        assert before.document_count == 3
        assert before.document_frequency("metformin") == 2
        assert "c4" not in before.chunks
        assert before.model.corpus_size == 3

        after = index.snapshot()
        assert after.generation == before.generation + 1
        assert after.document_frequency("metformin") == 3
        assert after.model.corpus_size == 4
        assert after.score_candidates(["metformin"]).keys() == {"c1", "c2", "c4"}

    @pytest.mark.unit
    def test_batch_publishes_one_generation(self, chunk_factory):
        idx = KeywordIndex()
        start = idx.snapshot().generation
        idx.add_many([chunk_factory(f"c{i}", f"note number {i} text") for i in range(5)])
        assert idx.snapshot().generation == start + 1

    @pytest.mark.unit
    def test_reindex_replaces_chunk(self, index, chunk_factory):
        index.add(chunk_factory("c1", "Insulin glargine nightly."))
        snap = index.snapshot()
        assert snap.document_count == 3
        assert snap.document_frequency("metformin") == 1
        assert snap.document_frequency("insulin") == 1
        assert snap.total_document_length == sum(snap.doc_lengths.values())

    @pytest.mark.unit
    def test_remove(self, index):
        assert index.remove("c3") is True
        assert index.remove("c3") is False
        snap = index.snapshot()
        assert "c3" not in index
        assert snap.document_frequency("ibuprofen") == 0
        assert "ibuprofen" not in snap.postings
        assert snap.total_document_length == sum(snap.doc_lengths.values())

    @pytest.mark.unit
    def test_clear(self, index):
        index.clear()
        assert len(index) == 0
        assert index.snapshot().average_document_length == 0.0
