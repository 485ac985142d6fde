"""
Tests for the BM25 index and tokenizer.

Run: pytest apps/nyla/rag/tests/test_bm25.py -v
"""

from __future__ import annotations

import pytest


DOCS = [
    ("d1", "Solana transaction fees are very low, about 0.00025 SOL per transaction."),
    ("d2", "Ethereum gas fees depend on network congestion."),
    ("d3", "NYLA supports sending tokens through chat commands."),
    ("d4", "Solana 手续费 很低"),
]


@pytest.fixture
def index():
    from apps.nyla.rag.bm25 import BM25Index
    return BM25Index.build(DOCS)


class TestTokenize:
    """Tests for the language-aware tokenizer."""

    def test_lowercases_and_drops_stopwords(self):
        from apps.nyla.rag.bm25 import tokenize

        assert tokenize("Solana fees ARE low") == ["solana", "fees", "low"]

    def test_cjk_run_emits_word_and_characters(self):
        from apps.nyla.rag.bm25 import tokenize

        assert tokenize("手续费") == ["手续费", "手", "续", "费"]

    def test_mixed_script(self):
        from apps.nyla.rag.bm25 import tokenize

        tokens = tokenize("Solana 手续费")
        assert tokens[0] == "solana"
        assert "手续费" in tokens
        assert "费" in tokens

    def test_empty(self):
        from apps.nyla.rag.bm25 import tokenize

        assert tokenize("") == []


class TestBM25Index:
    """Tests for BM25 search."""

    def test_zero_match_documents_excluded(self, index):
        results = index.search_text("ethereum")
        assert [doc_id for doc_id, _ in results] == ["d2"]

    def test_no_match_returns_empty(self, index):
        assert index.search_text("bitcoin halving") == []

    def test_term_frequency_ranks_higher(self, index):
        results = index.search_text("transaction")
        assert results[0][0] == "d1"

    def test_scores_sorted_descending(self, index):
        results = index.search_text("solana fees")
        scores = [s for _, s in results]
        assert scores == sorted(scores, reverse=True)
        assert {doc_id for doc_id, _ in results} <= {"d1", "d2", "d4"}

    def test_scores_non_negative_for_common_terms(self):
        from apps.nyla.rag.bm25 import BM25Index

        idx = BM25Index.build([("a", "wallet one"), ("b", "wallet two"), ("c", "wallet three")])
        results = idx.search_text("wallet")
        assert len(results) == 3
        assert all(score >= 0 for _, score in results)

    def test_chinese_query_matches_chinese_doc(self, index):
        results = index.search_text("手续费")
        assert results[0][0] == "d4"

    def test_top_k_limit(self, index):
        assert len(index.search_text("solana fees", k=1)) == 1

    def test_document_frequency_and_lengths(self, index):
        assert index.document_frequency("solana") == 2
        assert index.term_count("d1", "transaction") == 2
        assert index.doc_length("d2") > 0
        assert index.avg_doc_length > 0

    def test_duplicate_ids_fail_build(self):
        from apps.nyla.rag.bm25 import BM25Index
        from apps.nyla.rag.errors import IndexBuildError

        with pytest.raises(IndexBuildError):
            BM25Index.build([("x", "one"), ("x", "two")])

    def test_empty_index(self):
        from apps.nyla.rag.bm25 import BM25Index

        idx = BM25Index.build([])
        assert len(idx) == 0
        assert idx.search_text("anything") == []
