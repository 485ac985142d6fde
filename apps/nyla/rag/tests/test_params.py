"""
Tests for retrieval parameters and YAML config loading.

Run: pytest apps/nyla/rag/tests/test_params.py -v
"""

from __future__ import annotations

import os
import tempfile

import pytest


class TestRetrievalParameters:
    """Tests for versioned, bounds-checked parameter snapshots."""

    def test_defaults(self):
        from apps.nyla.rag.params import RetrievalParameters

        p = RetrievalParameters()
        assert (p.dense_top_k, p.bm25_top_k, p.rerank_top_k) == (40, 40, 10)
        assert p.fusion_alpha == 0.6
        assert p.min_score == 0.1
        assert p.mmr_lambda == 0.82
        assert p.field_budgets["how_to"] == 200
        assert p.version == 1

    def test_immutable(self):
        from pydantic import ValidationError
        from apps.nyla.rag.params import RetrievalParameters

        p = RetrievalParameters()
        with pytest.raises(ValidationError):
            p.dense_top_k = 5

    def test_update_bumps_version_and_keeps_original(self):
        from apps.nyla.rag.params import RetrievalParameters

        p = RetrievalParameters()
        q = p.updated({"fusion_alpha": 0.5})
        assert q.version == 2
        assert q.fusion_alpha == 0.5
        assert p.fusion_alpha == 0.6

    def test_out_of_range_is_clamped(self):
        from apps.nyla.rag.params import RetrievalParameters

        q = RetrievalParameters().updated({"dense_top_k": 500, "fusion_alpha": 0.01, "rerank_top_k": 1})
        assert q.dense_top_k == 100
        assert q.fusion_alpha == 0.1
        assert q.rerank_top_k == 3

    def test_strict_raises(self):
        from apps.nyla.rag.errors import ConfigurationBoundsError
        from apps.nyla.rag.params import RetrievalParameters

        with pytest.raises(ConfigurationBoundsError) as exc:
            RetrievalParameters().updated({"min_score": 0.9}, strict=True)
        assert exc.value.name == "min_score"
        assert (exc.value.low, exc.value.high) == (0.01, 0.5)

    def test_unknown_keys_ignored(self):
        from apps.nyla.rag.params import RetrievalParameters

        q = RetrievalParameters().updated({"not_a_parameter": 3})
        assert q.tunable() == RetrievalParameters().tunable()

    def test_field_budgets_merge(self):
        from apps.nyla.rag.params import RetrievalParameters

        q = RetrievalParameters().updated({"field_budgets": {"marketing": 20}})
        assert q.field_budgets["marketing"] == 20
        assert q.field_budgets["how_to"] == 200


class TestLoadConfig:
    """Tests for the YAML config loader."""

    def test_bundled_config(self):
        from apps.nyla.rag.params import load_config

        cfg = load_config()
        assert cfg.parameters.version == 1
        assert cfg.parameters.dense_top_k == 40
        assert cfg.chunking.en_token_range == (200, 300)
        assert cfg.consistency.threshold == 0.7
        assert cfg.tuner.min_queries_for_tuning == 50
        assert cfg.mmr.candidate_pool_factor == 2.0
        assert cfg.bm25.exact_signal_max_weight == 0.8
        assert cfg.rerank.stale_after_days == 7.0
        assert cfg.aggregation.max_tokens == 1200

    def test_out_of_bounds_values_clamped_on_load(self):
        from apps.nyla.rag.params import load_config

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "retrieval.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("parameters:\n  dense_top_k: 1000\n  mmr_lambda: 0.5\nmmr:\n  min_similarity: 0.05\n")
            cfg = load_config(path)
        assert cfg.parameters.dense_top_k == 100
        assert cfg.parameters.mmr_lambda == 0.5
        assert cfg.parameters.version == 1
        assert cfg.mmr.min_similarity == 0.05

    def test_missing_file_uses_defaults(self):
        from apps.nyla.rag.params import load_config

        cfg = load_config("/nonexistent/retrieval.yaml")
        assert cfg.parameters.rerank_top_k == 10
