"""
Tests for the parameter tuner and A/B testing.

Run: pytest apps/nyla/rag/tests/test_tuner.py -v
"""

from __future__ import annotations

import threading

import pytest


def sample(latency_ms=100.0, relevance=0.9, success=True):
    from apps.nyla.rag.tuner import PerformanceSample

    return PerformanceSample(latency_ms=latency_ms, relevance=relevance, success=success)


def feed(tuner, n, **kwargs):
    results = [tuner.record_performance(sample(**kwargs)) for _ in range(n)]
    return [r for r in results if r is not None]


class TestSummaries:
    """Tests for performance summaries and trends."""

    def test_summarize(self):
        from apps.nyla.rag.tuner import summarize

        samples = [sample(100, 0.9), sample(300, 0.5, success=False)]
        summary = summarize(samples)
        assert summary.count == 2
        assert summary.avg_latency_ms == 200
        assert summary.avg_relevance == pytest.approx(0.7)
        assert summary.success_rate == 0.5
        assert summary.relevance_trend == pytest.approx(-0.4)
        assert summary.latency_trend == 200

    def test_single_sample_has_no_trend(self):
        from apps.nyla.rag.tuner import summarize

        assert summarize([sample()]).relevance_trend is None
        assert summarize([]) is None


class TestAutoTuning:
    """Tests for threshold-driven adjustments."""

    def test_high_latency_shrinks_dense_scope(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        assert feed(tuner, 49, latency_ms=5000) == []
        adjustment = tuner.record_performance(sample(latency_ms=5000))
        assert adjustment.parameter == "dense_top_k"
        assert adjustment.impact == "high"
        params = tuner.get_parameters()
        assert params.dense_top_k == 30
        assert params.version == 2
        assert tuner.adjustments == [adjustment]

    def test_window_restarts_after_change(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        feed(tuner, 50, latency_ms=5000)
        assert feed(tuner, 49, latency_ms=5000) == []
        assert tuner.get_parameters().dense_top_k == 30
        feed(tuner, 1, latency_ms=5000)
        assert tuner.get_parameters().dense_top_k == 20

    def test_healthy_system_unchanged(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        assert feed(tuner, 120) == []
        assert tuner.get_parameters().version == 1
        assert len(tuner.history) == 120

    def test_low_relevance_expands_search(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        made = feed(tuner, 50, relevance=0.3)
        assert [a.parameter for a in made] == ["dense_top_k"]
        assert tuner.get_parameters().dense_top_k == 50

    def test_low_success_rate_shifts_alpha(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        feed(tuner, 50, success=False)
        assert tuner.get_parameters().fusion_alpha == pytest.approx(0.5)

    def test_falling_relevance_widens_rerank(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        feed(tuner, 25, relevance=0.9)
        feed(tuner, 25, relevance=0.7)
        assert tuner.get_parameters().rerank_top_k == 12

    def test_adjustments_ranked_and_bounded(self):
        from apps.nyla.rag.params import RetrievalParameters
        from apps.nyla.rag.tuner import ParameterTuner, PerformanceSummary

        tuner = ParameterTuner(RetrievalParameters(dense_top_k=20))
        summary = PerformanceSummary(count=50, avg_relevance=0.3, avg_latency_ms=5000, success_rate=1.0)
        proposed = tuner.propose_adjustments(summary)
        assert proposed[0].impact == "high"
        assert ("dense_top_k", 30) in [(a.parameter, a.value) for a in proposed]
        assert ("bm25_top_k", 30) in [(a.parameter, a.value) for a in proposed]
        assert all(a.parameter != "dense_top_k" or a.value >= 20 for a in proposed)

    def test_auto_tune_disabled(self):
        from apps.nyla.rag.params import TunerConfig
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner(config=TunerConfig(auto_tune=False))
        assert feed(tuner, 60, latency_ms=5000) == []
        assert tuner.get_parameters().version == 1

    def test_history_bounded(self):
        from apps.nyla.rag.params import TunerConfig
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner(config=TunerConfig(max_history=5, auto_tune=False))
        feed(tuner, 12)
        assert len(tuner.history) == 5


class TestManualChanges:
    """Tests for manual updates and suggestions."""

    def test_set_parameters_clamps(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        params = tuner.set_parameters({"rerank_top_k": 50})
        assert params.rerank_top_k == 20
        assert tuner.get_parameters() is params

    def test_strict_rejects_without_change(self):
        from apps.nyla.rag.errors import ConfigurationBoundsError
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        before = tuner.get_parameters()
        with pytest.raises(ConfigurationBoundsError):
            tuner.set_parameters({"fusion_alpha": 1.5}, strict=True)
        assert tuner.get_parameters() is before

    def test_suggest(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        assert tuner.suggest("speed") == []
        feed(tuner, 3, relevance=0.4)
        speed = tuner.suggest("speed")
        assert [(a.parameter, a.value) for a in speed] == [("dense_top_k", 25), ("rerank_top_k", 7)]
        assert tuner.suggest("balanced")[0].value == 0.7
        assert tuner.get_parameters().version == 1
        with pytest.raises(ValueError):
            tuner.suggest("cheapest")

    def test_concurrent_recording(self):
        from apps.nyla.rag.params import TunerConfig
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner(config=TunerConfig(auto_tune=False))
        threads = [threading.Thread(target=feed, args=(tuner, 100)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(tuner.history) == 400


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestABTesting:
    """Tests for round-robin A/B tests."""

    def test_needs_two_configs(self):
        from apps.nyla.rag.tuner import ParameterTuner

        with pytest.raises(ValueError):
            ParameterTuner().start_ab_test([{"fusion_alpha": 0.3}])

    def test_round_robin_and_winner(self):
        from apps.nyla.rag.tuner import ParameterTuner

        clock = FakeClock()
        tuner = ParameterTuner(clock=clock)
        arms = tuner.start_ab_test([{"fusion_alpha": 0.3}, {"fusion_alpha": 0.8}], queries_per_arm=2, name="alpha")
        assert [a.parameters.fusion_alpha for a in arms] == [0.3, 0.8]
        assert tuner.ab_active

        served = []
        for _ in range(4):
            arm, params = tuner.next_ab_parameters()
            served.append((arm, params.fusion_alpha))
            relevance = 0.9 if arm == 0 else 0.4
            tuner.record_ab_result(arm, sample(relevance=relevance))
        assert served == [(0, 0.3), (1, 0.8), (0, 0.3), (1, 0.8)]

        clock.now += 30
        assert tuner.next_ab_parameters() is None
        assert not tuner.ab_active
        result = tuner.last_ab_result
        assert result.name == "alpha"
        assert result.winner == "arm_0"
        assert result.scores["arm_0"] > result.scores["arm_1"]
        assert result.duration_s == 30
        assert tuner.get_parameters().fusion_alpha == 0.6

    def test_apply_winner(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        tuner.start_ab_test([{"fusion_alpha": 0.3}, {"fusion_alpha": 0.8}])
        tuner.record_ab_result(1, sample(relevance=0.95))
        tuner.record_ab_result(0, sample(relevance=0.2, success=False))
        result = tuner.finish_ab_test(apply_winner=True)
        assert result.winner == "arm_1"
        params = tuner.get_parameters()
        assert params.fusion_alpha == 0.8
        assert params.version == 2

    def test_arm_without_samples_loses(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        tuner.start_ab_test([{"rerank_top_k": 5}, {"rerank_top_k": 12}])
        tuner.record_ab_result(1, sample())
        assert tuner.finish_ab_test().winner == "arm_1"

    def test_unknown_arm_ignored(self):
        from apps.nyla.rag.tuner import ParameterTuner

        tuner = ParameterTuner()
        tuner.record_ab_result(0, sample())
        tuner.start_ab_test([{}, {}])
        tuner.record_ab_result(7, sample())
        assert tuner.finish_ab_test().summaries == {"arm_0": None, "arm_1": None}

    def test_finish_without_test(self):
        from apps.nyla.rag.tuner import ParameterTuner

        assert ParameterTuner().finish_ab_test() is None
        assert ParameterTuner().next_ab_parameters() is None
