"""
Parameter Tuner.

Holds the current RetrievalParameters snapshot, collects per-query
performance samples and nudges parameters when the recent numbers drift out
of range. Also runs simple round-robin A/B tests between parameter sets.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .params import DEFAULT_BOUNDS, RetrievalParameters, TunerConfig

logger = logging.getLogger(__name__)


IMPACT_ORDER = {"high": 3, "medium": 2, "low": 1}

GOALS = ("speed", "relevance", "balanced")


@dataclass
class PerformanceSample:
    """Outcome of one retrieval call."""
    latency_ms: float
    relevance: float
    success: bool
    parameter_version: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass
class Adjustment:
    parameter: str
    value: Any
    reason: str
    impact: str = "medium"


@dataclass
class PerformanceSummary:
    count: int
    avg_relevance: float
    avg_latency_ms: float
    success_rate: float
    relevance_trend: Optional[float] = None
    latency_trend: Optional[float] = None


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def summarize(samples: List[PerformanceSample]) -> Optional[PerformanceSummary]:
    """Averages plus the second-half minus first-half trend."""
    if not samples:
        return None
    summary = PerformanceSummary(
        count=len(samples),
        avg_relevance=_mean([s.relevance for s in samples]),
        avg_latency_ms=_mean([s.latency_ms for s in samples]),
        success_rate=_mean([1.0 if s.success else 0.0 for s in samples]),
    )
    mid = len(samples) // 2
    first, second = samples[:mid], samples[mid:]
    if first and second:
        summary.relevance_trend = _mean([s.relevance for s in second]) - _mean([s.relevance for s in first])
        summary.latency_trend = _mean([s.latency_ms for s in second]) - _mean([s.latency_ms for s in first])
    return summary


def arm_score(summary: Optional[PerformanceSummary]) -> float:
    if summary is None:
        return float("-inf")
    return summary.avg_relevance * 0.6 + summary.success_rate * 0.4 - summary.avg_latency_ms / 10000


@dataclass
class ABArm:
    name: str
    changes: Dict[str, Any]
    parameters: RetrievalParameters
    samples: List[PerformanceSample] = field(default_factory=list)


@dataclass
class ABTestResult:
    name: str
    winner: str
    winner_parameters: RetrievalParameters
    scores: Dict[str, float]
    summaries: Dict[str, Optional[PerformanceSummary]]
    duration_s: float


class ParameterTuner:
    """
    Thread-safe owner of the live parameter snapshot.

    Readers get the current immutable RetrievalParameters; every change
    (manual, auto-tune or A/B winner) publishes a new version in one swap.
    """

    def __init__(
        self,
        parameters: Optional[RetrievalParameters] = None,
        config: Optional[TunerConfig] = None,
        bounds: Optional[Dict[str, Tuple[float, float]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or TunerConfig()
        self.bounds = dict(bounds or DEFAULT_BOUNDS)
        self._clock = clock
        self._lock = threading.RLock()
        self._params = parameters or RetrievalParameters()
        self._history: Deque[PerformanceSample] = deque(maxlen=self.config.max_history)
        self._since_change: List[PerformanceSample] = []
        self._adjustments: List[Adjustment] = []
        self._ab_name = ""
        self._ab_arms: List[ABArm] = []
        self._ab_cursor = 0
        self._ab_queries_per_arm = 0
        self._ab_started = 0.0
        self.last_ab_result: Optional[ABTestResult] = None

    def get_parameters(self) -> RetrievalParameters:
        with self._lock:
            return self._params

    def set_parameters(self, changes: Dict[str, Any], strict: bool = False) -> RetrievalParameters:
        """
        Apply a partial update. Values are clamped to bounds unless strict,
        in which case ConfigurationBoundsError propagates and nothing changes.
        """
        with self._lock:
            updated = self._params.updated(changes, self.bounds, strict=strict)
            self._params = updated
            self._since_change = []
        logger.info("Retrieval parameters now at version %d: %s", updated.version, changes)
        return updated

    @property
    def history(self) -> List[PerformanceSample]:
        with self._lock:
            return list(self._history)

    @property
    def adjustments(self) -> List[Adjustment]:
        with self._lock:
            return list(self._adjustments)

    def record_performance(self, sample: PerformanceSample) -> Optional[Adjustment]:
        """Store a sample; returns the adjustment made if this triggered auto-tuning."""
        with self._lock:
            self._history.append(sample)
            self._since_change.append(sample)
            if not self.config.auto_tune or len(self._since_change) < self.config.min_queries_for_tuning:
                return None
            summary = summarize(self._since_change)
            candidates = self.propose_adjustments(summary)
            if not candidates:
                # Start a fresh window so a healthy system isn't re-checked every call
                self._since_change = []
                return None
            best = candidates[0]
            self.set_parameters({best.parameter: best.value})
            self._adjustments.append(best)
        logger.info("Auto-tuned %s -> %s (%s)", best.parameter, best.value, best.reason)
        return best

    def performance_summary(self) -> Optional[PerformanceSummary]:
        return summarize(self.history)

    def propose_adjustments(self, summary: Optional[PerformanceSummary]) -> List[Adjustment]:
        """All applicable adjustments, highest impact first."""
        if summary is None:
            return []
        p = self.get_parameters()
        cfg = self.config
        out: List[Adjustment] = []

        if summary.avg_latency_ms > cfg.latency_threshold_ms:
            if p.dense_top_k > 20:
                out.append(Adjustment("dense_top_k", max(20, p.dense_top_k - 10), "reduce dense search scope for latency", "high"))
            if p.bm25_top_k > 20:
                out.append(Adjustment("bm25_top_k", max(20, p.bm25_top_k - 10), "reduce BM25 search scope for latency", "medium"))

        if summary.avg_relevance < cfg.relevance_threshold:
            if p.dense_top_k < 60:
                out.append(Adjustment("dense_top_k", min(60, p.dense_top_k + 10), "expand dense search for relevance", "high"))
            if p.min_score > 0.05:
                out.append(Adjustment("min_score", round(max(0.05, p.min_score - 0.05), 4), "lower score threshold", "medium"))

        if summary.success_rate < cfg.success_rate_threshold and p.fusion_alpha > 0.3:
            out.append(Adjustment("fusion_alpha", round(max(0.3, p.fusion_alpha - 0.1), 4), "weight BM25 more for success rate", "medium"))

        if summary.relevance_trend is not None and summary.relevance_trend < -0.1 and p.rerank_top_k < 15:
            out.append(Adjustment("rerank_top_k", min(15, p.rerank_top_k + 2), "widen rerank to recover relevance", "medium"))

        out.sort(key=lambda a: -IMPACT_ORDER[a.impact])
        return out

    def suggest(self, goal: str = "balanced") -> List[Adjustment]:
        """
        Manual suggestions for an optimization goal: "speed", "relevance" or
        "balanced". Nothing is applied.
        """
        if goal not in GOALS:
            raise ValueError(f"goal must be one of {', '.join(GOALS)}")
        summary = self.performance_summary()
        if summary is None:
            return []
        p = self.get_parameters()
        if goal == "speed":
            return [
                Adjustment("dense_top_k", max(10, p.dense_top_k - 15), "faster dense search", "high"),
                Adjustment("rerank_top_k", max(5, p.rerank_top_k - 3), "faster reranking", "medium"),
            ]
        if goal == "relevance":
            return [
                Adjustment("dense_top_k", min(80, p.dense_top_k + 20), "better semantic coverage", "high"),
                Adjustment("rerank_top_k", min(15, p.rerank_top_k + 3), "more precise final ranking", "medium"),
            ]
        alpha = 0.7 if summary.avg_relevance < 0.6 else 0.5
        return [Adjustment("fusion_alpha", alpha, "dense/BM25 balance", "medium")]

    def start_ab_test(
        self,
        configs: List[Dict[str, Any]],
        queries_per_arm: int = 50,
        name: str = "ab_test",
    ) -> List[ABArm]:
        """
        Start an A/B test between partial parameter sets, each applied on top
        of the current parameters. Arms are served round-robin.
        """
        if len(configs) < 2:
            raise ValueError("an A/B test needs at least two configurations")
        base = self.get_parameters()
        arms = [
            ABArm(f"arm_{i}", dict(changes), base.updated(changes, self.bounds))
            for i, changes in enumerate(configs)
        ]
        with self._lock:
            self._ab_name = name
            self._ab_arms = arms
            self._ab_cursor = 0
            self._ab_queries_per_arm = max(1, queries_per_arm)
            self._ab_started = self._clock()
        logger.info("A/B test %s started with %d arms", name, len(arms))
        return arms

    @property
    def ab_active(self) -> bool:
        with self._lock:
            return bool(self._ab_arms)

    def next_ab_parameters(self) -> Optional[Tuple[int, RetrievalParameters]]:
        """
        Next arm in round-robin order, or None when no test is running. Once
        every arm has its quota the test completes on this call and the
        result lands in `last_ab_result`.
        """
        with self._lock:
            if not self._ab_arms:
                return None
            if all(len(a.samples) >= self._ab_queries_per_arm for a in self._ab_arms):
                self.finish_ab_test()
                return None
            index = self._ab_cursor
            self._ab_cursor = (self._ab_cursor + 1) % len(self._ab_arms)
            return index, self._ab_arms[index].parameters

    def record_ab_result(self, arm: int, sample: PerformanceSample) -> None:
        with self._lock:
            if not self._ab_arms or arm < 0 or arm >= len(self._ab_arms):
                logger.warning("Ignoring A/B result for unknown arm %s", arm)
                return
            self._ab_arms[arm].samples.append(sample)

    def finish_ab_test(self, apply_winner: bool = False) -> Optional[ABTestResult]:
        """Score every arm, pick the winner and end the test."""
        with self._lock:
            if not self._ab_arms:
                return None
            summaries = {a.name: summarize(a.samples) for a in self._ab_arms}
            scores = {name: arm_score(s) for name, s in summaries.items()}
            winner = max(self._ab_arms, key=lambda a: scores[a.name])
            result = ABTestResult(
                name=self._ab_name,
                winner=winner.name,
                winner_parameters=winner.parameters,
                scores=scores,
                summaries=summaries,
                duration_s=self._clock() - self._ab_started,
            )
            self._ab_arms = []
            self.last_ab_result = result
            if apply_winner:
                self.set_parameters(winner.changes)
        logger.info("A/B test %s finished, winner %s (%.3f)", result.name, result.winner, scores[result.winner])
        return result
