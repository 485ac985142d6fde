"""
End-to-end retrieval pipeline.

retrieve -> MMR -> parent-child aggregation -> blacklist/quality filter ->
compression -> language consistency. Every post-retrieval stage is guarded: if it raises, the
failure is logged and the stage's input passes through unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence, TypeVar

from .aggregation import ParentChildAggregator
from .compression import CompressionService
from .content_filter import ContentQualityFilter
from .embeddings import EmbeddingCache, EmbeddingProvider, OpenRouterEmbedder
from .glossary import Glossary
from .indexer import KnowledgeIndexer, SnapshotHolder
from .language import LanguageConsistencyService
from .mmr import MMRReranker
from .models import Candidate, ContextItem, RetrievalResult, RetrievalStats
from .params import NylaConfig, RetrievalParameters, load_config
from .retriever import HybridRetriever
from .store import KnowledgeStore
from .tuner import ParameterTuner, PerformanceSample

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetrievalPipeline:
    """
    Serving path for one knowledge base.

    Holds no per-query state: each `run` captures the published snapshot
    (inside the retriever) and the parameter set once, up front.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        config: Optional[NylaConfig] = None,
        tuner: Optional[ParameterTuner] = None,
        mmr: Optional[MMRReranker] = None,
        aggregator: Optional[ParentChildAggregator] = None,
        content_filter: Optional[ContentQualityFilter] = None,
        compressor: Optional[CompressionService] = None,
        consistency: Optional[LanguageConsistencyService] = None,
        thinking_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self.retriever = retriever
        self.config = config or retriever.config
        self.tuner = tuner
        self.mmr = mmr or MMRReranker(self.config.mmr, default_lambda=self.config.parameters.mmr_lambda)
        self.aggregator = aggregator or ParentChildAggregator(self.config.aggregation)
        self.content_filter = content_filter or ContentQualityFilter(self.config.filter)
        self.compressor = compressor or CompressionService(self.config.parameters.field_budgets)
        self.consistency = consistency or LanguageConsistencyService(self.config.consistency)
        self.indexer: Optional[KnowledgeIndexer] = None
        self._emit = thinking_callback or (lambda s, c: None)

    @classmethod
    def create(
        cls,
        config: Optional[NylaConfig] = None,
        embedder: Optional[EmbeddingProvider] = None,
        glossary: Optional[Glossary] = None,
        store: Optional[KnowledgeStore] = None,
        with_tuner: bool = True,
        thinking_callback: Optional[Callable[[str, str], None]] = None,
    ) -> "RetrievalPipeline":
        """
        Wire up a pipeline plus its indexer from config and environment.

        The indexer is reachable as `pipeline.indexer`; call
        `pipeline.indexer.ensure_index(records)` before serving.
        """
        config = config or load_config()
        glossary = glossary if glossary is not None else Glossary.load()
        if embedder is None:
            emb_cfg = config.embedding
            embedder = OpenRouterEmbedder(
                model=emb_cfg.model,
                batch_size=emb_cfg.batch_size,
                cache=EmbeddingCache(emb_cfg.cache_size, emb_cfg.cache_ttl_seconds),
            )
        holder = SnapshotHolder()
        indexer = KnowledgeIndexer(
            embedder,
            holder=holder,
            store=store if store is not None else KnowledgeStore(),
            glossary=glossary,
            config=config,
            thinking_callback=thinking_callback,
        )
        retriever = HybridRetriever(holder, embedder, glossary, config, thinking_callback=thinking_callback)
        tuner = ParameterTuner(config.parameters, config.tuner, config.bounds) if with_tuner else None
        pipeline = cls(retriever, config, tuner=tuner, thinking_callback=thinking_callback)
        pipeline.indexer = indexer
        return pipeline

    def parameters(self) -> RetrievalParameters:
        if self.tuner is not None:
            return self.tuner.get_parameters()
        return self.config.parameters

    def _stage(self, name: str, fn: Callable[[], T], fallback: T, stats: RetrievalStats, query: str) -> T:
        try:
            return fn()
        except Exception as e:
            count = len(fallback) if isinstance(fallback, list) else 0
            logger.warning("Stage %s failed for %r (%d candidates), passing input through: %s", name, query[:80], count, e)
            stats.degraded_stages.append(name)
            return fallback

    def run(
        self,
        query: str,
        answer_type: Optional[str] = None,
        filter_mode: str = "strict",
        blacklist: Optional[Sequence[str]] = None,
    ) -> RetrievalResult:
        """
        Retrieve the final ordered context for a query.

        Args:
            query: User query, English, Chinese or mixed
            answer_type: Expected answer shape for compression budgets
                ("short_answer", "step_by_step", "detailed_explanation", "comparison")
            filter_mode: "strict" drops low-quality content, "lenient" flags it
            blacklist: Regex patterns whose matches are always removed

        Returns:
            RetrievalResult with context items and stage statistics
        """
        start = time.perf_counter()
        ab_arm: Optional[int] = None
        params = self.parameters()
        if self.tuner is not None and self.tuner.ab_active:
            picked = self.tuner.next_ab_parameters()
            if picked is not None:
                ab_arm, params = picked

        stats = RetrievalStats(parameter_version=params.version)
        stats.chunk_count = len(self.retriever.holder.current())

        pool = max(params.rerank_top_k, int(params.rerank_top_k * self.config.mmr.candidate_pool_factor))
        ctx, candidates, query_vec = self.retriever.search(query, params, limit=pool)
        stats.candidates_retrieved = len(candidates)

        lam = self.mmr.adaptive_lambda(ctx.intent, query, base=params.mmr_lambda)
        selected: List[Candidate] = self._stage(
            "mmr",
            lambda: self.mmr.rerank(query_vec, candidates, k=params.rerank_top_k, lambda_=lam),
            candidates[:params.rerank_top_k],
            stats,
            query,
        )
        stats.candidates_after_mmr = len(selected)
        self._emit("mmr", f"MMR kept {len(selected)} of {len(candidates)} (lambda={lam:.2f})")

        merged = self._stage("aggregate", lambda: self.aggregator.aggregate(selected), selected, stats, query)

        def apply_filters() -> List[Candidate]:
            kept = merged
            if blacklist:
                kept = self.content_filter.filter_by_blacklist(kept, blacklist).kept
            return self.content_filter.adaptive_filter(kept, query, mode=filter_mode).kept

        filtered = self._stage("filter", apply_filters, merged, stats, query)
        stats.candidates_after_filter = len(filtered)

        def apply_compression() -> List[Candidate]:
            result = self.compressor.compress_for_answer_type(filtered, query, answer_type, params.field_budgets)
            stats.compression_ratio = result.statistics.compression_ratio
            return result.candidates

        compressed = self._stage("compression", apply_compression, filtered, stats, query)

        def apply_consistency() -> List[Candidate]:
            outcome = self.consistency.ensure(query, compressed)
            stats.consistency_score = outcome.repaired_score
            stats.repaired = outcome.repaired
            return outcome.candidates

        final = self._stage("consistency", apply_consistency, compressed, stats, query)

        items = [ContextItem.from_candidate(c) for c in final]
        stats.latency_ms = (time.perf_counter() - start) * 1000
        self._emit(
            "retrieval_done",
            f"{len(items)} context items in {stats.latency_ms:.0f} ms (consistency {stats.consistency_score:.2f})",
        )

        if self.tuner is not None:
            sample = PerformanceSample(
                latency_ms=stats.latency_ms,
                relevance=sum(c.final_score for c in final) / len(final) if final else 0.0,
                success=bool(items),
                parameter_version=params.version,
            )
            if ab_arm is not None:
                self.tuner.record_ab_result(ab_arm, sample)
            else:
                self.tuner.record_performance(sample)

        return RetrievalResult(items=items, stats=stats, query=ctx)
