"""
Hybrid Retriever with score fusion and a light rerank.

Combines semantic (dense vector) and lexical (BM25) search over the
published index snapshot, for the original query and its glossary
rewrites, then reranks the fused list against the query embedding and
applies intent boosts and the stale-content penalty.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .embeddings import EmbeddingProvider, l2_normalize
from .errors import RerankError, SearchMethodError
from .glossary import Glossary
from .indexer import IndexSnapshot, SnapshotHolder
from .models import Candidate, Chunk, QueryContext, QueryVariant
from .params import BM25Config, NylaConfig, RerankConfig, RetrievalParameters
from .query import analyze_query

logger = logging.getLogger(__name__)


# Chunk types that get an additive boost when they match the query intent
INTENT_TYPE_BOOSTS: Dict[str, Tuple[str, ...]] = {
    "procedural": ("how_to", "qa_pair"),
    "financial": ("technical_spec", "blockchain_info"),
    "performance": ("technical_spec", "blockchain_info"),
    "blockchain": ("blockchain_info", "technical_spec"),
}

_SOCIAL_KEYWORD = re.compile(r"social|links|contact|community|follow|official", re.IGNORECASE)
_SOCIAL_TEXT = re.compile(r"@\w+|https?://(x\.com|twitter\.com|t\.me|linktr\.ee)|official.*channels", re.IGNORECASE)


def is_social_chunk(chunk: Chunk) -> bool:
    """True for chunks that list official channels, handles or social links."""
    meta = chunk.metadata
    if meta.content_type == "social_media_links" or chunk.section == "official_channels":
        return True
    if any(_SOCIAL_KEYWORD.search(k) for k in meta.query_boost):
        return True
    if any(_SOCIAL_KEYWORD.search(t) for t in chunk.tags):
        return True
    return bool(_SOCIAL_TEXT.search(chunk.text))


@dataclass
class VariantResults:
    """Raw search hits for one query variant."""
    variant: QueryVariant
    dense: List[Tuple[Chunk, float]] = field(default_factory=list)
    bm25: List[Tuple[Chunk, float]] = field(default_factory=list)


def _max_normalized(hits: List[Tuple[Chunk, float]]) -> Dict[str, float]:
    top = max((score for _, score in hits), default=0.0)
    if top <= 0:
        return {chunk.id: 0.0 for chunk, _ in hits}
    return {chunk.id: max(score, 0.0) / top for chunk, score in hits}


def fuse(
    results: List[VariantResults],
    alpha: float = 0.6,
    expansion_discount: float = 0.8,
) -> List[Candidate]:
    """
    Weighted fusion of max-normalized dense and BM25 scores.

    fused = alpha * dense + (1 - alpha) * bm25, discounted for non-original
    variants. A chunk keeps its best variant contribution; chunks found by
    both methods are marked "hybrid".

    Returns:
        Candidates sorted by fusion score descending
    """
    best: Dict[str, Candidate] = {}
    methods: Dict[str, set] = {}
    order: Dict[str, int] = {}

    for res in results:
        dense_norm = _max_normalized(res.dense)
        bm25_norm = _max_normalized(res.bm25)
        dense_raw = {c.id: s for c, s in res.dense}
        bm25_raw = {c.id: s for c, s in res.bm25}
        chunks = {c.id: c for c, _ in res.dense}
        chunks.update({c.id: c for c, _ in res.bm25})
        discount = 1.0 if res.variant.is_original else expansion_discount

        for chunk_id, chunk in chunks.items():
            order.setdefault(chunk_id, len(order))
            found = methods.setdefault(chunk_id, set())
            if chunk_id in dense_raw:
                found.add("dense")
            if chunk_id in bm25_raw:
                found.add("bm25")
            score = discount * (alpha * dense_norm.get(chunk_id, 0.0) + (1 - alpha) * bm25_norm.get(chunk_id, 0.0))
            current = best.get(chunk_id)
            if current is None or score > current.fusion_score:
                best[chunk_id] = Candidate.from_chunk(
                    chunk,
                    score,
                    dense_score=max(dense_raw.get(chunk_id, 0.0), current.dense_score if current else 0.0),
                    bm25_score=max(bm25_raw.get(chunk_id, 0.0), current.bm25_score if current else 0.0),
                    query_source=res.variant.source,
                )
            else:
                current.dense_score = max(current.dense_score, dense_raw.get(chunk_id, 0.0))
                current.bm25_score = max(current.bm25_score, bm25_raw.get(chunk_id, 0.0))

    fused = []
    for chunk_id, cand in best.items():
        found = methods[chunk_id]
        cand.search_method = "hybrid" if len(found) > 1 else next(iter(found))
        fused.append(cand)
    fused.sort(key=lambda c: (-c.fusion_score, order[c.id]))
    return fused


def apply_intent_boosts(candidate: Candidate, intent: str, config: RerankConfig) -> float:
    """Final score after the social multiplier and the intent/type bonus."""
    score = candidate.final_score
    if intent == "social" and is_social_chunk(candidate.chunk):
        if candidate.token_count > config.rich_social_min_tokens:
            score *= config.rich_social_boost
        else:
            score *= config.social_boost
    if candidate.metadata.chunk_type in INTENT_TYPE_BOOSTS.get(intent, ()):
        score += config.intent_type_boost
    return score


def signal_weighted_alpha(alpha: float, signals: int, config: BM25Config) -> float:
    """
    Dense weight for fusion. Each exact identifier in the query moves weight
    to BM25, up to `exact_signal_max_weight`; never above the configured alpha.
    """
    if signals <= 0:
        return alpha
    bm25_weight = min(config.exact_signal_weight + config.exact_signal_step * signals, config.exact_signal_max_weight)
    return min(alpha, 1.0 - bm25_weight)


def parse_as_of(value: Optional[str]) -> Optional[datetime]:
    """ISO date or datetime; naive values and a trailing "Z" are read as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def freshness_factor(chunk: Chunk, now: float, config: RerankConfig) -> float:
    """`stale_penalty` for volatile chunks verified more than `stale_after_days` ago, else 1.0."""
    meta = chunk.metadata
    if (meta.stability or "").lower() != "volatile":
        return 1.0
    as_of = parse_as_of(meta.as_of)
    if as_of is None:
        return 1.0
    age_days = (now - as_of.timestamp()) / 86400
    return config.stale_penalty if age_days > config.stale_after_days else 1.0


class HybridRetriever:
    """
    Hybrid retrieval over the published snapshot.

    Each call captures the current snapshot and parameter set once, so a
    concurrent index swap or parameter change never mixes into a query.
    """

    def __init__(
        self,
        holder: SnapshotHolder,
        embedder: EmbeddingProvider,
        glossary: Optional[Glossary] = None,
        config: Optional[NylaConfig] = None,
        max_workers: int = 4,
        thinking_callback: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the hybrid retriever.

        Args:
            holder: Snapshot holder published to by the indexer
            embedder: Embedding provider for query vectors
            glossary: Bilingual glossary for query rewriting and lexical expansion
            config: Retrieval config (parameters, rerank weights and boosts)
            max_workers: Threads for the per-variant dense/BM25 fan-out
            thinking_callback: Optional callback for progress messages
            clock: Seconds since the epoch, used to age volatile content
        """
        self.holder = holder
        self.embedder = embedder
        self.glossary = glossary
        self.config = config or NylaConfig()
        self.max_workers = max_workers
        self._emit = thinking_callback or (lambda s, c: None)
        self.clock = clock

    def analyze(self, query: str, params: Optional[RetrievalParameters] = None) -> QueryContext:
        params = params or self.config.parameters
        return analyze_query(query, self.glossary, params.max_query_expansions)

    def _dense_search(self, snapshot: IndexSnapshot, variant: QueryVariant, k: int):
        try:
            vec = l2_normalize(self.embedder.embed(variant.text))
            return vec, snapshot.dense_search(vec, k)
        except Exception as e:
            raise SearchMethodError("dense", str(e), variant=variant.source) from e

    def _lexical_search(self, snapshot: IndexSnapshot, variant: QueryVariant, k: int):
        try:
            text = variant.text
            if self.glossary is not None:
                text = " ".join([text] + self.glossary.expansion_terms(text))
            hits = snapshot.bm25.search_text(text, k)
            return [(snapshot.get(doc_id), score) for doc_id, score in hits if snapshot.get(doc_id) is not None]
        except Exception as e:
            raise SearchMethodError("bm25", str(e), variant=variant.source) from e

    def search(
        self,
        query: str,
        params: Optional[RetrievalParameters] = None,
        context: Optional[QueryContext] = None,
        limit: Optional[int] = None,
    ) -> Tuple[QueryContext, List[Candidate], Optional[np.ndarray]]:
        """
        Full retrieval returning the query analysis, the ranked candidates
        and the original query's embedding (None if dense search failed).

        `limit` overrides how many reranked candidates are kept (default
        `rerank_top_k`), so a diversity stage can choose from a wider pool.
        """
        params = params or self.config.parameters
        snapshot = self.holder.current()
        ctx = context or analyze_query(query, self.glossary, params.max_query_expansions)
        if not ctx.original or len(snapshot) == 0:
            return ctx, [], None

        self._emit("retrieval_start", f"Hybrid search for: {ctx.original[:100]} ({len(ctx.variants)} variants, intent={ctx.intent})")

        results: List[VariantResults] = []
        query_vec: Optional[np.ndarray] = None
        failures = {"dense": 0, "bm25": 0}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                (
                    variant,
                    pool.submit(self._dense_search, snapshot, variant, params.dense_top_k),
                    pool.submit(self._lexical_search, snapshot, variant, params.bm25_top_k),
                )
                for variant in ctx.variants
            ]
            for variant, dense_future, bm25_future in futures:
                res = VariantResults(variant=variant)
                try:
                    vec, res.dense = dense_future.result()
                    if variant.is_original:
                        query_vec = vec
                except SearchMethodError as e:
                    failures["dense"] += 1
                    logger.warning("Degraded retrieval for %r: %s", ctx.original[:80], e)
                try:
                    res.bm25 = bm25_future.result()
                except SearchMethodError as e:
                    failures["bm25"] += 1
                    logger.warning("Degraded retrieval for %r: %s", ctx.original[:80], e)
                results.append(res)

        self._emit(
            "retrieval_counts",
            f"Dense: {sum(len(r.dense) for r in results)}, BM25: {sum(len(r.bm25) for r in results)}",
        )
        if failures["dense"] == len(results) and failures["bm25"] == len(results):
            logger.warning("All search methods failed for %r, returning no candidates", ctx.original[:80])
            return ctx, [], None

        alpha = signal_weighted_alpha(params.fusion_alpha, len(ctx.exact_signals), self.config.bm25)
        if alpha != params.fusion_alpha:
            self._emit("retrieval_weights", f"Exact signals {ctx.exact_signals}: dense {alpha:.2f}, BM25 {1 - alpha:.2f}")
        fused = fuse(results, alpha, params.expansion_discount)
        ranked = self._rerank(snapshot, fused, query_vec, ctx, params, limit or params.rerank_top_k)
        self._emit("retrieval_complete", f"Returned {len(ranked)} candidates from {len(fused)} fused")
        return ctx, ranked, query_vec

    def retrieve(
        self,
        query: str,
        params: Optional[RetrievalParameters] = None,
        context: Optional[QueryContext] = None,
    ) -> List[Candidate]:
        """
        Retrieve ranked candidates for a query.

        Returns:
            At most `rerank_top_k` candidates with final score >= `min_score`
        """
        return self.search(query, params, context)[1]

    def _rerank(
        self,
        snapshot: IndexSnapshot,
        fused: List[Candidate],
        query_vec: Optional[np.ndarray],
        ctx: QueryContext,
        params: RetrievalParameters,
        limit: int,
    ) -> List[Candidate]:
        cfg = self.config.rerank
        try:
            scored = self._light_rerank(snapshot, fused, query_vec, cfg)
        except Exception as e:
            err = e if isinstance(e, RerankError) else RerankError(str(e), candidates=len(fused))
            logger.warning("Rerank failed for %r (%d candidates), using fusion order: %s", ctx.original[:80], len(fused), err)
            scored = [
                c.with_changes(final_score=c.fusion_score, embedding=snapshot.vector(c.id))
                for c in fused
            ]

        now = self.clock()
        boosted = [
            c.with_changes(final_score=apply_intent_boosts(c, ctx.intent, cfg) * freshness_factor(c.chunk, now, cfg))
            for c in scored
        ]
        kept = [c for c in boosted if c.final_score >= params.min_score]
        kept.sort(key=lambda c: -c.final_score)
        return kept[:limit]

    @staticmethod
    def _light_rerank(
        snapshot: IndexSnapshot,
        fused: List[Candidate],
        query_vec: Optional[np.ndarray],
        cfg: RerankConfig,
    ) -> List[Candidate]:
        """final = fusion_weight * fusion + similarity_weight * cosine(query, chunk)."""
        out = []
        for cand in fused:
            vec = snapshot.vector(cand.id)
            if query_vec is None or vec is None:
                similarity = cand.fusion_score
            else:
                similarity = float(np.dot(query_vec, vec))
            final = cfg.fusion_weight * cand.fusion_score + cfg.similarity_weight * similarity
            out.append(cand.with_changes(
                cross_encoder_score=similarity,
                final_score=final,
                embedding=vec,
            ))
        return out
