"""
Maximal Marginal Relevance reranking.

Picks candidates one at a time, trading relevance against similarity to what
was already picked: score = lambda * relevance - (1 - lambda) * max_sim.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

import numpy as np

from .errors import RerankError
from .models import Candidate
from .params import MMRConfig

logger = logging.getLogger(__name__)


FOCUSED_INTENTS = ("procedural", "technical", "financial", "performance")
EXPLORATORY_INTENTS = ("exploratory",)


def cosine(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[float]:
    if a is None or b is None:
        return None
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0 or nb == 0:
        return None
    return float(np.dot(a, b) / (na * nb))


class MMRReranker:
    """
    MMR selection with intent-adaptive lambda and an optional cluster-aware
    two-pass mode.
    """

    def __init__(self, config: Optional[MMRConfig] = None, default_lambda: float = 0.82):
        self.config = config or MMRConfig()
        self.default_lambda = default_lambda

    def adaptive_lambda(self, intent: Optional[str], query: str = "", base: Optional[float] = None) -> float:
        """
        Shift lambda toward relevance for focused questions and toward
        diversity for exploratory ones.
        """
        base = self.default_lambda if base is None else base
        step = self.config.intent_adjustment
        if intent in FOCUSED_INTENTS:
            return min(base + step, max(0.9, base))
        if intent in EXPLORATORY_INTENTS:
            return max(base - step, 0.1)
        return base

    @staticmethod
    def relevance(candidate: Candidate, query_embedding: Optional[np.ndarray]) -> float:
        if candidate.final_score:
            return candidate.final_score
        sim = cosine(candidate.embedding, query_embedding)
        return sim if sim is not None else 0.5

    def rerank(
        self,
        query_embedding: Optional[np.ndarray],
        candidates: List[Candidate],
        k: int,
        lambda_: Optional[float] = None,
        intent: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Select up to k diverse candidates.

        On failure the input order truncated to k is returned.
        """
        lam = lambda_ if lambda_ is not None else self.adaptive_lambda(intent)
        try:
            return self._select(query_embedding, candidates, k, lam)
        except Exception as e:
            logger.warning("MMR failed on %d candidates, keeping input order: %s", len(candidates), RerankError(str(e)))
            return list(candidates[:max(k, 0)])

    def _select(
        self,
        query_embedding: Optional[np.ndarray],
        candidates: List[Candidate],
        k: int,
        lam: float,
    ) -> List[Candidate]:
        if k <= 0 or not candidates:
            return []
        pool = list(candidates)
        rel = {id(c): self.relevance(c, query_embedding) for c in pool}

        seed_idx = max(range(len(pool)), key=lambda i: (rel[id(pool[i])], -i))
        seed = pool.pop(seed_idx)
        selected = [seed.with_changes(mmr_score=rel[id(seed)])]
        picked_vecs = [seed.embedding]

        iterations = 0
        while pool and len(selected) < k and iterations < self.config.max_iterations:
            iterations += 1
            best_idx, best_score = -1, -math.inf
            for i, cand in enumerate(pool):
                sims = [s for s in (cosine(cand.embedding, v) for v in picked_vecs) if s is not None]
                max_sim = max(sims) if sims else 0.0
                score = lam * rel[id(cand)] - (1 - lam) * max_sim
                if score > best_score:
                    best_idx, best_score = i, score
            if best_score < self.config.min_similarity:
                break
            chosen = pool.pop(best_idx)
            selected.append(chosen.with_changes(mmr_score=best_score))
            picked_vecs.append(chosen.embedding)
        return selected

    def cluster_candidates(self, candidates: List[Candidate], threshold: Optional[float] = None) -> List[Candidate]:
        """
        Greedy cosine clustering: each candidate joins the first cluster whose
        first member is at least `threshold` similar, else starts a new one.
        """
        threshold = self.config.cluster_threshold if threshold is None else threshold
        heads: List[Optional[np.ndarray]] = []
        out = []
        for cand in candidates:
            cluster_id = -1
            for cid, head in enumerate(heads):
                sim = cosine(cand.embedding, head)
                if sim is not None and sim >= threshold:
                    cluster_id = cid
                    break
            if cluster_id == -1:
                cluster_id = len(heads)
                heads.append(cand.embedding)
            out.append(cand.with_changes(cluster_id=cluster_id))
        return out

    def rerank_clustered(
        self,
        query_embedding: Optional[np.ndarray],
        candidates: List[Candidate],
        k: int,
        lambda_: Optional[float] = None,
        intent: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Two-pass MMR: pick within each cluster (lambda + 0.1), then across
        the picked representatives (lambda - 0.1).
        """
        lam = lambda_ if lambda_ is not None else self.adaptive_lambda(intent)
        try:
            if not candidates or k <= 0:
                return []
            if all(c.cluster_id < 0 for c in candidates):
                candidates = self.cluster_candidates(candidates)
            groups: Dict[int, List[Candidate]] = {}
            for cand in candidates:
                groups.setdefault(cand.cluster_id, []).append(cand)

            total = len(candidates)
            representatives: List[Candidate] = []
            for members in groups.values():
                sub_k = max(1, math.ceil(k * len(members) / total))
                representatives.extend(self._select(query_embedding, members, sub_k, min(lam + 0.1, 1.0)))
            return self._select(query_embedding, representatives, k, max(lam - 0.1, 0.0))
        except Exception as e:
            logger.warning("Clustered MMR failed on %d candidates, keeping input order: %s", len(candidates), RerankError(str(e)))
            return list(candidates[:max(k, 0)])
