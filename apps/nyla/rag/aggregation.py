"""
Parent-child aggregation.

When several parts of one long record survive selection, neighbouring parts
are stitched back into a single block (with their shared overlap removed)
so downstream stages see one coherent passage instead of fragments.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from .models import Candidate
from .params import AggregationConfig
from .text import estimate_tokens

logger = logging.getLogger(__name__)


def _word_char(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def strip_overlap(previous: str, current: str) -> str:
    """
    `current` without its longest prefix that is also a suffix of
    `previous`. Latin text is only cut between words.
    """
    limit = min(len(previous), len(current))
    for size in range(limit, 0, -1):
        if not previous.endswith(current[:size]):
            continue
        if size < len(current) and _word_char(current[size - 1]) and _word_char(current[size]):
            continue
        if size < len(previous) and _word_char(previous[-size - 1]) and _word_char(current[0]):
            continue
        return current[size:].lstrip()
    return current


def aggregate_score(scores: List[float], config: AggregationConfig) -> float:
    """0.7 * max + 0.3 * mean, plus a bonus per extra part."""
    if not scores:
        return 0.0
    base = 0.7 * max(scores) + 0.3 * (sum(scores) / len(scores))
    bonus = min((len(scores) - 1) * config.multi_hit_bonus, config.max_multi_hit_bonus)
    return base + bonus


class ParentChildAggregator:
    """Merges adjacent selected parts of the same record."""

    def __init__(self, config: Optional[AggregationConfig] = None):
        self.config = config or AggregationConfig()

    def aggregate(self, candidates: List[Candidate]) -> List[Candidate]:
        """
        Replace each run of adjacent parts with one merged candidate.

        The merged candidate takes the place of the run's highest ranked part;
        everything else keeps its position. Parts that are not adjacent to
        another selected part pass through unchanged.
        """
        if not self.config.enabled or len(candidates) < 2:
            return list(candidates)

        groups: Dict[str, List[Candidate]] = {}
        for cand in candidates:
            meta = cand.metadata
            if meta.total_chunks > 1 and meta.parent_id:
                groups.setdefault(meta.parent_id, []).append(cand)

        rank = {c.id: i for i, c in enumerate(candidates)}
        replacement: Dict[str, Optional[Candidate]] = {}
        for parent_id, members in groups.items():
            if len(members) < 2:
                continue
            for run in self._runs(sorted(members, key=lambda c: c.metadata.chunk_index)):
                if len(run) < 2:
                    continue
                merged = self._merge(parent_id, run)
                lead = min(run, key=lambda c: rank[c.id])
                for part in run:
                    replacement[part.id] = merged if part.id == lead.id else None
                logger.debug("Merged %d parts of %s into %s", len(run), parent_id, merged.id)

        if not replacement:
            return list(candidates)
        out = []
        for cand in candidates:
            if cand.id not in replacement:
                out.append(cand)
            elif replacement[cand.id] is not None:
                out.append(replacement[cand.id])
        return out

    def _runs(self, members: List[Candidate]) -> List[List[Candidate]]:
        """Split position-sorted parts into chains linked by next_id, within the token cap."""
        runs: List[List[Candidate]] = []
        tokens = 0
        for cand in members:
            if runs and runs[-1][-1].metadata.next_id == cand.id:
                extra = estimate_tokens(strip_overlap(runs[-1][-1].text, cand.text))
                if tokens + extra <= self.config.max_tokens:
                    runs[-1].append(cand)
                    tokens += extra
                    continue
            runs.append([cand])
            tokens = cand.token_count
        return runs

    def _merge(self, parent_id: str, run: List[Candidate]) -> Candidate:
        first, last = run[0], run[-1]
        pieces = [first.text]
        for prev, cand in zip(run, run[1:]):
            rest = strip_overlap(prev.text, cand.text)
            if rest:
                pieces.append(rest)
        separator = "" if first.chunk.lang == "zh" else " "
        text = separator.join(pieces)

        facts: Dict[str, str] = {}
        tags: List[str] = []
        related: List[str] = []
        for cand in run:
            for key, value in cand.chunk.facts.items():
                facts.setdefault(key, value)
            tags.extend(t for t in cand.chunk.tags if t not in tags)
            related.extend(r for r in cand.metadata.related_chunks if r not in related)

        part_ids = [c.id for c in run]
        metadata = replace(
            first.metadata,
            next_id=last.metadata.next_id,
            related_chunks=related,
            extra={**first.metadata.extra, "merged_parts": part_ids},
        )
        chunk = replace(
            first.chunk,
            id=f"{parent_id}_p{first.metadata.chunk_index}-{last.metadata.chunk_index}",
            text=text,
            dense_text=separator.join(c.chunk.dense_text for c in run),
            sparse_text=" ".join(c.chunk.sparse_text for c in run),
            tags=tags,
            facts=facts,
            token_count=estimate_tokens(text),
            metadata=metadata,
        )
        mmr_scores = [c.mmr_score for c in run if c.mmr_score is not None]
        similarities = [c.cross_encoder_score for c in run if c.cross_encoder_score is not None]
        return Candidate(
            chunk=chunk,
            dense_score=max(c.dense_score for c in run),
            bm25_score=max(c.bm25_score for c in run),
            fusion_score=max(c.fusion_score for c in run),
            cross_encoder_score=max(similarities) if similarities else None,
            mmr_score=max(mmr_scores) if mmr_scores else None,
            final_score=aggregate_score([c.final_score for c in run], self.config),
            query_source=first.query_source,
            search_method="hybrid" if len({c.search_method for c in run}) > 1 else first.search_method,
            embedding=first.embedding,
            cluster_id=first.cluster_id,
            flags=list(dict.fromkeys([f for c in run for f in c.flags] + ["aggregated"])),
        )
