"""
Language consistency check and self-repair.

Scores how well the language of the final context matches the query's and,
when the score is low, tries a language-aware reordering. The repair is
only kept if it clearly improves the score.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ConsistencyRepairFailure
from .models import Candidate
from .params import ConsistencyConfig
from .text import LanguageGuess, detect_language

logger = logging.getLogger(__name__)


TECHNICAL_PATTERNS = [
    re.compile(r"0x[a-fA-F0-9]+"),
    re.compile(r"\$[A-Z0-9]+"),
    re.compile(r"https?://"),
    re.compile(r"@[a-zA-Z0-9_]+"),
    re.compile(r"\b\d+\.\d+\.\d+\b"),
    re.compile(r"\b[A-Z]{2,10}\b"),
]


def is_technical_content(text: str) -> bool:
    """Addresses, tickers, URLs, handles, versions or acronyms read the same in any language."""
    return any(p.search(text or "") for p in TECHNICAL_PATTERNS)


def language_match_score(query_lang: str, chunk: LanguageGuess, text: str) -> float:
    if query_lang == chunk.primary:
        score = 1.0
    elif query_lang == "mixed" or chunk.primary == "mixed":
        score = 0.7
    elif query_lang == "zh" and chunk.primary == "en":
        score = 0.8 if is_technical_content(text) else 0.4
    elif query_lang == "en" and chunk.primary == "zh":
        score = 0.6
    else:
        score = 0.3
    return score * (chunk.confidence * 0.3 + 0.7)


SCORE_REASONS = (
    (0.9, "perfect_language_match"),
    (0.8, "acceptable_technical_content"),
    (0.7, "mixed_language_acceptable"),
    (0.6, "moderate_language_mismatch"),
    (0.4, "significant_language_mismatch"),
)


def score_reason(score: float) -> str:
    for floor, reason in SCORE_REASONS:
        if score >= floor:
            return reason
    return "poor_language_alignment"


@dataclass
class ChunkConsistency:
    chunk_id: str
    language: str
    confidence: float
    score: float
    weight: float
    reason: str = ""


@dataclass
class ConsistencyAnalysis:
    consistent: bool
    score: float
    per_chunk: List[ChunkConsistency]
    query_language: str
    language_changes: int = 0
    recommendations: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class RepairResult:
    repaired: bool
    candidates: List[Candidate]
    original_score: float
    repaired_score: float
    attempts: List[str] = field(default_factory=list)
    analysis: Optional[ConsistencyAnalysis] = None

    @property
    def improvement(self) -> float:
        return self.repaired_score - self.original_score


class LanguageConsistencyService:
    """Checks and repairs the language coherence of a candidate list."""

    def __init__(self, config: Optional[ConsistencyConfig] = None):
        self.config = config or ConsistencyConfig()

    def analyze(self, query: str, candidates: List[Candidate]) -> ConsistencyAnalysis:
        """
        Weighted mean of per-chunk language scores. A chunk weighs
        tokens / (position + 1), so long, highly ranked chunks dominate.
        """
        query_lang = detect_language(query).primary
        per_chunk: List[ChunkConsistency] = []
        total = 0.0
        weights = 0.0
        for position, cand in enumerate(candidates):
            guess = detect_language(cand.text)
            score = language_match_score(query_lang, guess, cand.text)
            weight = max(cand.token_count, 1) / (position + 1)
            per_chunk.append(ChunkConsistency(cand.id, guess.primary, guess.confidence, score, weight, score_reason(score)))
            total += score * weight
            weights += weight

        # Nothing to be inconsistent with
        overall = total / weights if weights > 0 else 1.0
        changes = sum(1 for a, b in zip(per_chunk, per_chunk[1:]) if a.language != b.language)
        analysis = ConsistencyAnalysis(
            consistent=overall >= self.config.threshold,
            score=overall,
            per_chunk=per_chunk,
            query_language=query_lang,
            language_changes=changes,
        )
        analysis.recommendations = self.recommendations(analysis)
        logger.debug(
            "Language consistency %.3f over %d chunks (query=%s)",
            overall, len(per_chunk), query_lang,
        )
        return analysis

    def recommendations(self, analysis: ConsistencyAnalysis) -> List[Dict[str, str]]:
        out = []
        if analysis.score < self.config.threshold:
            out.append({
                "type": "language_mismatch",
                "severity": "high",
                "message": f"Language consistency below threshold ({analysis.score:.2f} < {self.config.threshold})",
            })
        if analysis.language_changes > 2:
            out.append({
                "type": "excessive_language_switching",
                "severity": "medium",
                "message": f"Too many language changes ({analysis.language_changes}) in retrieved chunks",
            })
        if analysis.query_language == "zh" and analysis.per_chunk and not any(
            c.language == "zh" for c in analysis.per_chunk
        ):
            out.append({
                "type": "no_native_language_content",
                "severity": "medium",
                "message": "Chinese query but no Chinese content retrieved",
            })
        return out

    def repair(self, query: str, candidates: List[Candidate], analysis: ConsistencyAnalysis) -> RepairResult:
        """
        Reorder (and possibly prune) candidates toward the query language.

        Returns the original list unchanged unless the score improves by more
        than `min_improvement`.
        """
        if analysis.consistent or not candidates:
            return RepairResult(False, list(candidates), analysis.score, analysis.score, analysis=analysis)

        query_lang = analysis.query_language
        lang_of = {c.chunk_id: c.language for c in analysis.per_chunk}
        score_of = {c.chunk_id: c.score for c in analysis.per_chunk}
        attempts: List[str] = []
        repaired = list(candidates)

        if query_lang != "mixed":
            repaired.sort(key=lambda c: 0 if lang_of.get(c.id) == query_lang else 1)
            attempts.append("language_preference_reranking")

        if len(repaired) > 2:
            kept = [c for c in repaired if score_of.get(c.id, 1.0) >= self.config.chunk_floor]
            if kept and len(kept) < len(repaired):
                repaired = kept
                attempts.append("low_consistency_filtering")

        if len(repaired) > 2:
            def group(c: Candidate) -> int:
                lang = lang_of.get(c.id)
                if lang == query_lang:
                    return 0
                return 1 if lang == "mixed" else 2
            repaired.sort(key=group)
            attempts.append("language_grouping")

        after = self.analyze(query, repaired)
        result = RepairResult(True, repaired, analysis.score, after.score, attempts, after)
        if result.improvement <= self.config.min_improvement:
            failure = ConsistencyRepairFailure(
                "Repair did not improve language consistency enough",
                before=round(analysis.score, 3),
                after=round(after.score, 3),
            )
            logger.warning("%s for %r", failure, query[:80])
            return RepairResult(False, list(candidates), analysis.score, analysis.score, attempts, analysis)
        logger.info("Language repair %.3f -> %.3f (%s)", analysis.score, after.score, ", ".join(attempts))
        return result

    def ensure(self, query: str, candidates: List[Candidate]) -> RepairResult:
        """Analyze and, if needed, repair in one call."""
        analysis = self.analyze(query, candidates)
        return self.repair(query, candidates, analysis)
