"""
Content quality filter.

Scores each candidate for marketing language, boilerplate and general
quality. Strict mode removes what crosses a threshold; lenient mode keeps it
and attaches flags. Length bounds and blacklist matches always remove.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import Candidate
from .params import FilterConfig
from .text import word_units

logger = logging.getLogger(__name__)


MARKETING_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(amazing|incredible|fantastic|revolutionary|game[-\s]changing|breakthrough)\b",
    r"(\b(best|top|number one|leading|premier|ultimate|perfect)\b|#1\b)",
    r"\b(limited time|act now|don't miss|hurry|exclusive|special offer)\b",
    r"\b(free|discount|sale|save money|cheap|affordable|cost-effective)\b",
    r"\b(most|fastest|easiest|simplest|smartest|safest|secure)\b",
    r"(\b(guaranteed|promise|ensure|completely|totally|absolutely)\b|\b100%)",
    r"\b(revolutionary|innovative|cutting[-\s]edge|state[-\s]of[-\s]the[-\s]art)\b",
    r"\b(try now|get started|sign up|join|download|install|click here)\b",
    r"\b(learn more|find out|discover|explore|check out)\b",
    r"\b(enterprise|business|professional|commercial|corporate)\b",
    r"\b(solution|service|platform|product|offering)\b",
)]

BOILERPLATE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(terms of service|privacy policy|disclaimer|copyright|all rights reserved)\b",
    r"\b(not financial advice|do your own research|dyor|at your own risk)\b",
    r"\b(subject to terms|may apply|void where prohibited)\b",
    r"\b(lorem ipsum|placeholder|example text|sample content)\b",
    r"\b(to be determined|tbd|coming soon|under construction)\b",
    r"\b(contact us|customer service|support team|help desk)\b",
    r"\b(this section|in this article|as mentioned above|as we discussed)\b",
    r"\b(for more information|additional details|further reading)\b",
    r"\b(home|about|services|contact|blog|news|faq|help)\b",
    r"\b(navigation|menu|sidebar|footer|header)\b",
)]

POSITIVE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(step|process|method|approach|technique|strategy)\b",
    r"\b(example|instance|demonstration|tutorial|guide)\b",
    r"\b(because|therefore|however|moreover|furthermore|additionally)\b",
    r"\b(first|second|third|then|next|finally|conclusion)\b",
    r"\b\d+\.?\d*\s*(percent|%|seconds?|minutes?|usd|fees?)",
)]

# Matched against the original text; the caps pattern is case-sensitive
NEGATIVE_PATTERNS = [
    re.compile(r"\b(um|uh|like|you know|basically|literally|actually)\b", re.IGNORECASE),
    re.compile(r"\b(thing|stuff|whatever|something|anything)\b", re.IGNORECASE),
    re.compile(r"[.]{3,}|\?{2,}|!{2,}"),
    re.compile(r"[A-Z]{3,}"),
    re.compile(r"\b(\w)\1{2,}\b"),
]

DOMAIN_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(transaction|hash|signature|consensus|validator|node|block|chain)\b",
    r"\b(smart contract|dapp|defi|nft|token|cryptocurrency|blockchain)\b",
    r"\b(wallet|address|private key|public key|mnemonic|seed phrase)\b",
    r"\b(gas|fee|tps|throughput|latency|confirmation|finality)\b",
    r"\b(solana|ethereum|algorand|bitcoin|polygon|avalanche|cardano)\b",
    r"\b(mainnet|testnet|devnet|network|protocol|ecosystem)\b",
)]

_SUPERLATIVE = re.compile(r"(\b(most|best|top|ultimate|perfect)\b|#1\b)", re.IGNORECASE)
_TECHNICAL_QUERY = re.compile(r"\b(how|technical|spec|fee|gas|cost)\b")
_DEFINITION_QUERY = re.compile(r"\b(what|explain|tell me)\b")


@dataclass
class ContentAnalysis:
    """Scores and decision for one candidate."""
    quality_score: float = 0.0
    marketing_score: float = 0.0
    boilerplate_score: float = 0.0
    flags: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    keep: bool = True
    primary_reason: Optional[str] = None


@dataclass
class FilteredOut:
    candidate: Candidate
    reason: str
    pattern: Optional[str] = None


@dataclass
class FilterResult:
    kept: List[Candidate]
    removed: List[FilteredOut]
    statistics: Dict[str, Any]


def _count(patterns: Sequence[re.Pattern], text: str) -> int:
    return sum(len(p.findall(text)) for p in patterns)


def quality_distribution(candidates: List[Candidate]) -> Dict[str, float]:
    if not candidates:
        return {"high": 0, "medium": 0, "low": 0, "average": 0.0}
    scores = [c.quality_score or 0.0 for c in candidates]
    return {
        "high": sum(1 for s in scores if s >= 0.7),
        "medium": sum(1 for s in scores if 0.4 <= s < 0.7),
        "low": sum(1 for s in scores if s < 0.4),
        "average": sum(scores) / len(scores),
    }


class ContentQualityFilter:
    """Removes or flags marketing, boilerplate and low-quality candidates."""

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()

    def marketing_score(self, text: str) -> float:
        words = max(len(word_units(text)), 1)
        matches = _count(MARKETING_PATTERNS, text)
        score = min(matches * 0.1 + (matches / words) * 2, 1.0)
        if "!" in text:
            score += min(text.count("!") * 0.05, 0.2)
        if _SUPERLATIVE.search(text):
            score += 0.1
        return min(score, 1.0)

    def boilerplate_score(self, text: str) -> float:
        words = max(len(word_units(text)), 1)
        matches = _count(BOILERPLATE_PATTERNS, text)
        score = min(matches * 0.15 + (matches / words) * 3, 1.0)

        sentences = [s for s in re.split(r"[.!?。！？]+", text) if s.strip()]
        if len(sentences) > 3:
            lengths = [len(s) for s in sentences]
            mean = sum(lengths) / len(lengths)
            variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
            # Uniform sentence lengths read like a template
            if variance < mean * 0.3:
                score += 0.2
        return min(score, 1.0)

    def quality_score(self, text: str, candidate: Optional[Candidate] = None) -> float:
        score = 0.5
        words = len(word_units(text))
        score += _count(POSITIVE_PATTERNS, text) * 0.05
        score += _count(DOMAIN_PATTERNS, text) * 0.08
        score -= _count(NEGATIVE_PATTERNS, text) * 0.1

        if re.search(r"\b\d+\b", text):
            score += 0.1
        if re.search(r"\b(step|first|second|then|next)\b", text, re.IGNORECASE):
            score += 0.15
        if re.search(r"\b(example|such as|for instance)\b", text, re.IGNORECASE):
            score += 0.1

        if 20 <= words <= 200:
            score += 0.1
        elif words < 10:
            score -= 0.2
        elif words > 300:
            score -= 0.1

        if candidate is not None:
            chunk_type = candidate.metadata.chunk_type
            if chunk_type == "qa_pair":
                score += 0.1
            elif chunk_type == "how_to":
                score += 0.15
            if candidate.chunk.tags:
                score += 0.05
            if candidate.final_score > 0.7:
                score += 0.1
        return max(0.0, min(score, 1.0))

    def analyze(
        self,
        text: str,
        candidate: Optional[Candidate] = None,
        strict: bool = True,
        config: Optional[FilterConfig] = None,
    ) -> ContentAnalysis:
        cfg = config or self.config
        analysis = ContentAnalysis()
        chars = len(text)
        words = len(word_units(text))

        if chars < cfg.min_content_length:
            analysis.keep, analysis.primary_reason = False, "too_short"
        elif chars > cfg.max_content_length:
            analysis.keep, analysis.primary_reason = False, "too_long"
        elif words < cfg.min_word_count:
            analysis.keep, analysis.primary_reason = False, "insufficient_words"
        if not analysis.keep:
            analysis.reasons.append(analysis.primary_reason)
            return analysis

        analysis.marketing_score = self.marketing_score(text)
        if analysis.marketing_score >= cfg.marketing_threshold:
            analysis.flags.append("marketing")
            analysis.reasons.append("High marketing content")
            if strict:
                analysis.keep, analysis.primary_reason = False, "marketing_content"
                return analysis

        analysis.boilerplate_score = self.boilerplate_score(text)
        if analysis.boilerplate_score >= cfg.boilerplate_threshold:
            analysis.flags.append("boilerplate")
            analysis.reasons.append("High boilerplate content")
            if strict:
                analysis.keep, analysis.primary_reason = False, "boilerplate_content"
                return analysis

        analysis.quality_score = self.quality_score(text, candidate)
        if analysis.quality_score < cfg.quality_threshold:
            analysis.flags.append("low_quality")
            analysis.reasons.append("Low content quality")
            if strict:
                analysis.keep, analysis.primary_reason = False, "low_quality"
                return analysis

        if analysis.marketing_score > 0.4:
            analysis.flags.append("promotional")
        if analysis.boilerplate_score > 0.5:
            analysis.flags.append("template")
        return analysis

    def filter(
        self,
        candidates: List[Candidate],
        mode: str = "strict",
        config: Optional[FilterConfig] = None,
    ) -> FilterResult:
        """
        Filter candidates.

        Args:
            candidates: Candidates to check
            mode: "strict" removes flagged content, "lenient" keeps it with flags
            config: Thresholds to use instead of the filter's own

        Returns:
            FilterResult with kept candidates (quality score and flags set),
            removed candidates with reasons, and statistics
        """
        if mode not in ("strict", "lenient"):
            raise ValueError(f"Unknown filter mode {mode!r}")
        kept: List[Candidate] = []
        removed: List[FilteredOut] = []
        reasons: Dict[str, int] = {}
        for cand in candidates:
            analysis = self.analyze(cand.text, cand, strict=(mode == "strict"), config=config)
            if analysis.keep:
                flags = cand.flags + [f for f in analysis.flags if f not in cand.flags]
                kept.append(cand.with_changes(quality_score=analysis.quality_score, flags=flags))
            else:
                removed.append(FilteredOut(cand, analysis.primary_reason))
                reasons[analysis.primary_reason] = reasons.get(analysis.primary_reason, 0) + 1

        if removed:
            logger.debug("Content filter (%s) removed %d/%d: %s", mode, len(removed), len(candidates), reasons)
        return FilterResult(kept, removed, {
            "original": len(candidates),
            "kept": len(kept),
            "removed": len(removed),
            "filter_reasons": reasons,
            "quality_distribution": quality_distribution(kept),
        })

    def adaptive_filter(self, candidates: List[Candidate], query: str, mode: str = "strict") -> FilterResult:
        """
        Filter with thresholds adjusted to the query: technical questions
        tolerate more marketing language, definitional ones want higher
        quality.
        """
        cfg = self.config.model_copy()
        lowered = (query or "").lower()
        if _TECHNICAL_QUERY.search(lowered):
            cfg.marketing_threshold = min(cfg.marketing_threshold + 0.2, 0.9)
        if _DEFINITION_QUERY.search(lowered):
            cfg.quality_threshold = max(cfg.quality_threshold + 0.1, 0.2)
        return self.filter(candidates, mode=mode, config=cfg)

    def filter_by_blacklist(
        self,
        candidates: List[Candidate],
        patterns: Sequence[Union[str, re.Pattern]],
    ) -> FilterResult:
        """Remove every candidate whose text matches any blacklist pattern."""
        if not patterns:
            return FilterResult(list(candidates), [], {"original": len(candidates), "kept": len(candidates), "removed": 0})
        compiled = [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]
        kept: List[Candidate] = []
        removed: List[FilteredOut] = []
        for cand in candidates:
            hit = next((p for p in compiled if p.search(cand.text)), None)
            if hit is None:
                kept.append(cand)
            else:
                removed.append(FilteredOut(cand, "blacklisted", hit.pattern))
        return FilterResult(kept, removed, {"original": len(candidates), "kept": len(kept), "removed": len(removed)})
