"""
Answer-aware compression.

Fits each candidate's text into a token budget chosen by its content type.
Text already within budget is returned unchanged; longer text keeps its most
query-relevant sentences, in their original order.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import Candidate
from .params import DEFAULT_FIELD_BUDGETS
from .text import estimate_tokens, join_sentences, split_sentences, truncate_to_tokens

logger = logging.getLogger(__name__)


# Allowed overshoot of the budget, in estimated tokens
BUDGET_EPSILON = 2

CONTENT_PATTERNS: Dict[str, re.Pattern] = {
    "technical": re.compile(
        r"\b(fee|gas|cost|tps|consensus|algorithm|protocol|transaction|block|hash|signature|wallet|address|private key|public key)\b",
        re.IGNORECASE,
    ),
    "procedural": re.compile(
        r"\b(step|first|second|then|next|finally|click|select|enter|copy|paste|scan|send|receive)\b",
        re.IGNORECASE,
    ),
    "blockchain": re.compile(
        r"\b(solana|ethereum|algorand|bitcoin|blockchain|network|mainnet|testnet|token|coin|smart contract)\b",
        re.IGNORECASE,
    ),
    "quantitative": re.compile(
        r"\b\d+\.?\d*\s*(percent|%|seconds?|minutes?|hours?|days?|weeks?|months?|years?|usd|dollars?|cents?)",
        re.IGNORECASE,
    ),
    "examples": re.compile(r"\b(example|instance|such as|like|including|e\.g\.|for example)", re.IGNORECASE),
}

STOPWORDS = frozenset("""
the and for are but not you all can had her was one our out day get has him
his how man new now old see two way who boy did its let put say she too use
""".split())

ANSWER_TYPE_SCALES: Dict[str, Dict[str, float]] = {
    "short_answer": {"*": 0.5},
    "step_by_step": {"how_to": 1.3, "general": 0.8},
    "detailed_explanation": {"*": 1.2},
    "comparison": {"technical_spec": 1.3, "feature": 1.2},
}

_FUNCTION_WORD = re.compile(r"^(and|the|of|to|in|for|with|on|at|by)$", re.IGNORECASE)
_NUMBER_WORD = re.compile(r"^\d+\.?$")
_EXAMPLE = re.compile(r"\b(example|such as|like|including|e\.g\.)", re.IGNORECASE)
_HOW_TO_SENTENCE = re.compile(r"(\b\d+\.|\b(step|first|click|select|enter)\b)", re.IGNORECASE)
_METRIC_SENTENCE = re.compile(r"\b\d+\.?\d*\s*(seconds?|ms|tps|percent|%|usd)", re.IGNORECASE)
_DIRECT_ANSWER = re.compile(r"^(yes|no|you can|it is|the answer)\b", re.IGNORECASE)


@dataclass
class CompressionQuery:
    """What a query asks for, as far as compression cares."""
    keywords: List[str]
    intent: str = "general"
    preserve_patterns: List[str] = field(default_factory=list)


@dataclass
class CompressionStats:
    original_tokens: int = 0
    compressed_tokens: int = 0
    compression_ratio: float = 1.0
    chunks_compressed: int = 0
    average_compression: float = 0.0


@dataclass
class CompressionResult:
    candidates: List[Candidate]
    statistics: CompressionStats
    query: Optional[CompressionQuery] = None


def analyze_query(query: str) -> CompressionQuery:
    """Keywords (3+ letters, minus stopwords) and the patterns worth preserving."""
    lowered = (query or "").lower()
    keywords = [w for w in re.findall(r"\b\w{3,}\b", lowered) if w not in STOPWORDS]
    ctx = CompressionQuery(keywords=keywords)
    if re.search(r"\b(how to|step|process|tutorial)\b", lowered):
        ctx.intent, ctx.preserve_patterns = "procedural", ["procedural"]
    elif re.search(r"\b(fee|cost|gas|price|expensive|cheap)\b", lowered):
        ctx.intent, ctx.preserve_patterns = "financial", ["quantitative", "technical"]
    elif re.search(r"\b(fast|slow|speed|time|duration|tps)\b", lowered):
        ctx.intent, ctx.preserve_patterns = "performance", ["quantitative", "technical"]
    elif re.search(r"\b(solana|ethereum|algorand|blockchain|network)\b", lowered):
        ctx.intent, ctx.preserve_patterns = "blockchain", ["blockchain", "technical"]
    elif re.search(r"\b(example|show|demo)\b", lowered):
        ctx.intent, ctx.preserve_patterns = "example", ["examples", "procedural"]
    return ctx


def infer_chunk_type(candidate: Candidate) -> str:
    """Chunk type from metadata; content heuristics when metadata only says general."""
    declared = candidate.metadata.chunk_type
    if declared and declared != "general":
        return declared

    text = candidate.text.lower()
    if re.search(r"\b(step|first|second|then|next|finally)\b", text):
        return "how_to"
    if re.search(r"\b(fee|gas|cost|tps|consensus|algorithm)\b", text):
        return "technical_spec"
    if re.search(r"\b(solana|ethereum|algorand|blockchain)\b", text):
        return "blockchain_info"
    if re.search(r"\b(feature|functionality|capability|support)\b", text):
        return "feature"
    if re.search(r"[?].*[.]|question.*answer", text):
        return "qa_pair"
    if re.search(r"\b(amazing|best|great|easy|simple|powerful)\b", text):
        return "marketing"
    if re.search(r"\b(terms|conditions|policy|legal|disclaimer)\b", text):
        return "boilerplate"
    return "general"


def scale_budgets(budgets: Dict[str, int], answer_type: Optional[str]) -> Dict[str, int]:
    scales = ANSWER_TYPE_SCALES.get(answer_type or "", {})
    scaled = dict(budgets)
    for key in scaled:
        factor = scales.get(key, scales.get("*"))
        if factor is not None:
            scaled[key] = int(math.floor(scaled[key] * factor))
    return scaled


class CompressionService:
    """
    Field-budgeted, query-aware compression.

    Pure: candidates come back as modified copies with `text_override` and a
    `compression` record; the input list is not touched.
    """

    def __init__(self, field_budgets: Optional[Dict[str, int]] = None, preserve_examples: bool = True):
        self.field_budgets = dict(DEFAULT_FIELD_BUDGETS)
        self.field_budgets.update(field_budgets or {})
        self.preserve_examples = preserve_examples

    def compress(
        self,
        candidates: List[Candidate],
        query: str,
        field_budgets: Optional[Dict[str, int]] = None,
    ) -> CompressionResult:
        budgets = dict(self.field_budgets)
        budgets.update(field_budgets or {})
        if not candidates:
            return CompressionResult([], CompressionStats(compression_ratio=0.0))

        ctx = analyze_query(query)
        out: List[Candidate] = []
        stats = CompressionStats()
        ratios = []
        for cand in candidates:
            original = cand.token_count
            chunk_type = infer_chunk_type(cand)
            budget = budgets.get(chunk_type, budgets.get("general", DEFAULT_FIELD_BUDGETS["general"]))
            text = cand.text
            if original > budget + BUDGET_EPSILON:
                try:
                    text = self.compress_text(text, budget, ctx, chunk_type, cand.chunk.lang)
                except Exception as e:
                    logger.warning("Compression failed for %s, keeping it whole: %s", cand.id, e)
                    text = cand.text
            compressed = estimate_tokens(text)
            applied = compressed < original
            stats.original_tokens += original
            stats.compressed_tokens += compressed
            record = {
                "chunk_type": chunk_type,
                "budget": budget,
                "original_tokens": original,
                "compressed_tokens": compressed,
                "ratio": compressed / original if original else 1.0,
                "applied": applied,
            }
            if applied:
                stats.chunks_compressed += 1
                ratios.append(record["ratio"])
                out.append(cand.with_changes(text_override=text, compression=record))
            else:
                out.append(cand.with_changes(compression=record))

        stats.compression_ratio = stats.compressed_tokens / stats.original_tokens if stats.original_tokens else 1.0
        stats.average_compression = sum(ratios) / len(ratios) if ratios else 0.0
        logger.debug(
            "Compressed %d candidates: %d -> %d tokens",
            len(out), stats.original_tokens, stats.compressed_tokens,
        )
        return CompressionResult(out, stats, ctx)

    def compress_for_answer_type(
        self,
        candidates: List[Candidate],
        query: str,
        answer_type: Optional[str],
        field_budgets: Optional[Dict[str, int]] = None,
    ) -> CompressionResult:
        """Compress with budgets scaled for the expected answer shape."""
        budgets = dict(self.field_budgets)
        budgets.update(field_budgets or {})
        return self.compress(candidates, query, scale_budgets(budgets, answer_type))

    def compress_text(
        self,
        text: str,
        limit: int,
        ctx: CompressionQuery,
        chunk_type: str = "general",
        lang: str = "en",
    ) -> str:
        sentences = split_sentences(text)
        if len(sentences) <= 1:
            result = self.compress_words(text, limit, ctx)
        else:
            scored = [
                (i, self.score_sentence(s, ctx, chunk_type), estimate_tokens(s))
                for i, s in enumerate(sentences)
            ]
            ranked = sorted(scored, key=lambda item: -item[1])

            chosen: Dict[int, str] = {}
            used = 0
            for idx, score, tokens in ranked:
                if used + tokens <= limit:
                    chosen[idx] = sentences[idx]
                    used += tokens
                elif score > 0.7 and len(chosen) < 2 and limit - used > 20:
                    chosen[idx] = self.compress_words(sentences[idx], limit - used, ctx)
                    break
            sep_lang = "zh" if lang == "zh" else "en"
            result = join_sentences([chosen[i] for i in sorted(chosen)], sep_lang)
            if not result:
                result = self.compress_words(text, limit, ctx)

        if estimate_tokens(result) > limit + BUDGET_EPSILON:
            result = truncate_to_tokens(result, limit)
        return result

    def score_sentence(self, sentence: str, ctx: CompressionQuery, chunk_type: str) -> float:
        score = 0.3
        lowered = sentence.lower()
        matches = 0
        for keyword in ctx.keywords:
            if keyword in lowered:
                matches += 1
                score += 0.2
        if matches > 1:
            score += 0.1

        for name in ctx.preserve_patterns:
            pattern = CONTENT_PATTERNS.get(name)
            if pattern is not None:
                score += 0.1 * len(pattern.findall(sentence))

        if chunk_type == "how_to" and _HOW_TO_SENTENCE.search(sentence):
            score += 0.2
        elif chunk_type == "technical_spec" and _METRIC_SENTENCE.search(sentence):
            score += 0.2
        elif chunk_type == "qa_pair" and _DIRECT_ANSWER.search(sentence.strip()):
            score += 0.2
        elif chunk_type in ("marketing", "boilerplate") and matches == 0:
            score *= 0.3

        words = len(sentence.split())
        if words < 5:
            score *= 0.8
        elif words > 50:
            score *= 0.9

        if self.preserve_examples and _EXAMPLE.search(sentence):
            score += 0.15
        return min(score, 1.0)

    def compress_words(self, text: str, limit: int, ctx: CompressionQuery) -> str:
        """Keep the highest-scoring words (about 0.75 words per token), in order."""
        words = text.split()
        if len(words) <= limit * 0.75:
            return text
        target = int(math.floor(limit * 0.75))
        ranked = sorted(range(len(words)), key=lambda i: -self.score_word(words[i], ctx))
        keep = sorted(ranked[:target])
        if len(keep) < 3:
            return " ".join(words[:target])
        return " ".join(words[i] for i in keep)

    @staticmethod
    def score_word(word: str, ctx: CompressionQuery) -> float:
        lowered = word.lower()
        score = 0.1
        if lowered.strip(".,;:!?()\"'") in ctx.keywords:
            score += 0.8
        for name in ctx.preserve_patterns:
            pattern = CONTENT_PATTERNS.get(name)
            if pattern is not None and pattern.search(word):
                score += 0.4
        if _NUMBER_WORD.match(word):
            score += 0.3
        elif len(word) > 6:
            score += 0.2
        elif _FUNCTION_WORD.match(word):
            score -= 0.2
        return max(score, 0.0)
