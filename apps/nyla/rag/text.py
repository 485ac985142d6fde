"""
Shared text utilities: script detection, token estimates, sentence splitting
and identifier patterns used by ingest, retrieval and post-processing.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List


CJK_CHAR = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")
LATIN_CHAR = re.compile(r"[A-Za-z]")

# Word units: each CJK character counts as one word, other runs split on whitespace
_WORD_UNITS = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]|[^\s\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+")

EVM_ADDRESS = re.compile(r"\b0x[a-fA-F0-9]{40}\b")
SOLANA_ADDRESS = re.compile(r"\b[1-9A-HJ-NP-Za-km-z]{32,44}\b")
TICKER = re.compile(r"\$([A-Z0-9]{2,10})\b")
X_HANDLE = re.compile(r"(?<![\w@/])@([A-Za-z0-9_]{1,15})\b")
URL = re.compile(r"https?://[^\s<>\"'()\[\]{}，。、；]+")
VERSION = re.compile(r"\b\d+\.\d+\.\d+\b")
ACRONYM = re.compile(r"\b[A-Z]{2,10}\b")


@dataclass(frozen=True)
class LanguageGuess:
    """Primary language of a text with a 0-1 confidence."""
    primary: str  # "en", "zh", "mixed" or "unknown"
    confidence: float
    cjk_ratio: float = 0.0
    latin_ratio: float = 0.0


def detect_language(text: str) -> LanguageGuess:
    """
    Classify text as en / zh / mixed from character-class ratios.

    Ratios are taken over the full character count, so whitespace and digits
    dilute both scripts equally.
    """
    if not text:
        return LanguageGuess("unknown", 0.0)

    total = len(text)
    cjk = len(CJK_CHAR.findall(text))
    latin = len(LATIN_CHAR.findall(text))
    cjk_ratio = cjk / total
    latin_ratio = latin / total

    if cjk_ratio > latin_ratio and cjk_ratio > 0.1:
        return LanguageGuess("zh", min(cjk_ratio * 2, 1.0), cjk_ratio, latin_ratio)
    if latin_ratio > cjk_ratio and latin_ratio > 0.3:
        return LanguageGuess("en", min(latin_ratio * 1.5, 1.0), cjk_ratio, latin_ratio)
    if cjk or latin:
        return LanguageGuess("mixed", 0.5, cjk_ratio, latin_ratio)
    return LanguageGuess("unknown", 0.0, cjk_ratio, latin_ratio)


def has_cjk(text: str) -> bool:
    return bool(text) and CJK_CHAR.search(text) is not None


def word_units(text: str) -> List[str]:
    return _WORD_UNITS.findall(text or "")


def word_unit_starts(text: str) -> List[int]:
    """Offsets at which each word unit of `text` begins."""
    return [m.start() for m in _WORD_UNITS.finditer(text or "")]


def estimate_tokens(text: str) -> int:
    """
    Rough token estimate: ~1 token per 4 characters or 0.75 per word unit,
    whichever is larger. CJK characters count as one word unit each.
    """
    if not text:
        return 0
    return int(math.ceil(max(len(text) / 4, len(word_units(text)) * 0.75)))


def split_sentences(text: str) -> List[str]:
    """
    Split text into sentences on Latin (.!? followed by whitespace) and CJK
    (。！？) terminators. Line breaks also end a sentence.
    """
    if not text:
        return []
    marked = re.sub(r"([.!?])\s+", "\\1\n", text)
    marked = re.sub(r"([。！？])", "\\1\n", marked)
    return [s.strip() for s in marked.split("\n") if s.strip()]


def join_sentences(sentences: List[str], lang: str = "en") -> str:
    """Join sentences back together; CJK sentences need no separator."""
    if lang == "zh":
        return "".join(sentences)
    return " ".join(sentences)


def extract_identifiers(text: str) -> Dict[str, List[str]]:
    """
    Pull exact identifiers out of text: contract addresses, tickers, handles
    and URLs. Each list keeps first-seen order without duplicates.
    """
    text = text or ""
    evm = _unique(EVM_ADDRESS.findall(text))
    without_evm = EVM_ADDRESS.sub(" ", URL.sub(" ", text))
    solana = _unique(
        m for m in SOLANA_ADDRESS.findall(without_evm)
        if any(c.isdigit() for c in m) and any(c.isalpha() for c in m)
    )
    return {
        "addresses": evm + solana,
        "tickers": _unique(TICKER.findall(text)),
        "handles": _unique(X_HANDLE.findall(URL.sub(" ", text))),
        "urls": _unique(u.rstrip(".,;:!?") for u in URL.findall(text)),
    }


def strip_identifiers(text: str) -> str:
    """Remove URLs and on-chain addresses, leaving natural-language prose."""
    if not text:
        return ""
    cleaned = URL.sub(" ", text)
    cleaned = EVM_ADDRESS.sub(" ", cleaned)
    cleaned = SOLANA_ADDRESS.sub(
        lambda m: " " if any(c.isdigit() for c in m.group(0)) else m.group(0),
        cleaned,
    )
    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r" +([,.;:!?])", r"\1", cleaned)
    return cleaned.strip()


def _unique(items) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def truncate_to_tokens(text: str, limit: int) -> str:
    """Longest prefix of whole word units whose token estimate fits `limit`."""
    if estimate_tokens(text) <= limit:
        return text
    ends = [m.end() for m in _WORD_UNITS.finditer(text)]
    lo, hi = 0, len(ends)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if estimate_tokens(text[:ends[mid - 1]]) <= limit:
            lo = mid
        else:
            hi = mid - 1
    return text[:ends[lo - 1]].rstrip() if lo else ""
