"""
Query analysis: language detection, intent, keywords and glossary-based
query variants.
"""

from __future__ import annotations

import re
from typing import List, Optional

from .glossary import Glossary
from .models import QueryContext, QueryVariant
from .text import CJK_CHAR, detect_language, extract_identifiers


# Below this language confidence the query is handled with the general intent
LOW_CONFIDENCE = 0.3

SOCIAL_PATTERN = re.compile(
    r"(social|links|follow|contact|community|channels|where.*find|join.*community|"
    r"official.*links|twitter|telegram|x\.com|linktree|x.*account|"
    r"社交|社区|联系|关注|加入|社群|链接|連結|推特|电报)",
    re.IGNORECASE,
)

# Checked in order; the first match wins
INTENT_PATTERNS = [
    ("procedural", re.compile(r"\b(how to|how do|how can|steps?|process|tutorial|guide)\b|如何|怎么|步骤|教程", re.IGNORECASE)),
    ("financial", re.compile(r"\b(fees?|costs?|gas|price|expensive|cheap)\b|费用|手续费|价格|成本", re.IGNORECASE)),
    ("performance", re.compile(r"\b(fast|slow|speed|tps|latency|throughput|duration)\b|速度|快|慢", re.IGNORECASE)),
    ("blockchain", re.compile(r"\b(solana|ethereum|algorand|blockchain|network|mainnet)\b|区块链|网络|以太坊|索拉纳", re.IGNORECASE)),
    ("exploratory", re.compile(r"\b(what|explain|tell me|describe|overview|compare|vs|versus|options|difference)\b|什么|介绍|解释|比较|区别", re.IGNORECASE)),
]

STOPWORDS = frozenset("""
a an and are as at be but by can did do does for from had has have how i in
is it its of on or our out the their this to was what when where which who
why will with you your about me tell
""".split())


def detect_intent(query: str, confidence: float = 1.0) -> str:
    """
    Classify the query intent. Social intent wins over everything else since
    link/channel questions need the dedicated boost.
    """
    if not query or confidence < LOW_CONFIDENCE:
        return "general"
    if SOCIAL_PATTERN.search(query):
        return "social"
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(query):
            return intent
    return "general"


def extract_keywords(query: str) -> List[str]:
    """
    Content words of the query: Latin words of 3+ letters minus stopwords,
    plus CJK runs.
    """
    lowered = (query or "").lower()
    words = [w for w in re.findall(r"[a-z0-9][a-z0-9_\-]{2,}", lowered) if w not in STOPWORDS]
    cjk_runs = re.findall(r"[\u3400-\u4dbf\u4e00-\u9fff]{2,}", lowered)
    keywords: List[str] = []
    for word in words + cjk_runs:
        if word not in keywords:
            keywords.append(word)
    return keywords


def exact_signals(query: str) -> List[str]:
    """Identifiers in the query that only an exact lexical match can find."""
    found = extract_identifiers(query)
    return found["addresses"] + found["tickers"] + found["handles"] + found["urls"]


def analyze_query(
    query: str,
    glossary: Optional[Glossary] = None,
    max_expansions: int = 3,
) -> QueryContext:
    """
    Build the per-request QueryContext: language, intent, keywords and the
    list of query variants (the original first, then glossary rewrites).
    """
    text = (query or "").strip()
    guess = detect_language(text)
    language = guess.primary
    if language == "unknown":
        language = "mixed" if CJK_CHAR.search(text) else "en"

    variants = [QueryVariant(text=text, source="original", is_original=True)]
    entities: List[str] = []
    if glossary is not None and text:
        entities = [m.key for m in glossary.find(text)]
        for rewritten, key, alias in glossary.rewrite(text, max_variants=max_expansions):
            variants.append(QueryVariant(
                text=rewritten,
                source=f"glossary:{key}:{alias}",
                is_original=False,
                expansion_terms=[alias],
            ))

    return QueryContext(
        original=text,
        language=language,
        confidence=guess.confidence,
        variants=variants,
        keywords=extract_keywords(text),
        intent=detect_intent(text, guess.confidence),
        entities=list(dict.fromkeys(entities)),
        exact_signals=exact_signals(text),
    )
