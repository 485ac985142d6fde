"""
Knowledge-base ingest: validate source records and turn them into Chunks.

Records are validated once at this boundary. Each record becomes one chunk
per language (bilingual records get an `_en` and a `_zh` view), and any view
over its language's size policy is split at sentence boundaries with a
sentence-aligned overlap between consecutive parts.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from .errors import SchemaValidationError
from .glossary import Glossary
from .models import CHUNK_TYPES, Chunk, ChunkMetadata, SourceRecord
from .params import ChunkingConfig
from .text import (
    estimate_tokens,
    extract_identifiers,
    join_sentences,
    split_sentences,
    strip_identifiers,
    word_unit_starts,
)

logger = logging.getLogger(__name__)


BLOCKCHAINS = ("solana", "ethereum", "algorand")
FEATURE_TERMS = ("transfer", "swap", "qr code", "raid", "fees", "wallet")
TECHNICAL_TERMS = ("proof of stake", "proof of history", "gas", "tps", "transaction")

CHANNEL_PATTERNS = {
    "x_url": re.compile(r"https?://(?:www\.)?(?:x|twitter)\.com/[^\s]+", re.IGNORECASE),
    "telegram_url": re.compile(r"https?://(?:www\.)?(?:t\.me|telegram\.me)/[^\s]+", re.IGNORECASE),
    "linktree_url": re.compile(r"https?://(?:www\.)?linktr\.ee/[^\s]+", re.IGNORECASE),
}

_TECH_SPEC = re.compile(r"\d+\s*(tps|transactions|fees?|%)", re.IGNORECASE)
_HOW_TO = re.compile(r"^(how to|to \w+|step \d|first|then|finally)", re.IGNORECASE)


@dataclass(frozen=True)
class ChunkPolicy:
    """
    Size policy for one language.

    English is measured in estimated tokens, Chinese in characters. The
    overlap target is `overlap_ratio * max_size`, kept inside
    `overlap_bounds` (as fractions of max_size).
    """
    lang: str
    unit: str
    min_size: int
    max_size: int
    overlap_ratio: float = 0.175
    overlap_bounds: Tuple[float, float] = (0.15, 0.20)

    @classmethod
    def for_language(cls, lang: str, config: Optional[ChunkingConfig] = None) -> "ChunkPolicy":
        config = config or ChunkingConfig()
        if lang == "zh":
            low, high = config.zh_char_range
            unit = "chars"
        else:
            low, high = config.en_token_range
            unit = "tokens"
        return cls(
            lang="zh" if lang == "zh" else "en",
            unit=unit,
            min_size=int(low),
            max_size=int(high),
            overlap_ratio=config.overlap_ratio,
            overlap_bounds=tuple(config.overlap_bounds),
        )

    def measure(self, text: str) -> int:
        if self.unit == "chars":
            return len(re.sub(r"\s+", "", text or ""))
        return estimate_tokens(text)

    @property
    def overlap_min(self) -> int:
        return int(math.ceil(self.max_size * self.overlap_bounds[0]))

    @property
    def overlap_max(self) -> int:
        return int(self.max_size * self.overlap_bounds[1])

    @property
    def overlap_target(self) -> int:
        low = self.max_size * self.overlap_bounds[0]
        target = min(max(self.max_size * self.overlap_ratio, low), self.overlap_max)
        return int(round(target))


def validate_record(raw: Union[Dict[str, Any], SourceRecord]) -> SourceRecord:
    """
    Validate one raw record against the source schema.

    Raises:
        SchemaValidationError: listing every missing or invalid field
    """
    if isinstance(raw, SourceRecord):
        return raw
    if not isinstance(raw, dict):
        raise SchemaValidationError(None, [f"expected a mapping, got {type(raw).__name__}"])
    try:
        return SourceRecord.model_validate(raw)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
            problems.append(f"{loc}: {err.get('msg', 'invalid')}")
        raise SchemaValidationError(raw.get("id"), problems) from e


def load_records(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """
    Read raw records from a JSON array, a JSON object with a `records` list,
    or a JSON-lines file.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    if path.suffix == ".jsonl":
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    data = json.loads(content)
    if isinstance(data, dict):
        data = data.get("records", [])
    return list(data)


def split_into_parts(text: str, policy: ChunkPolicy) -> List[Tuple[List[str], int]]:
    """
    Split text into sentence groups no larger than the policy maximum.

    Returns (sentences, overlap_count) pairs where the first `overlap_count`
    entries of each part repeat the tail of the previous part. A final part
    below the policy minimum takes sentences back from the part before it.
    """
    sentences: List[str] = []
    for sentence in split_sentences(text):
        sentences.extend(_split_long_sentence(sentence, policy))
    if not sentences:
        return []
    if policy.measure(join_sentences(sentences, policy.lang)) <= policy.max_size:
        return [(sentences, 0)]

    parts: List[Tuple[List[str], int]] = []
    current: List[str] = []
    overlap_count = 0
    for sentence in sentences:
        candidate = current + [sentence]
        if current and policy.measure(join_sentences(candidate, policy.lang)) > policy.max_size:
            parts.append((current, overlap_count))
            current = _with_overlap(current, [sentence], policy)
            overlap_count = len(current) - 1
        else:
            current = candidate

    if len(current) > overlap_count:
        parts.append((current, overlap_count))
    return _rebalance_tail(parts, policy)


def part_overlap_size(part: Tuple[List[str], int], policy: ChunkPolicy) -> int:
    sentences, overlap_count = part
    return _overlap_size(sentences[:overlap_count], policy)


def _with_overlap(previous: List[str], own: List[str], policy: ChunkPolicy) -> List[str]:
    """Overlap from `previous` followed by `own`, shrinking the overlap to stay under the maximum."""
    overlap = _overlap_sentences(previous, policy)
    while overlap and policy.measure(join_sentences(overlap + own, policy.lang)) > policy.max_size:
        overlap = overlap[1:]
    return overlap + own


def _rebalance_tail(parts: List[Tuple[List[str], int]], policy: ChunkPolicy) -> List[Tuple[List[str], int]]:
    if len(parts) < 2:
        return parts
    (prev, prev_overlap), (last, last_overlap) = parts[-2], parts[-1]
    own = last[last_overlap:]
    moved = False
    while policy.measure(join_sentences(last, policy.lang)) < policy.min_size:
        if len(prev) - prev_overlap < 2:
            break
        shorter = prev[:-1]
        if policy.measure(join_sentences(shorter, policy.lang)) < policy.min_size:
            break
        grown = _with_overlap(shorter, [prev[-1]] + own, policy)
        if policy.measure(join_sentences(grown, policy.lang)) > policy.max_size:
            break
        prev, own, last = shorter, [prev[-1]] + own, grown
        moved = True
    if not moved:
        return parts
    return parts[:-2] + [(prev, prev_overlap), (last, len(last) - len(own))]


def _overlap_sentences(sentences: List[str], policy: ChunkPolicy) -> List[str]:
    """
    Walk backward from the end collecting sentences up to the overlap target.

    When whole sentences stop short of the overlap minimum, the tail of the
    next sentence back is added to reach the target.
    """
    overlap: List[str] = []
    blocked: Optional[str] = None
    for sentence in reversed(sentences):
        trial = [sentence] + overlap
        size = policy.measure(join_sentences(trial, policy.lang))
        if size > policy.overlap_max:
            blocked = sentence
            break
        overlap = trial
        if size >= policy.overlap_target:
            break
    # Never repeat the whole previous part
    if len(overlap) == len(sentences):
        overlap = overlap[1:]
    if blocked is not None and _overlap_size(overlap, policy) < policy.overlap_min:
        fragment = _tail_fragment(blocked, overlap, policy)
        if fragment:
            overlap = [fragment] + overlap
    return overlap


def _tail_fragment(sentence: str, rest: List[str], policy: ChunkPolicy) -> str:
    """Longest suffix of whole word units that keeps the overlap within its target."""
    starts = word_unit_starts(sentence)
    lo, hi = 0, len(starts)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        fragment = sentence[starts[len(starts) - mid]:]
        if policy.measure(join_sentences([fragment] + rest, policy.lang)) <= policy.overlap_target:
            lo = mid
        else:
            hi = mid - 1
    return sentence[starts[len(starts) - lo]:].strip() if lo else ""


def _overlap_size(sentences: List[str], policy: ChunkPolicy) -> int:
    return policy.measure(join_sentences(sentences, policy.lang)) if sentences else 0


def _split_long_sentence(sentence: str, policy: ChunkPolicy) -> List[str]:
    if policy.measure(sentence) <= policy.max_size:
        return [sentence]
    if policy.unit == "chars":
        pieces = []
        current = ""
        for ch in sentence:
            if policy.measure(current + ch) > policy.max_size:
                pieces.append(current)
                current = ""
            current += ch
        if current.strip():
            pieces.append(current)
        return [p.strip() for p in pieces if p.strip()]

    pieces = []
    words: List[str] = []
    for word in sentence.split():
        if words and policy.measure(" ".join(words + [word])) > policy.max_size:
            pieces.append(" ".join(words))
            words = []
        words.append(word)
    if words:
        pieces.append(" ".join(words))
    return pieces


def classify_chunk_type(text: str, record: SourceRecord, tags: List[str]) -> str:
    """
    Chunk type from explicit metadata, falling back to content heuristics.
    """
    if record.chunk_type:
        return record.chunk_type
    if record.content_type in CHUNK_TYPES:
        return record.content_type
    if record.type.lower() in ("faq", "qa", "qa_pair"):
        return "qa_pair"

    lowered = text.lower()
    if ("?" in text or "？" in text) and ("." in text or "。" in text):
        return "qa_pair"
    if _TECH_SPEC.search(text):
        return "technical_spec"
    if _HOW_TO.search(lowered.strip()):
        return "how_to"
    if "feature" in record.source_id.lower() or "feature" in record.section.lower():
        return "feature"
    if any(tag in BLOCKCHAINS for tag in tags):
        return "blockchain_info"
    return "general"


def extract_tags(text: str, record: SourceRecord) -> List[str]:
    tags: List[str] = []

    def add(tag: str) -> None:
        tag = tag.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)

    for tag in record.tags:
        add(tag)
    add(record.source_id)
    for part in record.section.split("."):
        add(part)

    lowered = text.lower()
    for chain in BLOCKCHAINS:
        if chain in lowered:
            add(chain)
    for feature in FEATURE_TERMS:
        if feature in lowered:
            add(feature)
    for term in TECHNICAL_TERMS:
        if re.search(r"\b" + re.escape(term) + r"\b", lowered):
            add(term.replace(" ", "_"))
    return tags


def flatten_meta_card(card: Optional[Dict[str, Any]], prefix: str = "") -> Dict[str, str]:
    """Scalar entries of a (possibly nested) meta card, keyed by dotted path."""
    flat: Dict[str, str] = {}
    for key, value in (card or {}).items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_meta_card(value, path))
        elif isinstance(value, (str, int, float, bool)) and value != "":
            flat[path] = str(value)
    return flat


def extract_facts(record: SourceRecord) -> Dict[str, str]:
    """
    Exact facts for downstream answers: the record's own facts, flattened
    meta-card scalars, and identifiers found in its text.
    """
    facts = {str(k): str(v) for k, v in record.facts.items() if v is not None}
    for key, value in flatten_meta_card(record.meta_card).items():
        facts.setdefault(key, value)

    haystack = " ".join(filter(None, [
        record.body, record.summary_en, record.summary_zh,
        " ".join(flatten_meta_card(record.meta_card).values()),
    ]))
    ids = extract_identifiers(haystack)
    if ids["addresses"]:
        facts.setdefault("contract_address", ids["addresses"][0])
    if ids["tickers"]:
        facts.setdefault("ticker", "$" + ids["tickers"][0])
    if ids["handles"]:
        facts.setdefault("x_handle", "@" + ids["handles"][0])

    websites = []
    for url in ids["urls"]:
        for name, pattern in CHANNEL_PATTERNS.items():
            if pattern.match(url):
                facts.setdefault(name, url)
                break
        else:
            websites.append(url)
    if websites:
        facts.setdefault("website", websites[0])
    return facts


def _join_summary(summary: Optional[str], body: Optional[str], sep: str) -> str:
    summary = (summary or "").strip()
    body = (body or "").strip()
    if not summary:
        return body
    if not body:
        return summary
    if summary[-1] in ".!?。！？":
        return summary + (" " if sep == ". " else "") + body
    return summary + sep + body


class KnowledgeChunker:
    """
    Turns validated source records into Chunks.

    The glossary, when given, adds cross-language synonyms of recognized
    entities to each chunk's sparse view.
    """

    def __init__(
        self,
        config: Optional[ChunkingConfig] = None,
        glossary: Optional[Glossary] = None,
    ):
        self.config = config or ChunkingConfig()
        self.glossary = glossary
        self.policies = {
            "en": ChunkPolicy.for_language("en", self.config),
            "zh": ChunkPolicy.for_language("zh", self.config),
        }

    def language_views(self, record: SourceRecord) -> List[Tuple[str, str, str]]:
        """(chunk_id, lang, text) for each language view of a record."""
        if record.lang == "bilingual":
            views = []
            en_text = _join_summary(record.summary_en, record.body, ". ")
            zh_text = _join_summary(record.summary_zh, record.body, "。")
            if record.summary_en or record.body:
                views.append((f"{record.id}_en", "en", en_text))
            if record.summary_zh or record.body:
                views.append((f"{record.id}_zh", "zh", zh_text))
            return views
        if record.lang == "zh":
            text = record.body or record.summary_zh or record.summary_en
        else:
            text = record.body or record.summary_en or record.summary_zh
        return [(record.id, record.lang, text.strip())]

    def chunk_record(self, record: SourceRecord) -> List[Chunk]:
        facts = extract_facts(record)
        views = self.language_views(record)
        per_view: List[List[Chunk]] = []
        for view_id, lang, text in views:
            parent_id = record.id if len(views) > 1 else None
            per_view.append(self._chunk_view(record, view_id, lang, text, facts, parent_id))

        if len(per_view) > 1:
            linked: List[List[Chunk]] = []
            for i, chunks in enumerate(per_view):
                others = [c.id for j, group in enumerate(per_view) if j != i for c in group]
                linked.append([_with_related(c, others) for c in chunks])
            per_view = linked
        return [c for group in per_view for c in group]

    def _chunk_view(
        self,
        record: SourceRecord,
        view_id: str,
        lang: str,
        text: str,
        facts: Dict[str, str],
        parent_id: Optional[str],
    ) -> List[Chunk]:
        policy = self.policies["zh" if lang == "zh" else "en"]
        parts = split_into_parts(text, policy)
        if not parts:
            return []
        total = len(parts)
        part_ids = [view_id] if total == 1 else [f"{view_id}_p{i}" for i in range(total)]

        chunks = []
        for index, part in enumerate(parts):
            sentences = part[0]
            part_text = join_sentences(sentences, policy.lang)
            tags = extract_tags(part_text, record)
            metadata = ChunkMetadata(
                chunk_type=classify_chunk_type(part_text, record, tags),
                category=record.category,
                priority=record.priority,
                content_type=record.content_type,
                query_boost=list(record.query_boost),
                source_url=record.source_url,
                content_hash=record.content_hash,
                created_at=record.created_at,
                updated_at=record.updated_at,
                as_of=record.as_of,
                stability=record.stability,
                parent_id=view_id if total > 1 else parent_id,
                chunk_index=index,
                total_chunks=total,
                overlap_tokens=part_overlap_size(part, policy),
                prev_id=part_ids[index - 1] if index > 0 else None,
                next_id=part_ids[index + 1] if index + 1 < total else None,
                extra=record.extension_fields(),
            )
            chunks.append(Chunk(
                id=part_ids[index],
                source_id=record.source_id,
                type=record.type,
                section=record.section,
                tags=tags,
                lang=lang,
                title=record.title,
                text=part_text,
                dense_text=self.dense_view(record, part_text),
                sparse_text=self.sparse_view(record, part_ids[index], part_text, tags, facts),
                facts=dict(facts),
                meta_card=record.meta_card,
                token_count=estimate_tokens(part_text),
                metadata=metadata,
            ))
        return chunks

    @staticmethod
    def dense_view(record: SourceRecord, text: str) -> str:
        """Natural-language text for embedding; raw identifiers removed."""
        return strip_identifiers(f"{record.title}\n{text}")

    def sparse_view(
        self,
        record: SourceRecord,
        chunk_id: str,
        text: str,
        tags: List[str],
        facts: Dict[str, str],
    ) -> str:
        """Lexical text for BM25: identifiers, glossary synonyms, key terms and the text."""
        ids = extract_identifiers(" ".join([text] + list(facts.values())))
        fields: List[str] = [record.title, chunk_id, record.source_id, record.section]
        fields.extend(tags)
        fields.extend(ids["addresses"])
        fields.extend(ids["tickers"] + ["$" + t for t in ids["tickers"]])
        fields.extend(ids["handles"] + ["@" + h for h in ids["handles"]])
        fields.extend(ids["urls"])
        if self.glossary is not None:
            fields.extend(self.glossary.expansion_terms(f"{record.title} {text}"))
        fields.extend(record.query_boost)
        fields.append(text)
        return " ".join(f for f in fields if f)


def _with_related(chunk: Chunk, related: List[str]) -> Chunk:
    return replace(chunk, metadata=replace(chunk.metadata, related_chunks=list(related)))


def ingest(
    records: Iterable[Union[Dict[str, Any], SourceRecord]],
    glossary: Optional[Glossary] = None,
    config: Optional[ChunkingConfig] = None,
) -> List[Chunk]:
    """
    Validate and chunk records. Invalid records are logged and skipped;
    a repeated record id keeps the first occurrence.

    Returns:
        Chunks in record order
    """
    chunker = KnowledgeChunker(config=config, glossary=glossary)
    chunks: List[Chunk] = []
    seen = set()
    skipped = 0
    for raw in records:
        try:
            record = validate_record(raw)
        except SchemaValidationError as e:
            logger.warning("Skipping record: %s", e)
            skipped += 1
            continue
        if record.id in seen:
            logger.warning("Skipping duplicate record id %s", record.id)
            skipped += 1
            continue
        seen.add(record.id)
        chunks.extend(chunker.chunk_record(record))

    logger.info("Ingested %d records into %d chunks (%d skipped)", len(seen), len(chunks), skipped)
    return chunks
