"""
Data model for the retrieval core.

Source records are validated with pydantic at the ingest boundary. Everything
downstream of ingest works with plain dataclasses: immutable Chunks produced
once per index build, and per-query Candidates that never leave one
retrieval call.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

import numpy as np
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .text import estimate_tokens


CHUNK_TYPES = (
    "qa_pair",
    "technical_spec",
    "how_to",
    "feature",
    "blockchain_info",
    "marketing",
    "boilerplate",
    "general",
)

INTENTS = (
    "procedural",
    "financial",
    "performance",
    "blockchain",
    "exploratory",
    "social",
    "general",
)

LANGUAGES = ("en", "zh", "bilingual")


class SourceRecord(BaseModel):
    """
    One knowledge-base record as authored.

    Unknown fields are kept (extra="allow") and end up in the chunk's
    metadata extension map.
    """
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    id: str
    source_id: str
    type: str
    lang: str
    title: str
    section: str
    tags: List[str]
    source_url: str
    content_hash: str = Field(validation_alias=AliasChoices("content_hash", "hash"))
    body: Optional[str] = None
    summary_en: Optional[str] = None
    summary_zh: Optional[str] = None

    facts: Dict[str, Any] = Field(default_factory=dict)
    meta_card: Optional[Dict[str, Any]] = None
    content_type: Optional[str] = None
    query_boost: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    priority: Optional[Union[int, str]] = None
    chunk_type: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # ISO date the content was last verified; only "volatile" content goes stale
    as_of: Optional[str] = None
    stability: Optional[str] = None

    @field_validator("id", "source_id", "type", "title", "content_hash")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("lang")
    @classmethod
    def _known_lang(cls, value: str) -> str:
        value = value.lower()
        if value not in LANGUAGES:
            raise ValueError(f"must be one of {', '.join(LANGUAGES)}")
        return value

    @field_validator("chunk_type")
    @classmethod
    def _known_chunk_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in CHUNK_TYPES:
            raise ValueError(f"unknown chunk_type {value!r}")
        return value

    @model_validator(mode="after")
    def _has_text(self) -> "SourceRecord":
        if not any((self.body, self.summary_en, self.summary_zh)):
            raise ValueError("one of body, summary_en or summary_zh is required")
        return self

    def extension_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


@dataclass
class ChunkMetadata:
    """
    Chunk metadata: a known `chunk_type` variant, the fields every source may
    carry, and `extra` for whatever else a source attached.
    """
    chunk_type: str = "general"
    category: Optional[str] = None
    priority: Optional[Union[int, str]] = None
    content_type: Optional[str] = None
    query_boost: List[str] = field(default_factory=list)
    source_url: str = ""
    content_hash: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    as_of: Optional[str] = None
    stability: Optional[str] = None
    parent_id: Optional[str] = None
    chunk_index: int = 0
    total_chunks: int = 1
    overlap_tokens: int = 0
    prev_id: Optional[str] = None
    next_id: Optional[str] = None
    related_chunks: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkMetadata":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class Chunk:
    """
    The atomic retrievable unit.

    `dense_text` is only ever embedded and `sparse_text` is only ever indexed
    by BM25; `text` is what gets shown downstream.
    """
    id: str
    source_id: str
    type: str
    section: str
    tags: List[str]
    lang: str
    title: str
    text: str
    dense_text: str
    sparse_text: str
    facts: Dict[str, str] = field(default_factory=dict)
    meta_card: Optional[Dict[str, Any]] = None
    token_count: int = 0
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary for the store."""
        data = asdict(self)
        data["metadata"] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        payload = dict(data)
        payload["metadata"] = ChunkMetadata.from_dict(payload.get("metadata") or {})
        known = {k: v for k, v in payload.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def __repr__(self) -> str:
        return f"Chunk(id='{self.id}', lang={self.lang}, type={self.metadata.chunk_type}, tokens={self.token_count})"


@dataclass
class QueryVariant:
    """One query text to search with; the original or a glossary rewrite."""
    text: str
    source: str = "original"
    is_original: bool = True
    expansion_terms: List[str] = field(default_factory=list)


@dataclass
class QueryContext:
    """Per-request analysis of the user's query."""
    original: str
    language: str
    confidence: float
    variants: List[QueryVariant]
    keywords: List[str]
    intent: str = "general"
    entities: List[str] = field(default_factory=list)
    # Addresses, tickers, handles and URLs found verbatim in the query
    exact_signals: List[str] = field(default_factory=list)

    @property
    def expanded(self) -> bool:
        return len(self.variants) > 1


@dataclass
class Candidate:
    """
    A chunk annotated with the scores of one retrieval call.

    Post-processing stages return modified copies (dataclasses.replace)
    instead of mutating the candidates they were given.
    """
    chunk: Chunk
    dense_score: float = 0.0
    bm25_score: float = 0.0
    fusion_score: float = 0.0
    cross_encoder_score: Optional[float] = None
    mmr_score: Optional[float] = None
    final_score: float = 0.0
    query_source: str = "original"
    search_method: str = "dense"
    embedding: Optional[np.ndarray] = field(default=None, repr=False)
    cluster_id: int = -1
    flags: List[str] = field(default_factory=list)
    quality_score: Optional[float] = None
    text_override: Optional[str] = None
    compression: Optional[Dict[str, Any]] = None

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float = 0.0, **kwargs: Any) -> "Candidate":
        return cls(chunk=chunk, fusion_score=score, final_score=score, **kwargs)

    @property
    def id(self) -> str:
        return self.chunk.id

    @property
    def text(self) -> str:
        return self.text_override if self.text_override is not None else self.chunk.text

    @property
    def metadata(self) -> ChunkMetadata:
        return self.chunk.metadata

    @property
    def token_count(self) -> int:
        if self.text_override is None:
            return self.chunk.token_count or estimate_tokens(self.chunk.text)
        return estimate_tokens(self.text_override)

    def with_changes(self, **changes: Any) -> "Candidate":
        return replace(self, **changes)

    def scores(self) -> Dict[str, Optional[float]]:
        return {
            "dense": self.dense_score,
            "bm25": self.bm25_score,
            "fusion": self.fusion_score,
            "cross_encoder": self.cross_encoder_score,
            "mmr": self.mmr_score,
            "final": self.final_score,
            "quality": self.quality_score,
        }

    def __repr__(self) -> str:
        return (
            f"Candidate(id='{self.id}', final={self.final_score:.4f}, "
            f"fusion={self.fusion_score:.4f}, method={self.search_method}, source={self.query_source})"
        )


@dataclass
class ContextItem:
    """What the downstream answer generator receives for one snippet."""
    text: str
    facts: Dict[str, str]
    meta_card: Optional[Dict[str, Any]]
    scores: Dict[str, Optional[float]]
    metadata: Dict[str, Any]

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "ContextItem":
        chunk = candidate.chunk
        metadata = chunk.metadata.to_dict()
        metadata.update({
            "id": chunk.id,
            "source_id": chunk.source_id,
            "title": chunk.title,
            "section": chunk.section,
            "lang": chunk.lang,
            "tags": list(chunk.tags),
            "search_method": candidate.search_method,
            "query_source": candidate.query_source,
            "flags": list(candidate.flags),
        })
        if candidate.compression:
            metadata["compression"] = dict(candidate.compression)
        return cls(
            text=candidate.text,
            facts=dict(chunk.facts),
            meta_card=chunk.meta_card,
            scores=candidate.scores(),
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalStats:
    chunk_count: int = 0
    candidates_retrieved: int = 0
    candidates_after_mmr: int = 0
    candidates_after_filter: int = 0
    compression_ratio: float = 1.0
    consistency_score: float = 1.0
    repaired: bool = False
    latency_ms: float = 0.0
    parameter_version: int = 0
    degraded_stages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalResult:
    """Final, ordered context plus aggregate statistics."""
    items: List[ContextItem]
    stats: RetrievalStats
    query: Optional[QueryContext] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "stats": self.stats.to_dict(),
        }
