"""
Retrieval core for the bilingual (English/Chinese) knowledge-base assistant.

This module provides:
- Ingest and chunking of KB records into dense/sparse views
- Hybrid retrieval over an atomically swapped index snapshot (dense + BM25)
- MMR diversification, parent-child aggregation, quality filtering and
  answer-aware compression
- Language consistency checking with self-repair
- Online parameter tuning from per-query performance samples
"""

from .embeddings import EmbeddingCache, EmbeddingProvider, OpenRouterEmbedder
from .chunker import KnowledgeChunker, ingest, validate_record
from .bm25 import BM25Index
from .indexer import IndexSnapshot, KnowledgeIndexer, SnapshotHolder
from .retriever import HybridRetriever
from .mmr import MMRReranker
from .aggregation import ParentChildAggregator
from .compression import CompressionService
from .content_filter import ContentQualityFilter
from .language import LanguageConsistencyService
from .tuner import ParameterTuner, PerformanceSample
from .pipeline import RetrievalPipeline
from .models import Candidate, Chunk, ContextItem, RetrievalResult, SourceRecord
from .params import NylaConfig, RetrievalParameters, load_config

__all__ = [
    "EmbeddingCache",
    "EmbeddingProvider",
    "OpenRouterEmbedder",
    "KnowledgeChunker",
    "ingest",
    "validate_record",
    "BM25Index",
    "IndexSnapshot",
    "KnowledgeIndexer",
    "SnapshotHolder",
    "HybridRetriever",
    "MMRReranker",
    "ParentChildAggregator",
    "CompressionService",
    "ContentQualityFilter",
    "LanguageConsistencyService",
    "ParameterTuner",
    "PerformanceSample",
    "RetrievalPipeline",
    "Candidate",
    "Chunk",
    "ContextItem",
    "RetrievalResult",
    "SourceRecord",
    "NylaConfig",
    "RetrievalParameters",
    "load_config",
]
