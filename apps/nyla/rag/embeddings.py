"""
Embedding provider contract and the OpenRouter-backed adapter.

The retrieval core only needs `embed(text) -> vector` (L2-normalized,
deterministic per model); `embed_batch` is optional. Caching is an explicit
object owned by the adapter, and batch progress is reported by iterating
`embed_documents_iter`, not through callbacks.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from ..infra.env import load_env, get_openrouter_api_key, get_openai_base_url, get_openrouter_headers
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into a fixed-size vector."""

    dimension: int

    def embed(self, text: str) -> np.ndarray:
        ...


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vec = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vec))
    return vec / norm if norm > 0 else vec


@dataclass
class CacheEntry:
    """An entry in the embedding cache."""
    vector: np.ndarray
    timestamp: float
    hit_count: int = 0


class EmbeddingCache:
    """
    LRU cache for embedding vectors with a size cap and a TTL.

    Keys are (model, text) hashes. Thread-safe; the clock is injectable so
    expiry can be tested without sleeping.
    """

    def __init__(
        self,
        max_size: int = 2048,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the embedding cache.

        Args:
            max_size: Maximum number of vectors kept
            ttl_seconds: Time-to-live for entries in seconds
            clock: Time source returning seconds
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def make_key(text: str, model: str = "") -> str:
        return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()[:32]

    def get(self, text: str, model: str = "") -> Optional[np.ndarray]:
        """Return the cached vector if present and not expired."""
        key = self.make_key(text, model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() - entry.timestamp > self._ttl:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            entry.hit_count += 1
            self._hits += 1
            return entry.vector

    def set(self, text: str, vector: np.ndarray, model: str = "") -> None:
        key = self.make_key(text, model)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = CacheEntry(vector=vector, timestamp=self._clock())
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
                self._evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }


@dataclass
class EmbeddingProgress:
    """One batch worth of embedding progress."""
    batch_index: int
    total_batches: int
    done: int
    total: int
    indices: List[int] = field(default_factory=list)
    vectors: List[Optional[np.ndarray]] = field(default_factory=list, repr=False)
    failed: List[int] = field(default_factory=list)

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total else 1.0


def embed_documents_iter(
    provider: EmbeddingProvider,
    texts: Sequence[str],
    batch_size: int = 32,
) -> Iterator[EmbeddingProgress]:
    """
    Embed texts batch by batch, yielding one progress event per batch.

    Uses `provider.embed_batch` when available. If a whole batch fails, each
    item is retried on its own so only the items that really fail are
    reported in `failed` (with a None vector).
    """
    total = len(texts)
    if total == 0:
        return
    batch_size = max(1, batch_size)
    total_batches = (total + batch_size - 1) // batch_size
    batch_fn = getattr(provider, "embed_batch", None)
    done = 0

    for batch_idx in range(total_batches):
        start = batch_idx * batch_size
        indices = list(range(start, min(start + batch_size, total)))
        batch_texts = [texts[i] for i in indices]
        vectors: List[Optional[np.ndarray]] = []
        failed: List[int] = []

        batch_vectors = None
        if callable(batch_fn) and len(batch_texts) > 1:
            try:
                batch_vectors = batch_fn(batch_texts)
            except Exception as e:
                logger.warning("Embedding batch %d/%d failed, retrying per item: %s", batch_idx + 1, total_batches, e)

        if batch_vectors is not None:
            vectors = [l2_normalize(v) for v in batch_vectors]
        else:
            for i, text in zip(indices, batch_texts):
                try:
                    vectors.append(l2_normalize(provider.embed(text)))
                except Exception as e:
                    logger.warning("Embedding failed for item %d: %s", i, e)
                    vectors.append(None)
                    failed.append(i)

        done += len(indices)
        yield EmbeddingProgress(
            batch_index=batch_idx,
            total_batches=total_batches,
            done=done,
            total=total,
            indices=indices,
            vectors=vectors,
            failed=failed,
        )


class OpenRouterEmbedder:
    """
    Embedding client using an OpenRouter-hosted embedding model.

    Vectors are L2-normalized and cached in an injectable EmbeddingCache.
    Provider failures surface as EmbeddingError after tenacity retries.
    """

    MODEL = "mistralai/codestral-embed-2505"
    DIMENSION = 1536
    MAX_BATCH_SIZE = 32
    MAX_INPUT_LENGTH = 8192  # tokens per input

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        batch_size: int = 32,
        request_timeout: int = 60,
        cache: Optional[EmbeddingCache] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize the embedder.

        Args:
            api_key: OpenRouter API key. If None, reads from environment.
            model: Embedding model id (defaults to MODEL)
            dimension: Vector dimension (defaults to DIMENSION)
            batch_size: Number of documents to embed per API call.
            request_timeout: Timeout in seconds for API requests.
            cache: Embedding cache; pass None to disable caching
            client: Pre-built OpenAI-compatible client (mainly for tests)
        """
        self.model = model or self.MODEL
        self.dimension = dimension or self.DIMENSION
        self.batch_size = max(1, min(batch_size, self.MAX_BATCH_SIZE))
        self.request_timeout = request_timeout
        self.cache = cache

        if client is not None:
            self.client = client
            return

        load_env()
        self.api_key = api_key or get_openrouter_api_key()
        if not self.api_key:
            raise ValueError("OpenRouter API key required. Set OPENROUTER_API_KEY.")
        self.client = OpenAI(
            api_key=self.api_key.strip(),
            base_url=get_openai_base_url(),
            default_headers=get_openrouter_headers(),
        )

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    def _request(self, texts: List[str]) -> np.ndarray:
        # Rough estimate: 4 chars per token
        limit = self.MAX_INPUT_LENGTH * 4
        response = self.client.embeddings.create(
            model=self.model,
            input=[t[:limit] for t in texts],
            timeout=self.request_timeout,
        )
        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(embeddings)} vectors for {len(texts)} inputs",
                model=self.model,
            )
        return np.array(embeddings, dtype=np.float32)

    def _embed_uncached(self, texts: List[str]) -> np.ndarray:
        try:
            return self._request(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}", model=self.model, batch=len(texts)) from e

    def embed(self, text: str) -> np.ndarray:
        """
        Embed a single text.

        Empty text maps to the zero vector without a provider call.
        """
        text = (text or "").strip()
        if not text:
            return np.zeros(self.dimension, dtype=np.float32)
        if self.cache is not None:
            cached = self.cache.get(text, self.model)
            if cached is not None:
                return cached
        vector = l2_normalize(self._embed_uncached([text])[0])
        if self.cache is not None:
            self.cache.set(text, vector, self.model)
        return vector

    embed_query = embed

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed many texts, using the cache and batching the misses.

        Returns:
            numpy array of shape (len(texts), dimension)
        """
        result = np.zeros((len(texts), self.dimension), dtype=np.float32)
        pending: List[int] = []
        for i, raw in enumerate(texts):
            text = (raw or "").strip()
            if not text:
                continue
            cached = self.cache.get(text, self.model) if self.cache is not None else None
            if cached is not None:
                result[i] = cached
            else:
                pending.append(i)

        for start in range(0, len(pending), self.batch_size):
            chunk_idx = pending[start:start + self.batch_size]
            batch_texts = [texts[i].strip() for i in chunk_idx]
            vectors = self._embed_uncached(batch_texts)
            for i, text, vec in zip(chunk_idx, batch_texts, vectors):
                vec = l2_normalize(vec)
                result[i] = vec
                if self.cache is not None:
                    self.cache.set(text, vec, self.model)
        return result

    def embed_documents_iter(self, texts: Sequence[str]) -> Iterator[EmbeddingProgress]:
        return embed_documents_iter(self, texts, batch_size=self.batch_size)
