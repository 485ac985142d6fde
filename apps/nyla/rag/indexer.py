"""
Index builds and snapshot publication.

An IndexSnapshot bundles everything one query reads (chunks, vector matrix,
BM25 index) and never changes after construction. Builds produce a new
snapshot off to the side; publishing it is a single reference swap, so a
query sees either the old snapshot or the new one in full. A failed build
leaves the published snapshot serving.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import numpy as np

from .bm25 import BM25Index
from .chunker import ingest, validate_record
from .embeddings import EmbeddingProvider, embed_documents_iter, l2_normalize
from .errors import IndexBuildError, SchemaValidationError
from .glossary import Glossary
from .models import Chunk, SourceRecord
from .params import NylaConfig
from .store import SCHEMA_VERSION, KnowledgeStore, StoreManifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class IndexSnapshot:
    """Immutable view of one index version."""
    version: int
    chunks: Tuple[Chunk, ...]
    vectors: np.ndarray = field(repr=False)
    has_vector: np.ndarray = field(repr=False)
    bm25: BM25Index = field(repr=False)
    kb_hash: str = ""
    embedding_model: str = ""
    built_at: float = 0.0
    by_id: Dict[str, int] = field(default_factory=dict, repr=False)

    @classmethod
    def create(
        cls,
        version: int,
        chunks: List[Chunk],
        vectors: Dict[str, Optional[np.ndarray]],
        bm25: BM25Index,
        kb_hash: str = "",
        embedding_model: str = "",
        dimension: int = 0,
    ) -> "IndexSnapshot":
        present = [v for v in vectors.values() if v is not None]
        dim = len(present[0]) if present else max(dimension, 1)
        matrix = np.zeros((len(chunks), dim), dtype=np.float32)
        mask = np.zeros(len(chunks), dtype=bool)
        for i, chunk in enumerate(chunks):
            vec = vectors.get(chunk.id)
            if vec is not None:
                matrix[i] = l2_normalize(vec)
                mask[i] = True
        matrix.setflags(write=False)
        mask.setflags(write=False)
        return cls(
            version=version,
            chunks=tuple(chunks),
            vectors=matrix,
            has_vector=mask,
            bm25=bm25,
            kb_hash=kb_hash,
            embedding_model=embedding_model,
            built_at=time.time(),
            by_id={c.id: i for i, c in enumerate(chunks)},
        )

    @classmethod
    def empty(cls) -> "IndexSnapshot":
        return cls.create(0, [], {}, BM25Index([], []))

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def dimension(self) -> int:
        return int(self.vectors.shape[1])

    def get(self, chunk_id: str) -> Optional[Chunk]:
        idx = self.by_id.get(chunk_id)
        return self.chunks[idx] if idx is not None else None

    def vector(self, chunk_id: str) -> Optional[np.ndarray]:
        idx = self.by_id.get(chunk_id)
        if idx is None or not self.has_vector[idx]:
            return None
        return self.vectors[idx]

    def dense_search(self, query_vector: np.ndarray, k: int) -> List[Tuple[Chunk, float]]:
        """
        Top-k chunks by cosine similarity. Chunks without a vector are
        never returned.
        """
        if k <= 0 or not self.has_vector.any():
            return []
        query = l2_normalize(query_vector)
        if query.shape[0] != self.dimension:
            raise ValueError(f"Query vector has dimension {query.shape[0]}, index has {self.dimension}")
        scores = self.vectors @ query
        scores = np.where(self.has_vector, scores, -np.inf)
        k = min(k, int(self.has_vector.sum()))
        order = np.argsort(-scores, kind="stable")[:k]
        return [(self.chunks[i], float(scores[i])) for i in order]


class SnapshotHolder:
    """
    Holds the published snapshot.

    `current()` is what queries capture at their start; `publish()` replaces
    it with one assignment. Only one build may run at a time.
    """

    def __init__(self, snapshot: Optional[IndexSnapshot] = None):
        self._snapshot = snapshot or IndexSnapshot.empty()
        self._build_lock = threading.Lock()

    def current(self) -> IndexSnapshot:
        return self._snapshot

    def publish(self, snapshot: IndexSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        logger.info("Published index v%d (%d chunks), replacing v%d", snapshot.version, len(snapshot), previous.version)

    @property
    def building(self) -> bool:
        return self._build_lock.locked()

    @contextmanager
    def exclusive_build(self):
        if not self._build_lock.acquire(blocking=False):
            raise IndexBuildError("Another index build is already running")
        try:
            yield
        finally:
            self._build_lock.release()


def compute_kb_hash(record_hashes: Dict[str, str]) -> str:
    """Hash over sorted (record id, content hash) pairs."""
    digest = hashlib.sha256()
    for record_id in sorted(record_hashes):
        digest.update(f"{record_id}:{record_hashes[record_id]}\n".encode("utf-8"))
    return digest.hexdigest()


def collect_record_hashes(records: Iterable[Union[Dict[str, Any], SourceRecord]]) -> Dict[str, str]:
    """
    Content hash per valid record id. Like `ingest`, the first occurrence
    of a repeated id wins; invalid records are left out.
    """
    hashes: Dict[str, str] = {}
    for raw in records:
        try:
            record = validate_record(raw)
        except SchemaValidationError:
            continue
        hashes.setdefault(record.id, record.content_hash)
    return hashes


def _text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class KBVersionManager:
    """Decides when the persisted index is stale."""

    def __init__(self, store: KnowledgeStore):
        self.store = store

    def needs_rebuild(self, record_hashes: Dict[str, str], embedding_model: str = "") -> Tuple[bool, str]:
        """
        Returns:
            (rebuild needed, reason)
        """
        manifest = self.store.read_manifest()
        if manifest is None or not manifest.table:
            return True, "no index"
        if manifest.schema_version != SCHEMA_VERSION:
            return True, f"schema version {manifest.schema_version} != {SCHEMA_VERSION}"
        if manifest.chunk_count == 0:
            return True, "index is empty"
        if embedding_model and manifest.embedding_model != embedding_model:
            return True, f"embedding model changed ({manifest.embedding_model} -> {embedding_model})"
        if manifest.kb_hash != compute_kb_hash(record_hashes):
            return True, "knowledge base changed"
        return False, "up to date"

    def changed_records(self, record_hashes: Dict[str, str]) -> Dict[str, List[str]]:
        manifest = self.store.read_manifest()
        old = manifest.record_hashes if manifest else {}
        return {
            "added": sorted(set(record_hashes) - set(old)),
            "removed": sorted(set(old) - set(record_hashes)),
            "modified": sorted(k for k in record_hashes if k in old and old[k] != record_hashes[k]),
        }


@dataclass
class IndexProgress:
    """One step of an index build."""
    stage: str
    done: int
    total: int
    message: str = ""
    snapshot: Optional[IndexSnapshot] = field(default=None, repr=False)


class KnowledgeIndexer:
    """
    Builds snapshots from source records and publishes them.

    Handles the full pipeline:
    1. Validate and chunk records
    2. Embed dense views (reusing vectors for unchanged chunks)
    3. Build the BM25 index over sparse views
    4. Persist to the store (if any) and publish
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        holder: Optional[SnapshotHolder] = None,
        store: Optional[KnowledgeStore] = None,
        glossary: Optional[Glossary] = None,
        config: Optional[NylaConfig] = None,
        thinking_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self.embedder = embedder
        self.holder = holder or SnapshotHolder()
        self.store = store
        self.glossary = glossary
        self.config = config or NylaConfig()
        self._emit = thinking_callback or (lambda s, c: None)

    @property
    def embedding_model(self) -> str:
        return str(getattr(self.embedder, "model", type(self.embedder).__name__))

    def build_iter(self, records: Iterable[Union[Dict[str, Any], SourceRecord]]) -> Iterator[IndexProgress]:
        """
        Build and publish a new snapshot, yielding progress as it goes.

        The last event has stage "done" and carries the published snapshot.

        Raises:
            IndexBuildError: another build is running, too many embeddings
                failed, or BM25/persistence failed. The published snapshot
                is left untouched.
        """
        with self.holder.exclusive_build():
            previous = self.holder.current()

            valid: List[SourceRecord] = []
            for raw in records:
                try:
                    valid.append(validate_record(raw))
                except SchemaValidationError as e:
                    logger.warning("Skipping record: %s", e)
            record_hashes = collect_record_hashes(valid)
            chunks = ingest(valid, glossary=self.glossary, config=self.config.chunking)
            if not chunks:
                raise IndexBuildError(
                    "No valid records to index",
                    records=len(valid),
                    serving_version=previous.version,
                )
            self._emit("ingest", f"{len(valid)} records -> {len(chunks)} chunks")
            yield IndexProgress("ingest", len(chunks), len(chunks), f"{len(valid)} records")

            vectors, failed, to_embed = yield from self._embed(chunks, previous)
            ratio = len(failed) / to_embed if to_embed else 0.0
            if ratio > self.config.embedding.max_failure_ratio:
                raise IndexBuildError(
                    f"{len(failed)} of {to_embed} embeddings failed",
                    failure_ratio=round(ratio, 3),
                )
            if failed:
                logger.warning("%d chunks indexed without a vector: %s", len(failed), failed[:10])

            bm25 = BM25Index.build(
                ((c.id, c.sparse_text) for c in chunks),
                k1=self.config.bm25.k1,
                b=self.config.bm25.b,
            )
            yield IndexProgress("bm25", len(bm25), len(chunks), f"{len(bm25.postings)} terms")

            version = previous.version + 1
            manifest = self.store.read_manifest() if self.store else None
            if manifest is not None:
                version = max(version, manifest.active_version + 1)
            kb_hash = compute_kb_hash(record_hashes)
            snapshot = IndexSnapshot.create(
                version=version,
                chunks=chunks,
                vectors=vectors,
                bm25=bm25,
                kb_hash=kb_hash,
                embedding_model=self.embedding_model,
                dimension=getattr(self.embedder, "dimension", 0),
            )

            if self.store is not None:
                try:
                    table = self.store.write_snapshot(version, chunks, vectors, snapshot.dimension)
                    self.store.commit(StoreManifest(
                        active_version=version,
                        table=table,
                        kb_hash=kb_hash,
                        record_hashes=record_hashes,
                        embedding_model=self.embedding_model,
                        dimension=snapshot.dimension,
                        chunk_count=len(chunks),
                        built_at=snapshot.built_at,
                    ))
                except Exception as e:
                    raise IndexBuildError(f"Persisting snapshot failed: {e}", version=version) from e
                yield IndexProgress("persist", len(chunks), len(chunks), table)

            self.holder.publish(snapshot)
            self._emit("index", f"Published index v{version} with {len(chunks)} chunks")
            yield IndexProgress("done", len(chunks), len(chunks), f"v{version}", snapshot=snapshot)

    def _embed(self, chunks: List[Chunk], previous: IndexSnapshot):
        """Embed dense views, reusing vectors whose dense text did not change."""
        vectors: Dict[str, Optional[np.ndarray]] = {}
        pending: List[Chunk] = []
        for chunk in chunks:
            old = previous.get(chunk.id)
            old_vec = previous.vector(chunk.id) if old is not None else None
            if old_vec is not None and _text_hash(old.dense_text) == _text_hash(chunk.dense_text):
                vectors[chunk.id] = old_vec
            else:
                pending.append(chunk)
        if vectors:
            logger.info("Reusing %d vectors from index v%d", len(vectors), previous.version)

        failed: List[str] = []
        batch_size = self.config.embedding.batch_size
        for progress in embed_documents_iter(self.embedder, [c.dense_text for c in pending], batch_size):
            for i, vec in zip(progress.indices, progress.vectors):
                if vec is None:
                    failed.append(pending[i].id)
                else:
                    vectors[pending[i].id] = vec
            self._emit("embed", f"Embedded {progress.done}/{progress.total}")
            yield IndexProgress("embed", progress.done, progress.total, f"batch {progress.batch_index + 1}/{progress.total_batches}")
        return vectors, failed, len(pending)

    def build(self, records: Iterable[Union[Dict[str, Any], SourceRecord]]) -> IndexSnapshot:
        """Build and publish a snapshot, returning it."""
        snapshot = None
        for progress in self.build_iter(records):
            if progress.snapshot is not None:
                snapshot = progress.snapshot
        return snapshot

    def load_from_store(self) -> Optional[IndexSnapshot]:
        """Publish the store's active snapshot, if there is one."""
        if self.store is None:
            return None
        manifest = self.store.read_manifest()
        if manifest is None or not manifest.table:
            return None
        try:
            chunks, vectors = self.store.read_snapshot(manifest.table)
            bm25 = BM25Index.build(((c.id, c.sparse_text) for c in chunks), k1=self.config.bm25.k1, b=self.config.bm25.b)
        except Exception as e:
            logger.warning("Could not load index %s: %s", manifest.table, e)
            return None
        snapshot = IndexSnapshot.create(
            version=manifest.active_version,
            chunks=chunks,
            vectors=vectors,
            bm25=bm25,
            kb_hash=manifest.kb_hash,
            embedding_model=manifest.embedding_model,
            dimension=manifest.dimension,
        )
        self.holder.publish(snapshot)
        return snapshot

    def ensure_index(self, records: List[Union[Dict[str, Any], SourceRecord]]) -> IndexSnapshot:
        """
        Serve the persisted index when it matches the records, otherwise
        rebuild.
        """
        record_hashes = collect_record_hashes(records)
        current = self.holder.current()
        if len(current) and current.kb_hash == compute_kb_hash(record_hashes):
            return current

        if self.store is not None:
            rebuild, reason = KBVersionManager(self.store).needs_rebuild(record_hashes, self.embedding_model)
            if not rebuild:
                snapshot = self.load_from_store()
                if snapshot is not None:
                    return snapshot
                reason = "stored index unreadable"
            logger.info("Rebuilding index: %s", reason)
        return self.build(records)
