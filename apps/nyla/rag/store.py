"""
LanceDB persistence for index snapshots.

Each snapshot version gets its own table (`chunks_v<N>`) holding the chunk
payload and its vector. `manifest.json` names the active version; it is
rewritten through a temp file and os.replace so readers always see either the
old or the new manifest.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import lancedb
import numpy as np
import pyarrow as pa
from pydantic import BaseModel, Field

from ..infra.env import get_data_dir
from .models import Chunk

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1


class StoreManifest(BaseModel):
    """What the store knows about the active snapshot."""
    schema_version: int = SCHEMA_VERSION
    active_version: int = 0
    table: Optional[str] = None
    kb_hash: str = ""
    record_hashes: Dict[str, str] = Field(default_factory=dict)
    embedding_model: str = ""
    dimension: int = 0
    chunk_count: int = 0
    built_at: float = 0.0
    tables: List[str] = Field(default_factory=list)


class KnowledgeStore:
    """
    Versioned chunk + vector store on LanceDB.

    The store only persists; which snapshot is served is decided by the
    indexer's SnapshotHolder.
    """

    MANIFEST_NAME = "manifest.json"
    KEEP_VERSIONS = 2

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_data_dir()
        os.makedirs(self.db_path, exist_ok=True)
        self.db = lancedb.connect(self.db_path)

    @property
    def manifest_path(self) -> Path:
        return Path(self.db_path) / self.MANIFEST_NAME

    @staticmethod
    def table_name(version: int) -> str:
        return f"chunks_v{version}"

    @staticmethod
    def _schema(dimension: int) -> pa.Schema:
        return pa.schema([
            pa.field("id", pa.string()),
            pa.field("payload", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), dimension)),
            pa.field("has_vector", pa.bool_()),
        ])

    def read_manifest(self) -> Optional[StoreManifest]:
        if not self.manifest_path.exists():
            return None
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                return StoreManifest.model_validate(json.load(f))
        except Exception as e:
            logger.warning("Unreadable manifest %s: %s", self.manifest_path, e)
            return None

    def write_manifest(self, manifest: StoreManifest) -> None:
        tmp_path = self.manifest_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(manifest.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.manifest_path)

    def write_snapshot(
        self,
        version: int,
        chunks: List[Chunk],
        vectors: Dict[str, Optional[np.ndarray]],
        dimension: int,
    ) -> str:
        """
        Write one snapshot's chunks and vectors to a fresh table.

        Chunks without a vector are stored with a zero vector and
        has_vector=False.

        Returns:
            The table name
        """
        name = self.table_name(version)
        dimension = max(1, dimension)
        rows = []
        for chunk in chunks:
            vec = vectors.get(chunk.id)
            rows.append({
                "id": chunk.id,
                "payload": json.dumps(chunk.to_dict(), ensure_ascii=False),
                "vector": (vec if vec is not None else np.zeros(dimension, dtype=np.float32)).astype(np.float32).tolist(),
                "has_vector": vec is not None,
            })
        schema = self._schema(dimension)
        if rows:
            self.db.create_table(name, data=pa.Table.from_pylist(rows, schema=schema), mode="overwrite")
        else:
            self.db.create_table(name, schema=schema, mode="overwrite")
        logger.info("Wrote %d chunks to %s", len(rows), name)
        return name

    def read_snapshot(self, table: str) -> Tuple[List[Chunk], Dict[str, np.ndarray]]:
        """Load chunks and vectors back from a snapshot table."""
        arrow = self.db.open_table(table).to_arrow()
        chunks: List[Chunk] = []
        vectors: Dict[str, np.ndarray] = {}
        for row in arrow.to_pylist():
            chunk = Chunk.from_dict(json.loads(row["payload"]))
            chunks.append(chunk)
            if row["has_vector"]:
                vectors[chunk.id] = np.asarray(row["vector"], dtype=np.float32)
        return chunks, vectors

    def commit(self, manifest: StoreManifest) -> None:
        """
        Make `manifest.table` the active snapshot and drop tables older than
        the last KEEP_VERSIONS.
        """
        previous = self.read_manifest()
        tables = list(previous.tables) if previous else []
        if manifest.table and manifest.table not in tables:
            tables.append(manifest.table)
        stale = tables[:-self.KEEP_VERSIONS] if len(tables) > self.KEEP_VERSIONS else []
        manifest.tables = [t for t in tables if t not in stale]
        manifest.built_at = manifest.built_at or time.time()
        self.write_manifest(manifest)

        for table in stale:
            try:
                self.db.drop_table(table)
            except Exception as e:
                logger.warning("Could not drop stale table %s: %s", table, e)

    def clear(self) -> None:
        """Drop every snapshot table and the manifest."""
        manifest = self.read_manifest()
        for table in (manifest.tables if manifest else []):
            try:
                self.db.drop_table(table)
            except Exception as e:
                logger.warning("Could not drop table %s: %s", table, e)
        if self.manifest_path.exists():
            os.remove(self.manifest_path)
