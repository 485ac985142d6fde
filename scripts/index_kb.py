#!/usr/bin/env python3
"""
Script to index the NYLA knowledge base into LanceDB.

Loads KB records (JSON or JSON lines), validates and chunks them, embeds the
dense views through OpenRouter and persists a new versioned snapshot. An
unchanged knowledge base is detected from the stored manifest and skipped.

Usage:
    python scripts/index_kb.py --kb-path data/nyla_kb.jsonl

Options:
    --kb-path       Path to the KB records file
    --db-path       Path to LanceDB database (default: $NYLA_DATA_DIR)
    --config        Retrieval config YAML (default: bundled retrieval.yaml)
    --force         Rebuild even if the stored index matches the records
    --clear         Drop all stored snapshots before indexing
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)


def main():
    parser = argparse.ArgumentParser(
        description="Index the NYLA knowledge base into LanceDB"
    )
    parser.add_argument(
        "--kb-path",
        type=str,
        required=True,
        help="Path to KB records (.json or .jsonl)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to LanceDB database",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Retrieval config YAML",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Rebuild even if the stored index is up to date",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Clear existing snapshots before indexing",
    )

    args = parser.parse_args()

    # Import after path setup
    from apps.nyla.infra.env import get_data_dir, get_log_level, load_env
    from apps.nyla.rag.chunker import load_records
    from apps.nyla.rag.embeddings import EmbeddingCache, OpenRouterEmbedder
    from apps.nyla.rag.errors import IndexBuildError
    from apps.nyla.rag.glossary import Glossary
    from apps.nyla.rag.indexer import (
        KBVersionManager,
        KnowledgeIndexer,
        collect_record_hashes,
        compute_kb_hash,
    )
    from apps.nyla.rag.params import load_config
    from apps.nyla.rag.store import KnowledgeStore

    load_env()
    logging.basicConfig(level=get_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not os.path.exists(args.kb_path):
        print(f"Error: KB path does not exist: {args.kb_path}")
        sys.exit(1)

    if not (os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")):
        print("Error: OPENROUTER_API_KEY environment variable not set")
        sys.exit(1)

    db_path = args.db_path or get_data_dir()
    config = load_config(args.config)

    print("=" * 60)
    print("NYLA Knowledge Base Indexer")
    print("=" * 60)
    print(f"KB path:         {args.kb_path}")
    print(f"Database path:   {db_path}")
    print(f"Embedding model: {config.embedding.model}")
    print(f"Batch size:      {config.embedding.batch_size}")
    print("=" * 60)

    start_time = time.time()

    print("\n[1/3] Loading records...")
    records = load_records(args.kb_path)
    print(f"  Loaded {len(records)} records")

    print("\n[2/3] Initializing embedder and store...")
    embedder = OpenRouterEmbedder(
        model=config.embedding.model,
        batch_size=config.embedding.batch_size,
        cache=EmbeddingCache(config.embedding.cache_size, config.embedding.cache_ttl_seconds),
    )
    store = KnowledgeStore(db_path)
    if args.clear:
        print("  Clearing existing index...")
        store.clear()

    indexer = KnowledgeIndexer(
        embedder,
        store=store,
        glossary=Glossary.load(),
        config=config,
    )
    print(f"  Embedder ready (model: {embedder.model}, dim: {embedder.dimension})")

    hashes = collect_record_hashes(records)
    rebuild, reason = KBVersionManager(store).needs_rebuild(hashes, embedder.model)
    if not rebuild and not args.force:
        manifest = store.read_manifest()
        print(f"\nIndex is up to date (v{manifest.active_version}, {manifest.chunk_count} chunks); use --force to rebuild")
        return
    print(f"  Rebuilding: {reason if rebuild else 'forced'}")

    if store.read_manifest() is not None:
        indexer.load_from_store()

    print("\n[3/3] Building index...")
    snapshot = None
    try:
        for progress in indexer.build_iter(records):
            print(f"  [{progress.stage}] {progress.done}/{progress.total} {progress.message}")
            if progress.snapshot is not None:
                snapshot = progress.snapshot
    except IndexBuildError as e:
        print(f"\nError: index build failed: {e}")
        sys.exit(1)

    elapsed = time.time() - start_time
    manifest = store.read_manifest()

    print("\n" + "=" * 60)
    print("Indexing Complete!")
    print("=" * 60)
    print(f"Index version:        v{snapshot.version}")
    print(f"Chunks indexed:       {len(snapshot)}")
    print(f"KB hash:              {compute_kb_hash(manifest.record_hashes)[:12]}")
    print(f"Time elapsed:         {elapsed:.1f}s")
    print(f"Database location:    {db_path}")
    print("=" * 60)


if __name__ == "__main__":
    main()
