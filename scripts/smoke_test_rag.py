#!/usr/bin/env python3
"""
Quick smoke test script for the NYLA retrieval pipeline.

This script validates the complete retrieval path:
1. Environment setup (API key)
2. OpenRouter embeddings
3. LanceDB knowledge store
4. Hybrid retrieval (dense + BM25)
5. Full pipeline (MMR, filter, compression, language consistency)

Run: python scripts/smoke_test_rag.py

Prerequisites:
- OPENROUTER_API_KEY environment variable set
- Knowledge base indexed (run scripts/index_kb.py first)
"""

from __future__ import annotations

import logging
import os
import sys
import time

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)


QUERIES = [
    "How do I send tokens with NYLA?",
    "如何用奈拉发送代币？",
    "What are the official NYLA links?",
]


def print_header(title: str) -> None:
    """Print a formatted section header."""
    print(f"\n{'='*60}")
    print(f"  {title}")
    print('='*60)


def print_result(success: bool, message: str) -> None:
    """Print a test result."""
    status = "OK" if success else "FAIL"
    print(f"  {status}: {message}")


def test_environment() -> bool:
    """Test 1: Check environment setup."""
    print("\n[1/5] Checking environment...")
    from apps.nyla.infra.env import get_openrouter_api_key, load_env

    load_env()
    api_key = get_openrouter_api_key()
    if not api_key:
        print_result(False, "OPENROUTER_API_KEY not set")
        print("       Set it with: export OPENROUTER_API_KEY='your-key'")
        return False

    print_result(True, f"API key found (length: {len(api_key)})")
    return True


def test_embeddings() -> bool:
    """Test 2: Test OpenRouter embeddings."""
    print("\n[2/5] Testing embeddings...")

    try:
        from apps.nyla.rag.embeddings import OpenRouterEmbedder

        start = time.time()
        embedder = OpenRouterEmbedder()
        vec = embedder.embed_query("How do I send tokens?")
        elapsed = time.time() - start

        if len(vec) != embedder.dimension:
            print_result(False, f"Wrong dimension: expected {embedder.dimension}, got {len(vec)}")
            return False

        print_result(True, f"Embedding dimension = {len(vec)} ({elapsed:.2f}s)")
        return True

    except Exception as e:
        print_result(False, f"Embedding failed: {str(e)[:80]}")
        return False


def test_store() -> bool:
    """Test 3: Test the LanceDB knowledge store."""
    print("\n[3/5] Testing knowledge store...")

    try:
        from apps.nyla.infra.env import get_data_dir
        from apps.nyla.rag.store import KnowledgeStore

        db_path = get_data_dir()
        if not os.path.exists(db_path):
            print_result(False, f"Database not found at {db_path}")
            print("       Run: python scripts/index_kb.py --kb-path <records.jsonl>")
            return False

        manifest = KnowledgeStore(db_path).read_manifest()
        if manifest is None or not manifest.table:
            print_result(False, "No active snapshot in the store")
            return False

        print_result(True, f"Snapshot v{manifest.active_version}: {manifest.chunk_count} chunks ({manifest.embedding_model})")
        return True

    except Exception as e:
        print_result(False, f"Store check failed: {str(e)[:80]}")
        return False


def load_pipeline():
    from apps.nyla.rag.pipeline import RetrievalPipeline

    pipeline = RetrievalPipeline.create()
    if pipeline.indexer.load_from_store() is None:
        raise RuntimeError("stored snapshot could not be loaded")
    return pipeline


def test_hybrid_retrieval(pipeline) -> bool:
    """Test 4: Test hybrid retrieval."""
    print("\n[4/5] Testing hybrid retrieval...")

    try:
        start = time.time()
        results = pipeline.retriever.retrieve(QUERIES[0], pipeline.parameters())
        elapsed = time.time() - start

        if not results:
            print_result(False, "No results returned")
            return False

        print_result(True, f"Retrieved {len(results)} candidates ({elapsed:.2f}s)")
        first = results[0]
        print(f"       Top result: '{first.chunk.title[:40]}' ({first.search_method}, {first.final_score:.3f})")
        return True

    except Exception as e:
        print_result(False, f"Retrieval failed: {str(e)[:80]}")
        return False


def test_pipeline(pipeline) -> bool:
    """Test 5: Run the full pipeline on English, Chinese and social queries."""
    print("\n[5/5] Testing full pipeline...")

    from apps.nyla.rag.params import describe

    print(f"       Parameters: {', '.join(describe(pipeline.parameters()))}")
    ok = True
    for query in QUERIES:
        try:
            result = pipeline.run(query)
            stats = result.stats
            success = bool(result.items) and not stats.degraded_stages
            print_result(
                success,
                f"{query[:30]!r}: {len(result.items)} items, consistency {stats.consistency_score:.2f}, "
                f"{stats.latency_ms:.0f} ms",
            )
            if stats.degraded_stages:
                print(f"       Degraded stages: {', '.join(stats.degraded_stages)}")
            ok = ok and success
        except Exception as e:
            print_result(False, f"{query[:30]!r}: {str(e)[:80]}")
            ok = False
    return ok


def main():
    """Run all smoke tests."""
    from apps.nyla.infra.env import get_log_level

    logging.basicConfig(level=get_log_level())
    print_header("NYLA Retrieval Smoke Test Suite")
    print(f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Project: {project_root}")

    start_time = time.time()
    results = []

    results.append(("Environment", test_environment()))

    if results[-1][1]:  # Only continue if env is OK
        results.append(("Embeddings", test_embeddings()))
        results.append(("Knowledge Store", test_store()))

        if results[-1][1]:  # Only continue if the store has a snapshot
            try:
                pipeline = load_pipeline()
            except Exception as e:
                print_result(False, f"Pipeline setup failed: {str(e)[:80]}")
                pipeline = None
            if pipeline is not None:
                results.append(("Hybrid Retrieval", test_hybrid_retrieval(pipeline)))
                results.append(("Full Pipeline", test_pipeline(pipeline)))
            else:
                results.append(("Pipeline Setup", False))

    elapsed = time.time() - start_time
    passed = sum(1 for _, success in results if success)
    total = len(results)

    print_header("Summary")
    print(f"  Tests run: {total}")
    print(f"  Passed:    {passed}")
    print(f"  Failed:    {total - passed}")
    print(f"  Time:      {elapsed:.2f}s")
    print()

    if passed == total:
        print("  ALL SMOKE TESTS PASSED")
        return 0

    print("  SOME TESTS FAILED")
    print()
    print("  Check the errors above and:")
    print("  1. Ensure OPENROUTER_API_KEY is set")
    print("  2. Run: python scripts/index_kb.py --kb-path <records.jsonl>")
    print("  3. Install dependencies: pip install -e .")
    return 1


if __name__ == "__main__":
    sys.exit(main())
