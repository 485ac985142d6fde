"""
Tests for score fusion and the hybrid retriever.

Run: pytest apps/nyla/rag/tests/test_retriever.py -v
"""

from __future__ import annotations

import hashlib

import numpy as np
import pytest


class MockEmbedder:
    """Bag-of-words hashing embedder; `broken` makes every call fail."""

    dimension = 64
    model = "mock-embed"

    def __init__(self):
        self.broken = False

    def embed(self, text):
        from apps.nyla.rag.bm25 import tokenize

        if self.broken:
            raise RuntimeError("provider down")
        vec = np.zeros(self.dimension, dtype=np.float32)
        for token in tokenize(text):
            vec[int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension] += 1.0
        if not vec.any():
            vec[0] = 1.0
        return vec


class TopicEmbedder:
    """Counts a few topic words per text, plus a constant component."""

    TOPICS = ("wangchai", "official", "links", "channels", "team", "tokens", "history", "roadmap")
    dimension = len(TOPICS) + 1
    model = "topic-embed"

    def embed(self, text):
        from apps.nyla.rag.bm25 import tokenize

        tokens = tokenize(text)
        return np.array([tokens.count(t) for t in self.TOPICS] + [1.0], dtype=np.float32)


def make_chunk(chunk_id, text="text", chunk_type="general", **kwargs):
    from apps.nyla.rag.models import Chunk, ChunkMetadata

    meta = ChunkMetadata(
        chunk_type=chunk_type,
        content_type=kwargs.pop("content_type", None),
        as_of=kwargs.pop("as_of", None),
        stability=kwargs.pop("stability", None),
    )
    return Chunk(
        id=chunk_id,
        source_id=kwargs.pop("source_id", "src"),
        type="info",
        section=kwargs.pop("section", "overview"),
        tags=kwargs.pop("tags", []),
        lang="en",
        title=chunk_id,
        text=text,
        dense_text=text,
        sparse_text=text,
        token_count=kwargs.pop("token_count", 20),
        metadata=meta,
    )


RECORDS = [
    {
        "id": "links", "source_id": "nyla_social", "type": "info", "lang": "en",
        "title": "NYLA official channels", "section": "official_channels", "tags": ["social"],
        "source_url": "https://example.com", "content_hash": "l1",
        "content_type": "social_media_links",
        "body": "Follow NYLA on X at https://x.com/AgentNyla and join Telegram at https://t.me/agentnyla.",
    },
    {
        "id": "send", "source_id": "nyla_core", "type": "info", "lang": "en",
        "title": "Sending tokens", "section": "howto", "tags": [],
        "source_url": "https://example.com", "content_hash": "s1",
        "body": "Open the chat and type send followed by the amount and the recipient.",
    },
    {
        "id": "fees", "source_id": "solana", "type": "info", "lang": "en",
        "title": "Solana fees", "section": "networks", "tags": [],
        "source_url": "https://example.com", "content_hash": "f1",
        "body": "Solana transaction fees are about 0.00025 SOL per transaction.",
    },
    {
        "id": "qr", "source_id": "nyla_core", "type": "info", "lang": "en",
        "title": "QR codes", "section": "features", "tags": [],
        "source_url": "https://example.com", "content_hash": "q1",
        "body": "NYLA can generate a QR code so friends can pay you.",
    },
]


@pytest.fixture
def setup():
    from apps.nyla.rag.indexer import KnowledgeIndexer
    from apps.nyla.rag.retriever import HybridRetriever

    embedder = MockEmbedder()
    indexer = KnowledgeIndexer(embedder)
    indexer.build(RECORDS)
    retriever = HybridRetriever(indexer.holder, embedder)
    return retriever, embedder, indexer.holder


class TestFuse:
    """Tests for weighted score fusion."""

    def _results(self):
        from apps.nyla.rag.models import QueryVariant
        from apps.nyla.rag.retriever import VariantResults

        a, b, c = make_chunk("a"), make_chunk("b"), make_chunk("c")
        original = VariantResults(QueryVariant("q"), dense=[(a, 0.9), (b, 0.5)], bm25=[(b, 10.0), (c, 5.0)])
        return original, (a, b, c)

    def test_alpha_one_is_dense_order(self):
        from apps.nyla.rag.retriever import fuse

        original, _ = self._results()
        assert [c.id for c in fuse([original], alpha=1.0)] == ["a", "b", "c"]

    def test_alpha_zero_is_bm25_order(self):
        from apps.nyla.rag.retriever import fuse

        original, _ = self._results()
        assert [c.id for c in fuse([original], alpha=0.0)] == ["b", "c", "a"]

    def test_scores_and_methods(self):
        from apps.nyla.rag.retriever import fuse

        original, _ = self._results()
        by_id = {c.id: c for c in fuse([original], alpha=0.6)}
        assert by_id["a"].fusion_score == pytest.approx(0.6)
        assert by_id["b"].fusion_score == pytest.approx(0.6 * 0.5 / 0.9 + 0.4)
        assert by_id["c"].fusion_score == pytest.approx(0.4 * 0.5)
        assert by_id["a"].search_method == "dense"
        assert by_id["b"].search_method == "hybrid"
        assert by_id["c"].search_method == "bm25"
        assert by_id["b"].bm25_score == 10.0
        assert by_id["b"].final_score == by_id["b"].fusion_score

    def test_expansion_discount_and_best_variant(self):
        from apps.nyla.rag.models import QueryVariant
        from apps.nyla.rag.retriever import VariantResults, fuse

        original, (a, b, c) = self._results()
        rewrite = VariantResults(
            QueryVariant("q2", source="glossary:x:y", is_original=False),
            dense=[(c, 0.7)],
        )
        by_id = {cand.id: cand for cand in fuse([original, rewrite], alpha=0.6, expansion_discount=0.8)}
        assert by_id["c"].fusion_score == pytest.approx(0.8 * 0.6)
        assert by_id["c"].query_source == "glossary:x:y"
        assert by_id["c"].search_method == "hybrid"
        assert by_id["a"].query_source == "original"

    def test_zero_scores_normalize_to_zero(self):
        from apps.nyla.rag.models import QueryVariant
        from apps.nyla.rag.retriever import VariantResults, fuse

        a = make_chunk("a")
        fused = fuse([VariantResults(QueryVariant("q"), dense=[(a, -0.2)])])
        assert fused[0].fusion_score == 0.0


class TestBoosts:
    """Tests for social and intent/type boosts."""

    def test_social_chunk_detection(self):
        from apps.nyla.rag.retriever import is_social_chunk

        assert is_social_chunk(make_chunk("a", content_type="social_media_links"))
        assert is_social_chunk(make_chunk("b", text="Follow @AgentNyla for news"))
        assert is_social_chunk(make_chunk("c", section="official_channels"))
        assert not is_social_chunk(make_chunk("d", text="Fees are low"))

    def test_social_boost(self):
        from apps.nyla.rag.models import Candidate
        from apps.nyla.rag.params import RerankConfig
        from apps.nyla.rag.retriever import apply_intent_boosts

        cfg = RerankConfig()
        short = Candidate.from_chunk(make_chunk("a", content_type="social_media_links"), 0.5)
        rich = Candidate.from_chunk(make_chunk("b", content_type="social_media_links", token_count=150), 0.5)
        assert apply_intent_boosts(short, "social", cfg) == pytest.approx(0.7)
        assert apply_intent_boosts(rich, "social", cfg) == pytest.approx(0.9)
        assert apply_intent_boosts(short, "general", cfg) == pytest.approx(0.5)

    def test_intent_type_boost(self):
        from apps.nyla.rag.models import Candidate
        from apps.nyla.rag.params import RerankConfig
        from apps.nyla.rag.retriever import apply_intent_boosts

        cand = Candidate.from_chunk(make_chunk("a", chunk_type="how_to"), 0.5)
        assert apply_intent_boosts(cand, "procedural", RerankConfig()) == pytest.approx(0.65)
        assert apply_intent_boosts(cand, "financial", RerankConfig()) == pytest.approx(0.5)


class TestHybridRetriever:
    """Tests for end-to-end hybrid search over a snapshot."""

    def test_results_bounded_and_sorted(self, setup):
        from apps.nyla.rag.params import RetrievalParameters

        retriever, _, _ = setup
        params = RetrievalParameters(rerank_top_k=3)
        results = retriever.retrieve("solana transaction fees", params)
        assert 0 < len(results) <= 3
        assert results[0].id == "fees"
        scores = [c.final_score for c in results]
        assert scores == sorted(scores, reverse=True)
        assert all(c.final_score >= params.min_score for c in results)
        assert results[0].embedding is not None

    def test_search_returns_context_and_query_vector(self, setup):
        retriever, _, _ = setup
        ctx, candidates, query_vec = retriever.search("How do I send tokens?")
        assert ctx.intent == "procedural"
        assert query_vec is not None
        assert np.isclose(np.linalg.norm(query_vec), 1.0)
        assert candidates[0].id == "send"

    def test_social_intent_promotes_channels(self, setup):
        retriever, _, _ = setup
        ctx, candidates, _ = retriever.search("Where can I find NYLA official links?")
        assert ctx.intent == "social"
        assert candidates[0].id == "links"

    def test_dense_failure_degrades_to_bm25(self, setup):
        retriever, embedder, _ = setup
        embedder.broken = True
        ctx, candidates, query_vec = retriever.search("solana fees")
        assert query_vec is None
        assert candidates
        assert candidates[0].id == "fees"
        assert all(c.search_method == "bm25" for c in candidates)

    def test_all_methods_failing_returns_empty(self, setup, monkeypatch):
        retriever, embedder, holder = setup
        embedder.broken = True

        def boom(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(holder.current().bm25, "search_text", boom)
        assert retriever.retrieve("solana fees") == []

    def test_rerank_failure_falls_back_to_fusion(self, setup, monkeypatch):
        from apps.nyla.rag.retriever import HybridRetriever

        retriever, _, _ = setup

        def boom(*args, **kwargs):
            raise RuntimeError("rerank exploded")

        monkeypatch.setattr(HybridRetriever, "_light_rerank", staticmethod(boom))
        results = retriever.retrieve("solana transaction fees")
        assert results
        assert results[0].id == "fees"
        assert all(c.cross_encoder_score is None for c in results)

    def test_empty_query_or_index(self, setup):
        from apps.nyla.rag.indexer import SnapshotHolder
        from apps.nyla.rag.retriever import HybridRetriever

        retriever, embedder, _ = setup
        assert retriever.retrieve("   ") == []
        assert HybridRetriever(SnapshotHolder(), embedder).retrieve("solana fees") == []

    def test_glossary_variants_searched(self, setup):
        from apps.nyla.rag.glossary import Glossary
        from apps.nyla.rag.retriever import HybridRetriever

        _, embedder, holder = setup
        glossary = Glossary.from_dict({"solana": {"zh": ["索拉纳"], "en": ["Solana", "SOL"]}})
        retriever = HybridRetriever(holder, embedder, glossary)
        ctx, candidates, _ = retriever.search("索拉纳 fees")
        assert len(ctx.variants) > 1
        assert candidates[0].id == "fees"

    def test_limit_widens_the_result_pool(self, setup):
        from apps.nyla.rag.params import RetrievalParameters

        retriever, _, _ = setup
        params = RetrievalParameters(rerank_top_k=2, min_score=0.0)
        _, narrow, _ = retriever.search("solana transaction fees", params)
        _, wide, _ = retriever.search("solana transaction fees", params, limit=4)
        assert len(narrow) == 2
        assert len(wide) == 4
        assert [c.id for c in wide[:2]] == [c.id for c in narrow]

    def test_exact_identifiers_shift_weight_to_bm25(self, setup):
        from apps.nyla.rag.retriever import HybridRetriever

        _, embedder, holder = setup
        events = []
        retriever = HybridRetriever(holder, embedder, thinking_callback=lambda s, m: events.append(m))
        ctx, candidates, _ = retriever.search("Where do I follow @AgentNyla?")
        assert ctx.exact_signals == ["AgentNyla"]
        assert candidates[0].id == "links"
        assert any("BM25 0.50" in m for m in events)

        events.clear()
        retriever.search("solana transaction fees")
        assert not any("BM25" in m and "Exact signals" in m for m in events)

    def test_stale_volatile_chunk_scores_half(self):
        from datetime import datetime, timezone

        from apps.nyla.rag.indexer import KnowledgeIndexer
        from apps.nyla.rag.retriever import HybridRetriever

        records = [dict(r) for r in RECORDS]
        records[2].update(stability="volatile", as_of="2025-01-01")
        embedder = MockEmbedder()
        indexer = KnowledgeIndexer(embedder)
        indexer.build(records)

        fresh_clock = lambda: datetime(2025, 1, 3, tzinfo=timezone.utc).timestamp()
        stale_clock = lambda: datetime(2025, 2, 1, tzinfo=timezone.utc).timestamp()
        fresh = HybridRetriever(indexer.holder, embedder, clock=fresh_clock).retrieve("solana transaction fees")
        stale = HybridRetriever(indexer.holder, embedder, clock=stale_clock).retrieve("solana transaction fees")

        fresh_fees = next(c for c in fresh if c.id == "fees")
        stale_fees = next(c for c in stale if c.id == "fees")
        assert stale_fees.final_score == pytest.approx(fresh_fees.final_score * 0.5)
        assert stale_fees.metadata.stability == "volatile"


WANGCHAI_BASE = {
    "source_id": "wangchai_kb", "type": "info", "lang": "en", "tags": ["wangchai"],
    "source_url": "https://example.com/wangchai",
}

WANGCHAI_RECORDS = [
    dict(
        WANGCHAI_BASE, id="wangchai_team", title="WangChai team", section="team", content_hash="w1",
        body="WangChai was started by a small team of builders. The WangChai team meets every week "
             "to plan WangChai features and review WangChai feedback from holders.",
    ),
    dict(
        WANGCHAI_BASE, id="wangchai_history", title="WangChai history", section="history", content_hash="w2",
        body="WangChai began as a meme on Solana in 2024. WangChai grew quickly as holders shared "
             "WangChai art and stories.",
    ),
    dict(
        WANGCHAI_BASE, id="wangchai_links", title="WangChai official channels", section="official_channels",
        content_hash="w3", content_type="social_media_links", query_boost=["social", "links", "contact"],
        body="These are the WangChai official channels and contact points. The official X account is "
             "@WangChaidotbonk at https://x.com/WangChaidotbonk. All links are collected at "
             "https://linktr.ee/WangchaiDoge. The Telegram group is https://t.me/wechatdogesol. "
             "Only trust links listed here; any other account is not official.",
    ),
    dict(
        WANGCHAI_BASE, id="wangchai_tokenomics", title="WangChai tokenomics", section="tokenomics",
        content_hash="w4",
        body="WangChai has a fixed supply. Most WangChai tokens went to the liquidity pool at launch "
             "and the WangChai team holds no tokens.",
    ),
    dict(
        WANGCHAI_BASE, id="wangchai_roadmap", title="WangChai roadmap", section="roadmap", content_hash="w5",
        body="The WangChai roadmap covers merchandise, games and partnerships. WangChai plans each "
             "stage with holders.",
    ),
]


class TestSocialRetrieval:
    """Official-links questions surface the channels record."""

    def test_official_links_in_top_three(self):
        from apps.nyla.rag.indexer import KnowledgeIndexer
        from apps.nyla.rag.params import RerankConfig
        from apps.nyla.rag.retriever import HybridRetriever

        embedder = TopicEmbedder()
        indexer = KnowledgeIndexer(embedder)
        indexer.build(WANGCHAI_RECORDS)
        retriever = HybridRetriever(indexer.holder, embedder)

        ctx, candidates, _ = retriever.search("WangChai official links")
        assert ctx.intent == "social"
        assert len(candidates) == 5
        assert "wangchai_links" in [c.id for c in candidates[:3]]

        cfg = RerankConfig()
        links = next(c for c in candidates if c.id == "wangchai_links")
        light = cfg.fusion_weight * links.fusion_score + cfg.similarity_weight * links.cross_encoder_score
        boost = cfg.rich_social_boost if links.token_count > cfg.rich_social_min_tokens else cfg.social_boost
        assert links.final_score == pytest.approx(light * boost)

    def test_social_boost_lifts_channels_from_last_to_top(self):
        from apps.nyla.rag.models import Candidate
        from apps.nyla.rag.params import RerankConfig
        from apps.nyla.rag.retriever import apply_intent_boosts

        cfg = RerankConfig()
        cands = [
            Candidate.from_chunk(make_chunk("wangchai_title", "WangChai", token_count=8), 0.879),
            Candidate.from_chunk(make_chunk("wangchai_intro", "WangChai is a meme coin.", token_count=60), 0.856),
            Candidate.from_chunk(make_chunk("wangchai_story", "How WangChai started.", token_count=90), 0.85),
            Candidate.from_chunk(make_chunk("wangchai_art", "WangChai art gallery.", token_count=40), 0.84),
            Candidate.from_chunk(make_chunk(
                "wangchai_links", "WangChai official channels and contact points.",
                content_type="social_media_links", token_count=180,
            ), 0.819),
        ]
        assert max(cands, key=lambda c: c.final_score).id == "wangchai_title"

        boosted = sorted(cands, key=lambda c: -apply_intent_boosts(c, "social", cfg))
        assert boosted[0].id == "wangchai_links"
        assert apply_intent_boosts(boosted[0], "social", cfg) == pytest.approx(0.819 * 1.8)


class TestSignalsAndFreshness:
    """Tests for exact-signal weighting and stale content."""

    @pytest.mark.parametrize("alpha,signals,expected", [
        (0.6, 0, 0.6),
        (0.6, 1, 0.5),
        (0.6, 2, 0.4),
        (0.6, 6, 0.2),
        (0.3, 1, 0.3),
    ])
    def test_signal_weighted_alpha(self, alpha, signals, expected):
        from apps.nyla.rag.params import BM25Config
        from apps.nyla.rag.retriever import signal_weighted_alpha

        assert signal_weighted_alpha(alpha, signals, BM25Config()) == pytest.approx(expected)

    def test_parse_as_of(self):
        from datetime import timezone

        from apps.nyla.rag.retriever import parse_as_of

        assert parse_as_of("2025-01-15T00:00:00Z").tzinfo == timezone.utc
        assert parse_as_of("2025-01-15").tzinfo == timezone.utc
        assert parse_as_of("2025-01-15T08:00:00+08:00") == parse_as_of("2025-01-15")
        assert parse_as_of("last week") is None
        assert parse_as_of(None) is None

    def test_freshness_factor(self):
        from datetime import datetime, timezone

        from apps.nyla.rag.params import RerankConfig
        from apps.nyla.rag.retriever import freshness_factor

        cfg = RerankConfig()
        now = datetime(2025, 1, 20, tzinfo=timezone.utc).timestamp()
        assert freshness_factor(make_chunk("a", stability="volatile", as_of="2025-01-01"), now, cfg) == 0.5
        assert freshness_factor(make_chunk("b", stability="volatile", as_of="2025-01-15"), now, cfg) == 1.0
        assert freshness_factor(make_chunk("c", stability="stable", as_of="2024-01-01"), now, cfg) == 1.0
        assert freshness_factor(make_chunk("d", stability="volatile"), now, cfg) == 1.0
        assert freshness_factor(make_chunk("e", stability="volatile", as_of="soon"), now, cfg) == 1.0
