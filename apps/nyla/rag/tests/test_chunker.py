"""
Tests for record validation and chunking.

Run: pytest apps/nyla/rag/tests/test_chunker.py -v
"""

from __future__ import annotations

import json
import os
import tempfile

import pytest


ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"

EN_SENTENCES = [
    f"Sentence number {i} explains how NYLA handles transfers on Solana." for i in range(60)
]
ZH_SENTENCES = ["奈拉支持在索拉纳上发送代币。"] * 60


def make_record(**overrides):
    record = {
        "id": "r1",
        "source_id": "nyla_core",
        "type": "info",
        "lang": "en",
        "title": "About NYLA",
        "section": "overview",
        "tags": ["nyla"],
        "source_url": "https://example.com/nyla",
        "content_hash": "h1",
        "body": "NYLA is an agent that lets you send tokens from chat.",
    }
    record.update(overrides)
    return record


class TestValidation:
    """Tests for source record validation."""

    def test_valid_record(self):
        from apps.nyla.rag.chunker import validate_record

        record = validate_record(make_record(author="team"))
        assert record.id == "r1"
        assert record.extension_fields() == {"author": "team"}

    def test_hash_alias(self):
        from apps.nyla.rag.chunker import validate_record

        raw = make_record()
        raw["hash"] = raw.pop("content_hash")
        assert validate_record(raw).content_hash == "h1"

    def test_missing_fields_listed(self):
        from apps.nyla.rag.chunker import validate_record
        from apps.nyla.rag.errors import SchemaValidationError

        raw = make_record()
        del raw["title"]
        del raw["section"]
        with pytest.raises(SchemaValidationError) as exc:
            validate_record(raw)
        assert exc.value.record_id == "r1"
        joined = " ".join(exc.value.problems)
        assert "title" in joined and "section" in joined

    def test_requires_some_text(self):
        from apps.nyla.rag.chunker import validate_record
        from apps.nyla.rag.errors import SchemaValidationError

        with pytest.raises(SchemaValidationError):
            validate_record(make_record(body=None))

    def test_rejects_unknown_language(self):
        from apps.nyla.rag.chunker import validate_record
        from apps.nyla.rag.errors import SchemaValidationError

        with pytest.raises(SchemaValidationError):
            validate_record(make_record(lang="fr"))


class TestSplitting:
    """Tests for size policies and sentence-aligned overlap."""

    def test_short_text_single_part(self):
        from apps.nyla.rag.chunker import ChunkPolicy, split_into_parts

        parts = split_into_parts("One sentence. Two sentences.", ChunkPolicy.for_language("en"))
        assert len(parts) == 1
        assert parts[0] == (["One sentence.", "Two sentences."], 0)

    def test_overlap_bounds(self):
        from apps.nyla.rag.chunker import ChunkPolicy

        policy = ChunkPolicy.for_language("en")
        assert policy.max_size == 300
        assert policy.overlap_max == 60
        assert 45 <= policy.overlap_target <= 60

    def test_long_english_record_split_with_overlap(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(id="long", body=" ".join(EN_SENTENCES))])
        assert len(chunks) > 1
        assert [c.id for c in chunks] == [f"long_p{i}" for i in range(len(chunks))]
        for i, chunk in enumerate(chunks):
            assert chunk.token_count <= 300
            assert chunk.metadata.overlap_tokens <= 60
            assert chunk.metadata.parent_id == "long"
            assert chunk.metadata.chunk_index == i
            assert chunk.metadata.total_chunks == len(chunks)
            assert chunk.metadata.prev_id == (chunks[i - 1].id if i > 0 else None)
            assert chunk.metadata.next_id == (chunks[i + 1].id if i + 1 < len(chunks) else None)
        assert chunks[0].metadata.overlap_tokens == 0
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.metadata.overlap_tokens > 0
            first_sentence = nxt.text.split(". ")[0]
            assert first_sentence in prev.text

    def test_overlap_reaches_lower_bound(self):
        from apps.nyla.rag.chunker import ChunkPolicy, part_overlap_size, split_into_parts

        policy = ChunkPolicy.for_language("en")
        sentences = [
            f"Step {i} of the transfer guide explains how the wallet confirms each payment on chain."
            for i in range(10, 50)
        ]
        parts = split_into_parts(" ".join(sentences), policy)

        assert len(parts) > 2
        assert part_overlap_size(parts[0], policy) == 0
        for prev, part in zip(parts, parts[1:]):
            size = part_overlap_size(part, policy)
            assert policy.overlap_min <= size <= policy.overlap_max
            overlap_text = " ".join(part[0][:part[1]])
            assert overlap_text in " ".join(prev[0])

    def test_overlap_of_long_record_is_at_least_fifteen_percent(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(id="long", body=" ".join(EN_SENTENCES))])
        for chunk in chunks[1:]:
            assert 45 <= chunk.metadata.overlap_tokens <= 60

    def test_short_tail_takes_sentences_from_previous_part(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(id="long", body=" ".join(EN_SENTENCES[:36]))])
        assert len(chunks) == 3
        assert chunks[-2].token_count >= 200
        assert chunks[-1].token_count > 150
        assert all(c.token_count <= 300 for c in chunks)
        joined = " ".join(c.text for c in chunks)
        for sentence in EN_SENTENCES[:36]:
            assert sentence in joined
        assert chunks[-1].text.split(". ")[0] in chunks[-2].text

    def test_no_sentence_lost(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(id="long", body=" ".join(EN_SENTENCES))])
        joined = " ".join(c.text for c in chunks)
        for sentence in EN_SENTENCES:
            assert sentence in joined

    def test_chinese_measured_in_characters(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(id="zh_long", lang="zh", body="".join(ZH_SENTENCES))])
        assert len(chunks) > 1
        for chunk in chunks:
            assert len(chunk.text) <= 500
            assert chunk.metadata.overlap_tokens <= 100
            assert chunk.lang == "zh"

    def test_oversized_sentence_is_broken_up(self):
        from apps.nyla.rag.chunker import ingest

        body = " ".join(f"word{i}" for i in range(600))
        chunks = ingest([make_record(id="blob", body=body)])
        assert len(chunks) > 1
        assert all(c.token_count <= 300 for c in chunks)


class TestChunkRecord:
    """Tests for views, metadata, facts and bilingual records."""

    def test_bilingual_record_produces_linked_views(self):
        from apps.nyla.rag.chunker import ingest

        chunks = ingest([make_record(
            id="faq_1",
            lang="bilingual",
            type="faq",
            body=None,
            summary_en="What is NYLA? NYLA is a chat agent.",
            summary_zh="奈拉是什么？奈拉是一个聊天代理。",
        )])
        by_id = {c.id: c for c in chunks}
        assert set(by_id) == {"faq_1_en", "faq_1_zh"}
        assert by_id["faq_1_en"].lang == "en"
        assert by_id["faq_1_zh"].lang == "zh"
        assert by_id["faq_1_en"].metadata.related_chunks == ["faq_1_zh"]
        assert by_id["faq_1_zh"].metadata.related_chunks == ["faq_1_en"]
        assert by_id["faq_1_en"].metadata.parent_id == "faq_1"
        assert by_id["faq_1_en"].metadata.chunk_type == "qa_pair"

    def test_dense_and_sparse_views_separated(self):
        from apps.nyla.rag.chunker import ingest

        body = (
            f"The NYLA token $NYLA uses contract {ADDRESS}. "
            "Follow @AgentNyla at https://x.com/AgentNyla for updates."
        )
        chunk = ingest([make_record(id="token", body=body)])[0]
        assert ADDRESS not in chunk.dense_text
        assert "https://" not in chunk.dense_text
        assert chunk.dense_text.startswith("About NYLA")
        assert ADDRESS in chunk.sparse_text
        assert "$NYLA" in chunk.sparse_text
        assert "@AgentNyla" in chunk.sparse_text
        assert chunk.text == body

    def test_facts_extracted(self):
        from apps.nyla.rag.chunker import ingest

        body = (
            f"The NYLA token $NYLA uses contract {ADDRESS}. "
            "Follow @AgentNyla at https://x.com/AgentNyla or visit https://nyla.example.com today."
        )
        chunk = ingest([make_record(id="token", body=body, facts={"chain": "solana"})])[0]
        assert chunk.facts["chain"] == "solana"
        assert chunk.facts["contract_address"] == ADDRESS
        assert chunk.facts["ticker"] == "$NYLA"
        assert chunk.facts["x_handle"] == "@AgentNyla"
        assert chunk.facts["x_url"] == "https://x.com/AgentNyla"
        assert chunk.facts["website"] == "https://nyla.example.com"

    def test_meta_card_flattened_into_facts(self):
        from apps.nyla.rag.chunker import ingest

        card = {"token": {"ticker": "$WC", "supply": 1000000}, "empty": ""}
        chunk = ingest([make_record(meta_card=card)])[0]
        assert chunk.facts["token.ticker"] == "$WC"
        assert chunk.facts["token.supply"] == "1000000"
        assert "empty" not in chunk.facts
        assert chunk.meta_card == card

    def test_glossary_synonyms_in_sparse_view(self):
        from apps.nyla.rag.chunker import ingest
        from apps.nyla.rag.glossary import Glossary

        glossary = Glossary.from_dict({"nyla": {"zh": ["奈拉"], "en": ["NYLA"]}})
        chunk = ingest([make_record()], glossary=glossary)[0]
        assert "奈拉" in chunk.sparse_text
        assert "奈拉" not in chunk.dense_text

    def test_metadata_and_tags(self):
        from apps.nyla.rag.chunker import ingest

        chunk = ingest([make_record(
            body="Send tokens on Solana with low fees.",
            category="product",
            priority=1,
            query_boost=["send"],
            author="team",
        )])[0]
        meta = chunk.metadata
        assert meta.category == "product"
        assert meta.priority == 1
        assert meta.query_boost == ["send"]
        assert meta.content_hash == "h1"
        assert meta.extra == {"author": "team"}
        assert "solana" in chunk.tags
        assert "nyla_core" in chunk.tags

    def test_explicit_chunk_type_wins(self):
        from apps.nyla.rag.chunker import ingest

        chunk = ingest([make_record(chunk_type="how_to")])[0]
        assert chunk.metadata.chunk_type == "how_to"

    def test_chunk_round_trips_through_dict(self):
        from apps.nyla.rag.chunker import ingest
        from apps.nyla.rag.models import Chunk

        chunk = ingest([make_record(author="team")])[0]
        restored = Chunk.from_dict(json.loads(json.dumps(chunk.to_dict())))
        assert restored == chunk


class TestIngest:
    """Tests for batch ingest behavior."""

    def test_invalid_and_duplicate_records_skipped(self):
        from apps.nyla.rag.chunker import ingest

        bad = make_record(id="bad")
        del bad["source_url"]
        chunks = ingest([make_record(), bad, make_record(body="A different body for the same id.")])
        assert [c.id for c in chunks] == ["r1"]
        assert "send tokens from chat" in chunks[0].text

    def test_load_records_formats(self):
        from apps.nyla.rag.chunker import load_records

        records = [make_record(id="a"), make_record(id="b")]
        with tempfile.TemporaryDirectory() as tmpdir:
            as_json = os.path.join(tmpdir, "kb.json")
            with open(as_json, "w", encoding="utf-8") as f:
                json.dump({"records": records}, f)
            as_jsonl = os.path.join(tmpdir, "kb.jsonl")
            with open(as_jsonl, "w", encoding="utf-8") as f:
                f.write("\n".join(json.dumps(r) for r in records) + "\n")

            assert [r["id"] for r in load_records(as_json)] == ["a", "b"]
            assert [r["id"] for r in load_records(as_jsonl)] == ["a", "b"]

    def test_freshness_fields_carried_to_metadata(self):
        from apps.nyla.rag.chunker import ingest

        chunk = ingest([make_record(stability="volatile", as_of="2025-01-15", author="team")])[0]
        assert chunk.metadata.stability == "volatile"
        assert chunk.metadata.as_of == "2025-01-15"
        assert chunk.metadata.extra == {"author": "team"}
