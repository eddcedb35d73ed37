"""Tests for the source, content, claim and synthesis stores."""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from hypedelta.models import (
    ExtractedClaim,
    HypeAssessment,
    HypeDelta,
    RawItem,
    Source,
    SynthesisResult,
    TopicHypeScore,
    TopicSynthesis,
    utcnow,
)
from hypedelta.stores import ClaimStore, ContentStore, SourceStore, SynthesisStore


def _claim(content_id, **kwargs) -> ExtractedClaim:
    fields = {"claim_text": "Scaling continues to work", "topic": "scaling"}
    fields.update(kwargs)
    return ExtractedClaim(content_id=content_id, **fields)


# --- Sources ---


def test_source_upsert_is_idempotent(db_conn):
    store = SourceStore(db_conn)
    first = store.upsert(Source(kind="twitter", identifier="alice", name="Alice"))
    second = store.upsert(Source(kind="twitter", identifier="alice", name="Alice R."))
    assert first == second
    sources = store.get_all()
    assert len(sources) == 1
    assert sources[0].name == "Alice R."


def test_sentinel_source_is_hidden(db_conn):
    assert SourceStore(db_conn).get_all() == []
    assert ContentStore(db_conn).count() == 0


def test_get_due_respects_cadence(db_conn, sample_sources):
    store = SourceStore(db_conn)
    lab, critic = sample_sources
    assert {s.id for s in store.get_due()} == {lab.id, critic.id}

    store.mark_fetched(lab.id)
    assert [s.id for s in store.get_due()] == [critic.id]
    assert store.get_due("twitter") == []

    stale = (utcnow() - timedelta(hours=5)).isoformat()
    db_conn.execute("UPDATE sources SET last_fetched = ? WHERE id = ?", (stale, lab.id))
    assert [s.id for s in store.get_due("twitter")] == [lab.id]


def test_remove_deactivates_source_with_content(db_conn, sample_sources, sample_items):
    store = SourceStore(db_conn)
    lab, critic = sample_sources
    ContentStore(db_conn).upsert(sample_items[0])

    assert store.remove(lab.id) is False
    assert store.get(lab.id).active is False
    assert store.remove(critic.id) is True
    assert store.get(critic.id) is None


# --- Content ---


def test_content_upsert_same_key_keeps_one_row(db_conn, sample_items):
    store = ContentStore(db_conn)
    item = sample_items[0]
    first = store.upsert(item)
    edited = RawItem(
        source_id=item.source_id,
        external_id=item.external_id,
        body="Edited body with new words",
        url=item.url,
        author=item.author,
    )
    second = store.upsert(edited)

    assert first == second
    assert store.count() == 1
    stored = store.get(first)
    assert stored.body == "Edited body with new words"
    assert stored.published_at == item.published_at
    assert stored.source_kind == "twitter"


def test_unprocessed_and_mark_processed(db_conn, sample_items):
    store = ContentStore(db_conn)
    ids = [store.upsert(item) for item in sample_items]
    assert len(store.get_unprocessed()) == 3

    store.mark_processed(ids[:2])
    pending = store.get_unprocessed()
    assert [c.id for c in pending] == [ids[2]]
    assert store.get(ids[0]).processed_at is not None


def test_content_lookups(db_conn, sample_items):
    store = ContentStore(db_conn)
    item = sample_items[1]
    content_id = store.upsert(item)
    assert store.get_id(item.source_id, item.external_id) == content_id
    assert store.get_id_by_url(item.url) == content_id
    assert store.get_id_by_url("") is None
    assert store.get_id(item.source_id, "missing") is None


# --- Claims ---


def test_claim_requires_content(db_conn):
    with pytest.raises(ValueError):
        ClaimStore(db_conn).upsert(_claim(None))


def test_claim_foreign_key_enforced(db_conn):
    with pytest.raises(sqlite3.IntegrityError):
        ClaimStore(db_conn).upsert(_claim(99999))


def test_unattached_sentinel_accepts_claims(db_conn):
    content = ContentStore(db_conn)
    claims = ClaimStore(db_conn)
    sentinel = content.unattached_id()
    claim_id = claims.upsert(_claim(sentinel))
    assert claim_id.startswith("claim_")
    assert claims.get(claim_id).content_id == sentinel
    assert content.get(sentinel) is None


def test_search_filters_and_paginates(db_conn, sample_items):
    content_id = ContentStore(db_conn).upsert(sample_items[0])
    store = ClaimStore(db_conn)
    for i in range(5):
        store.upsert(_claim(content_id, claim_text=f"lab claim {i}",
                            author_category="lab-researcher"))
    store.upsert(_claim(content_id, claim_text="critic says 100% hype", topic="agents",
                        author_category="critic", claim_type="critique"))

    page, total = store.search(author_category="lab-researcher", limit=2, offset=0)
    assert total == 5
    assert len(page) == 2

    page, total = store.search(text="100%")
    assert total == 1
    assert page[0].topic == "agents"

    _, total = store.search(text="_")
    assert total == 0

    _, total = store.search(topic="scaling", claim_type="critique")
    assert total == 0


def test_get_by_author_category(db_conn, sample_items):
    content_id = ContentStore(db_conn).upsert(sample_items[0])
    store = ClaimStore(db_conn)
    now = utcnow()
    store.upsert(_claim(content_id, claim_text="older lab claim", author_category="lab-researcher",
                        extracted_at=now - timedelta(days=2)))
    store.upsert(_claim(content_id, claim_text="newer lab claim", author_category="lab-researcher",
                        extracted_at=now - timedelta(hours=1)))
    store.upsert(_claim(content_id, claim_text="stale lab claim", author_category="lab-researcher",
                        extracted_at=now - timedelta(days=30)))
    store.upsert(_claim(content_id, claim_text="critic claim", author_category="critic"))

    lab = store.get_by_author_category("lab-researcher")
    assert [c.claim_text for c in lab] == ["newer lab claim", "older lab claim"]
    assert [c.claim_text for c in store.get_by_author_category("lab-researcher", limit=1)] == [
        "newer lab claim",
    ]
    assert [c.claim_text for c in store.get_by_author_category("critic")] == ["critic claim"]
    assert store.get_by_author_category("independent") == []


def test_topic_summary(db_conn, sample_items):
    content_id = ContentStore(db_conn).upsert(sample_items[0])
    store = ClaimStore(db_conn)
    store.upsert(_claim(content_id, author_category="lab-researcher", bullishness=0.9))
    store.upsert(_claim(content_id, author_category="critic", bullishness=0.1,
                        claim_type="prediction"))
    summary = store.topic_summary()
    assert len(summary) == 1
    row = summary[0]
    assert row["topic"] == "scaling"
    assert row["claim_count"] == 2
    assert row["lab_claims"] == 1
    assert row["critic_claims"] == 1
    assert row["predictions"] == 1
    assert row["avg_bullishness"] == pytest.approx(0.5)


def test_find_similar_ranks_by_cosine(db_conn, sample_items):
    content_id = ContentStore(db_conn).upsert(sample_items[0])
    store = ClaimStore(db_conn)
    near = store.upsert(_claim(content_id, claim_text="near"))
    far = store.upsert(_claim(content_id, claim_text="far"))
    store.store_embedding(near, [1.0, 0.1, 0.0])
    store.store_embedding(far, [0.0, 0.0, 1.0])

    results = store.find_similar([1.0, 0.0, 0.0], min_similarity=0.5)
    assert [c.id for c, _ in results] == [near]
    assert results[0][1] > 0.99

    assert store.find_similar([1.0, 0.0]) == []


# --- Synthesis results ---


def test_synthesis_results_append_and_round_trip(db_conn):
    store = SynthesisStore(db_conn)
    end = utcnow()
    result = SynthesisResult(
        period_start=end - timedelta(days=7),
        period_end=end,
        syntheses=[TopicSynthesis(
            topic="agents", claim_count=3,
            hype_delta=HypeDelta(delta=0.4, lab_sentiment=0.8, critic_sentiment=0.4),
        )],
        hype_assessment=HypeAssessment(
            overhyped=[TopicHypeScore(topic="agents", score=0.7)], summary="Agents hot",
        ),
        digest="# Digest",
    )
    first_id = store.save(result)
    second_id = store.save(result)
    assert second_id != first_id

    latest = store.get_latest()
    assert latest.id == second_id
    assert latest.syntheses[0].hype_delta.delta == pytest.approx(0.4)
    assert latest.hype_assessment.overhyped[0].topic == "agents"
    assert latest.digest == "# Digest"
    assert len(store.get_recent()) == 2
