"""Shared test fixtures."""

from __future__ import annotations

from datetime import timedelta

import pytest

from hypedelta.config import load_config
from hypedelta.db import get_connection, init_db
from hypedelta.gateway import AnalysisGateway, normalize_claim
from hypedelta.models import (
    FilteredItem,
    HypeAssessment,
    RawItem,
    Source,
    TopicHypeScore,
    utcnow,
)
from hypedelta.stores import SourceStore


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real API keys)."""
    config_text = """
llm:
  providers:
    mock:
      type: "openai_compatible"
      api_key: "test-key"
      base_url: "http://localhost:9999"
      default_model: "test-model"
  tasks:
    filter: { provider: "mock" }
    extract: { provider: "mock" }
    synthesize: { provider: "mock" }
    hype: { provider: "mock" }
    digest: { provider: "mock" }

analysis:
  mode: llm
  relevance_threshold: 0.3
  min_claims_per_topic: 1

embeddings:
  enabled: false

fetch:
  delay_between_sources: 0

rate_limits:
  twitterapi: 0
  nitter: 0
  bluesky: 0
  lesswrong: 0
  arxiv: 0
  youtube: 0
  feed: 0

sources:
  twitter:
    api_key: "tw-key"
    nitter_instances: ["https://nitter.example"]
  seed:
    - kind: twitter
      identifier: labperson
      name: Lab Person
      category: lab-researcher
    - kind: substack
      identifier: skeptic
      name: The Skeptic
      category: critic
      tier: tier1
    - kind: arxiv
      identifier: cs.AI

digest:
  dir: "DIGEST_DIR_PLACEHOLDER"

database:
  path: "DB_PATH_PLACEHOLDER"
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        config_text
        .replace("DB_PATH_PLACEHOLDER", db_path)
        .replace("DIGEST_DIR_PLACEHOLDER", str(tmp_path / "digests"))
    )
    return load_config(str(cfg_path))


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def sample_sources(db_conn):
    """Two stored sources: a lab researcher on twitter and a critic on substack."""
    store = SourceStore(db_conn)
    lab = Source(kind="twitter", identifier="labperson", name="Lab Person",
                 category="lab-researcher", fetch_frequency_hours=4)
    critic = Source(kind="substack", identifier="skeptic", name="The Skeptic",
                    category="critic", fetch_frequency_hours=6)
    store.upsert(lab)
    store.upsert(critic)
    return [lab, critic]


@pytest.fixture
def sample_items(sample_sources):
    """Raw items from the sample sources, including one noise item."""
    lab, critic = sample_sources
    now = utcnow()
    return [
        RawItem(
            source_id=lab.id,
            external_id="1001",
            body="Reasoning models will solve most competition math benchmarks within "
            "a year. The scaling curves we see internally are very steep.",
            url="https://x.com/labperson/status/1001",
            author="Lab Person",
            published_at=now - timedelta(hours=2),
        ),
        RawItem(
            source_id=critic.id,
            external_id="post-1",
            title="Benchmarks are not understanding",
            body="Benchmark gains keep being reported as reasoning progress, but the "
            "models still fail on trivially perturbed problems.",
            url="https://skeptic.substack.com/p/post-1",
            author="The Skeptic",
            published_at=now - timedelta(hours=5),
        ),
        RawItem(
            source_id=lab.id,
            external_id="1002",
            body="RT @someone: big news today",
            url="https://x.com/labperson/status/1002",
            author="Lab Person",
            published_at=now - timedelta(hours=1),
        ),
    ]


class FakeGateway(AnalysisGateway):
    """Deterministic gateway: every item is relevant and yields one claim.

    Items whose body contains "will" produce a prediction claim. Authors
    named like "Lab ..." are lab researchers and "The Skeptic" is a critic.
    """

    def __init__(self, relevance: float = 0.9, digest: str | None = "# Digest\n"):
        self.relevance = relevance
        self.digest = digest
        self.filter_calls = 0
        self.extract_calls = 0
        self.synth_calls: list[str] = []

    @staticmethod
    def _category(author: str) -> str:
        if author.startswith("Lab"):
            return "lab-researcher"
        if author == "The Skeptic":
            return "critic"
        return "unknown"

    async def filter_items(self, items):
        self.filter_calls += 1
        return [
            FilteredItem(
                item=item,
                relevance=self.relevance,
                topic="reasoning",
                content_type="opinion",
                author_category=self._category(item.author),
            )
            for item in items
        ]

    async def extract_claims(self, items):
        self.extract_calls += 1
        claims = []
        for f in items:
            is_prediction = " will " in f" {f.item.body} "
            claims.append(normalize_claim({
                "claimText": f.item.body[:80],
                "claimType": "prediction" if is_prediction else "critique",
                "stance": "bullish" if f.author_category == "lab-researcher" else "bearish",
                "bullishness": 0.8 if f.author_category == "lab-researcher" else 0.3,
                "timeframe": "near-term" if is_prediction else None,
                "evidenceProvided": "moderate",
            }, f))
        return claims

    async def synthesize_topic(self, topic, claims):
        self.synth_calls.append(topic)
        return {
            "lab_consensus": "Labs are optimistic.",
            "critic_consensus": "Critics are not convinced.",
            "agreements": [],
            "disagreements": [],
            "emerging_narratives": [],
            "notable_predictions": [],
            "evidence_quality": None,
            "narrative": f"Discussion of {topic}.",
        }

    async def assess_hype(self, syntheses):
        return HypeAssessment(
            overhyped=[TopicHypeScore(topic=s.topic, score=0.5) for s in syntheses],
            overall_sentiment=0.6,
            summary="Reasoning looks overhyped.",
        )

    async def generate_digest(self, syntheses, assessment):
        return self.digest


@pytest.fixture
def fake_gateway():
    return FakeGateway()
