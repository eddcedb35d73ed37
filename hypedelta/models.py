"""Core data models for the hypedelta pipeline."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SOURCE_KINDS = (
    "twitter", "bluesky", "substack", "blog",
    "podcast", "youtube", "lesswrong", "arxiv",
)
TIMELINE_KINDS = ("twitter", "bluesky")

AUTHOR_CATEGORIES = (
    "lab-researcher", "critic", "academic",
    "independent", "journalist", "unknown",
)
TOPICS = (
    "scaling", "reasoning", "agents", "safety", "interpretability",
    "multimodal", "rlhf", "robotics", "benchmarks", "infrastructure",
    "policy", "general", "other",
)
CONTENT_TYPES = (
    "research-hint", "prediction", "opinion", "critique",
    "announcement", "discussion", "noise",
)
CLAIM_TYPES = ("fact", "prediction", "hint", "opinion", "critique", "question")
STANCES = ("bullish", "bearish", "neutral")
TIMEFRAMES = ("near-term", "medium-term", "long-term", "unspecified")
EVIDENCE_LEVELS = ("strong", "moderate", "weak", "appeal-to-authority")

PREDICTION_STATUSES = (
    "too-early", "verified", "falsified",
    "partially-verified", "unfalsifiable", "ambiguous",
)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class Source:
    """A tracked external origin of content."""

    kind: str
    identifier: str
    name: str = ""
    category: str = ""
    tags: list[str] = field(default_factory=list)
    active: bool = True
    fetch_frequency_hours: int = 24
    last_fetched: datetime | None = None
    id: int | None = None

    @property
    def label(self) -> str:
        return self.name or f"{self.kind}:{self.identifier}"


@dataclass
class RawItem:
    """One unit of source content as returned by an adapter."""

    source_id: int
    external_id: str
    body: str
    title: str = ""
    url: str = ""
    author: str = ""
    published_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Content(RawItem):
    """A RawItem as stored in the content ledger."""

    fetched_at: datetime | None = None
    processed_at: datetime | None = None
    source_kind: str = ""
    id: int | None = None


@dataclass
class FilteredItem:
    """A content item that passed relevance filtering, with annotations."""

    item: RawItem
    relevance: float
    topic: str = "general"
    content_type: str = "opinion"
    author_category: str = "unknown"
    is_substantive: bool = True
    brief: str = ""


@dataclass
class ExtractedClaim:
    """One structured assertion derived from a content item."""

    claim_text: str
    claim_type: str = "opinion"
    topic: str = "general"
    stance: str = "neutral"
    bullishness: float = 0.5
    confidence: float = 0.5
    timeframe: str | None = None
    evidence_quality: str = "weak"
    quoteworthiness: float = 0.3
    target_entity: str | None = None
    related_entities: list[str] = field(default_factory=list)
    original_quote: str | None = None
    author: str = ""
    author_category: str = "unknown"
    source_url: str = ""
    source_id: int | None = None
    external_id: str | None = None
    content_id: int | None = None
    extracted_at: datetime = field(default_factory=utcnow)
    embedding: list[float] | None = None
    id: str | None = None


@dataclass
class Prediction:
    """A falsifiable forward-looking claim with a verification record."""

    prediction_text: str
    author: str = ""
    author_category: str = "unknown"
    topic: str = "general"
    confidence: float = 0.5
    timeframe: str | None = None
    claim_id: str | None = None
    made_at: datetime = field(default_factory=utcnow)
    target_date: datetime | None = None
    status: str = "too-early"
    verified_at: datetime | None = None
    accuracy_score: float | None = None
    evidence: str | None = None
    notes: str | None = None
    id: str | None = None


@dataclass
class HypeDelta:
    """Signed difference between lab and critic sentiment on a topic."""

    delta: float = 0.0
    lab_sentiment: float = 0.5
    critic_sentiment: float = 0.5
    confidence: float = 0.0
    lab_sample_size: int = 0
    critic_sample_size: int = 0


@dataclass
class Disagreement:
    point: str
    lab_position: str = ""
    critic_position: str = ""


@dataclass
class TopicSynthesis:
    """Per-topic, per-period aggregate of claims."""

    topic: str
    claim_count: int
    lab_consensus: str = ""
    critic_consensus: str = ""
    agreements: list[str] = field(default_factory=list)
    disagreements: list[Disagreement] = field(default_factory=list)
    emerging_narratives: list[str] = field(default_factory=list)
    notable_predictions: list[str] = field(default_factory=list)
    evidence_quality: float = 0.0
    hype_delta: HypeDelta = field(default_factory=HypeDelta)
    narrative: str = ""


@dataclass
class TopicHypeScore:
    topic: str
    score: float = 0.0
    reasoning: str = ""
    key_evidence: list[str] = field(default_factory=list)


@dataclass
class HypeAssessment:
    """Cycle-wide verdict on which topics are over- or under-hyped."""

    overhyped: list[TopicHypeScore] = field(default_factory=list)
    underhyped: list[TopicHypeScore] = field(default_factory=list)
    accurately_assessed: list[TopicHypeScore] = field(default_factory=list)
    overall_sentiment: float = 0.5
    summary: str = ""


@dataclass
class SynthesisResult:
    """One persisted synthesis cycle."""

    period_start: datetime
    period_end: datetime
    syntheses: list[TopicSynthesis] = field(default_factory=list)
    hype_assessment: HypeAssessment = field(default_factory=HypeAssessment)
    digest: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class FetchReport:
    """Outcome of fetching a set of sources."""

    successful: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return sum(s.get("items", 0) for s in self.successful)


@dataclass
class ProcessingResult:
    """Counts from one ingestion cycle through the pipeline."""

    input_items: int = 0
    after_prefilter: int = 0
    filtered_items: int = 0
    claims_extracted: int = 0
    claims_embedded: int = 0
    claims_stored: int = 0
    predictions_recorded: int = 0
    content_stored: int = 0


@dataclass
class PipelineRun:
    """Record of a single orchestration cycle."""

    kind: str = "process"  # fetch, process, synthesize
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: str = "running"  # running, completed, failed
    items_in: int = 0
    items_out: int = 0
    llm_tokens_used: int = 0
    llm_cost_usd: float = 0.0
    id: int | None = None


def to_dict(obj: Any) -> Any:
    """Convert dataclasses (recursively) to JSON-ready dicts."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    return obj
