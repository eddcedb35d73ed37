"""Analysis gateway: the boundary where semantic judgment is delegated to an LLM.

The gateway batches requests, recovers JSON from free-form model output and
normalises it into the canonical models. A malformed or failed response
degrades to an empty (or neutral) result for that batch; it never raises.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod

from hypedelta.config import get_analysis_config
from hypedelta.embeddings import truncate_text
from hypedelta.llm import get_provider_for_task, task_model
from hypedelta.llm.batch import batch_complete
from hypedelta.llm.base import set_current_task
from hypedelta.llm.prompts import (
    ASSESS_HYPE,
    EXTRACT_CLAIMS,
    EXTRACT_ITEM,
    FILTER_ITEM,
    FILTER_ITEMS,
    SYNTHESIS_BLOCK,
    SYNTHESIZE_TOPIC,
    SYSTEM_ANALYST,
    WRITE_DIGEST,
)
from hypedelta.models import (
    AUTHOR_CATEGORIES,
    CLAIM_TYPES,
    CONTENT_TYPES,
    EVIDENCE_LEVELS,
    STANCES,
    TIMEFRAMES,
    TOPICS,
    Disagreement,
    ExtractedClaim,
    FilteredItem,
    HypeAssessment,
    RawItem,
    TopicHypeScore,
    TopicSynthesis,
)

logger = logging.getLogger(__name__)

FILTER_BODY_CHARS = 500
EXTRACT_BODY_CHARS = 1500
MAX_CLAIMS_PER_COHORT = 30


# --- JSON recovery ---


def _normalize_quotes(text: str) -> str:
    """Replace smart/curly quotes with straight quotes for JSON parsing."""
    return (
        text
        .replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
        .replace("″", '"')
        .replace("′", "'")
    )


def _try_parse(text: str) -> dict | None:
    """json.loads with and without quote normalization; objects only."""
    for candidate in (text, _normalize_quotes(text)):
        try:
            result = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(result, dict):
            return result
    return None


def _balanced_objects(text: str):
    """Yield each top-level {...} span, respecting strings and escapes."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = None
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is None:
            return
        yield text[start:end + 1]
        start = text.find("{", end + 1)


def extract_json(text: str) -> dict | None:
    """Recover a JSON object from model output.

    Tries a direct parse, then fenced code blocks, then brace matching.
    """
    if not text:
        return None
    result = _try_parse(text.strip())
    if result is not None:
        return result

    for fenced in re.finditer(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL):
        result = _try_parse(fenced.group(1).strip())
        if result is not None:
            return result

    for candidate in _balanced_objects(_normalize_quotes(text)):
        result = _try_parse(candidate)
        if result is not None:
            return result

    return None


# --- Normalisation helpers ---


def _first(data: dict, *keys, default=None):
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def _clamp(value, default: float, low: float = 0.0, high: float = 1.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


def _choice(value, allowed, default):
    if isinstance(value, str):
        value = value.strip().lower().replace("_", "-")
        if value in allowed:
            return value
    return default


def _str_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if v not in (None, "")]


def _index(data: dict) -> int | None:
    value = _first(data, "itemIndex", "sourceIndex", "item_index", "index")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def normalize_assessment(data: dict, item: RawItem) -> FilteredItem:
    return FilteredItem(
        item=item,
        relevance=_clamp(_first(data, "relevanceScore", "relevance", "relevance_score"), 0.0),
        topic=_choice(_first(data, "primaryTopic", "topic"), TOPICS, "general"),
        content_type=_choice(_first(data, "contentType", "content_type"), CONTENT_TYPES, "opinion"),
        author_category=_choice(
            _first(data, "authorCategory", "author_category"), AUTHOR_CATEGORIES, "unknown",
        ),
        is_substantive=bool(_first(data, "isSubstantive", "is_substantive", default=True)),
        brief=str(_first(data, "briefSummary", "brief", "summary", default="")),
    )


def normalize_claim(data: dict, origin: FilteredItem | None) -> ExtractedClaim | None:
    """Map one raw claim object into an ExtractedClaim, filling defaults."""
    text = _first(data, "claimText", "claim_text", "text", "claim")
    if not isinstance(text, str) or not text.strip():
        return None

    default_topic = origin.topic if origin else "general"
    claim = ExtractedClaim(
        claim_text=text.strip(),
        claim_type=_choice(_first(data, "claimType", "claim_type", "type"), CLAIM_TYPES, "opinion"),
        topic=_choice(data.get("topic"), TOPICS, default_topic),
        stance=_choice(data.get("stance"), STANCES, "neutral"),
        bullishness=_clamp(data.get("bullishness"), 0.5),
        confidence=_clamp(data.get("confidence"), 0.5),
        timeframe=_choice(data.get("timeframe"), TIMEFRAMES, None),
        evidence_quality=_choice(
            _first(data, "evidenceProvided", "evidenceQuality", "evidence_quality"),
            EVIDENCE_LEVELS, "weak",
        ),
        quoteworthiness=_clamp(data.get("quoteworthiness"), 0.3),
        target_entity=_first(data, "targetEntity", "target_entity"),
        related_entities=_str_list(_first(data, "relatedEntities", "relatedTo", "related_entities")),
        original_quote=_first(data, "originalQuote", "original_quote"),
    )
    if origin is not None:
        item = origin.item
        claim.author = item.author
        claim.author_category = origin.author_category
        claim.source_url = item.url
        claim.source_id = item.source_id
        claim.external_id = item.external_id
    else:
        claim.author = str(data.get("author", ""))
        claim.author_category = _choice(data.get("authorCategory"), AUTHOR_CATEGORIES, "unknown")
        claim.source_url = str(_first(data, "sourceUrl", "source_url", default=""))
    return claim


def _score_list(value) -> list[TopicHypeScore]:
    scores = []
    for entry in value or []:
        if isinstance(entry, str):
            scores.append(TopicHypeScore(topic=entry))
            continue
        if not isinstance(entry, dict) or not entry.get("topic"):
            continue
        scores.append(TopicHypeScore(
            topic=str(entry["topic"]),
            score=_clamp(entry.get("score"), 0.0, -1.0, 1.0),
            reasoning=str(entry.get("reasoning", "")),
            key_evidence=_str_list(_first(entry, "keyEvidence", "key_evidence")),
        ))
    return scores


def normalize_hype_assessment(data: dict) -> HypeAssessment:
    """Fold every known key spelling into the canonical HypeAssessment."""
    return HypeAssessment(
        overhyped=_score_list(_first(data, "overhyped", "overhypedTopics", "overhyped_topics")),
        underhyped=_score_list(_first(data, "underhyped", "underhypedTopics", "underhyped_topics")),
        accurately_assessed=_score_list(_first(
            data, "accuratelyAssessed", "accuratelyAssessedTopics",
            "accurately_assessed", "accurately_assessed_topics",
        )),
        overall_sentiment=_clamp(
            _first(data, "overallSentiment", "overallFieldSentiment", "overall_sentiment"), 0.5,
        ),
        summary=str(data.get("summary", "")),
    )


def _prediction_text(entry) -> str:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        text = _first(entry, "text", "prediction", default="")
        author = entry.get("author")
        timeframe = entry.get("timeframe")
        line = f"{author}: {text}" if author else str(text)
        return f"{line} ({timeframe})" if timeframe else line
    return str(entry)


def normalize_synthesis(data: dict) -> dict:
    disagreements = []
    for entry in _first(data, "disagreements", "keyDisagreements", default=[]) or []:
        if isinstance(entry, str):
            disagreements.append(Disagreement(point=entry))
        elif isinstance(entry, dict) and entry.get("point"):
            disagreements.append(Disagreement(
                point=str(entry["point"]),
                lab_position=str(_first(entry, "labPosition", "lab_position", default="")),
                critic_position=str(_first(entry, "criticPosition", "critic_position", default="")),
            ))
    evidence = _first(data, "evidenceQuality", "evidence_quality")
    return {
        "lab_consensus": str(_first(data, "labConsensus", "lab_consensus", default="")),
        "critic_consensus": str(_first(data, "criticConsensus", "critic_consensus", default="")),
        "agreements": _str_list(data.get("agreements")),
        "disagreements": disagreements,
        "emerging_narratives": _str_list(_first(data, "emergingNarratives", "emerging_narratives")),
        "notable_predictions": [
            _prediction_text(p)
            for p in _first(data, "notablePredictions", "predictions", default=[]) or []
        ],
        "evidence_quality": _clamp(evidence, 0.0) if evidence is not None else None,
        "narrative": str(_first(data, "synthesisNarrative", "narrative", default="")),
    }


def _batches(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _source_label(item: RawItem) -> str:
    return getattr(item, "source_kind", "") or "source"


# --- Gateways ---


class AnalysisGateway(ABC):
    """Request/response contract for relevance, extraction and synthesis."""

    @abstractmethod
    async def filter_items(self, items: list[RawItem]) -> list[FilteredItem]:
        """Assess relevance. Items the service did not assess are omitted."""
        ...

    @abstractmethod
    async def extract_claims(self, items: list[FilteredItem]) -> list[ExtractedClaim]:
        ...

    @abstractmethod
    async def synthesize_topic(self, topic: str, claims: list[ExtractedClaim]) -> dict:
        """Narrative fields for a topic, keyed as in normalize_synthesis."""
        ...

    @abstractmethod
    async def assess_hype(self, syntheses: list[TopicSynthesis]) -> HypeAssessment:
        ...

    async def generate_digest(
        self, syntheses: list[TopicSynthesis], assessment: HypeAssessment,
    ) -> str | None:
        return None


class LLMAnalysisGateway(AnalysisGateway):
    """Gateway backed by the configured LLM providers."""

    def __init__(self, config: dict):
        self.config = config
        self.settings = get_analysis_config(config)

    async def _ask_many(self, task: str, prompts: list[str]) -> list[dict | None]:
        if not prompts:
            return []
        set_current_task(task)
        try:
            provider = get_provider_for_task(self.config, task)
            model = task_model(self.config, task)
        except ValueError:
            logger.exception("No usable provider for task '%s'", task)
            return [None] * len(prompts)

        responses = await batch_complete(
            provider, prompts, system=SYSTEM_ANALYST, model=model,
            max_concurrent=self.settings["max_concurrent"],
        )
        parsed = []
        for i, response in enumerate(responses):
            data = extract_json(response.text)
            if data is None:
                logger.warning(
                    "Unparseable %s response for batch %d (%d chars), using empty result",
                    task, i, len(response.text),
                )
            parsed.append(data)
        return parsed

    async def filter_items(self, items: list[RawItem]) -> list[FilteredItem]:
        batches = _batches(items, self.settings["filter_batch_size"])
        prompts = []
        for batch in batches:
            rendered = "\n\n".join(
                FILTER_ITEM.format(
                    index=i,
                    author=item.author or "unknown",
                    source=_source_label(item),
                    published=item.published_at.isoformat() if item.published_at else "unknown",
                    body=truncate_text(item.body, FILTER_BODY_CHARS),
                )
                for i, item in enumerate(batch)
            )
            prompts.append(FILTER_ITEMS.format(items=rendered))

        results: list[FilteredItem] = []
        for batch, data in zip(batches, await self._ask_many("filter", prompts)):
            if not data:
                continue
            seen: set[int] = set()
            for position, assessment in enumerate(data.get("assessments") or []):
                if not isinstance(assessment, dict):
                    continue
                idx = _index(assessment)
                if idx is None:
                    idx = position
                if not 0 <= idx < len(batch) or idx in seen:
                    continue
                seen.add(idx)
                results.append(normalize_assessment(assessment, batch[idx]))
        return results

    async def extract_claims(self, items: list[FilteredItem]) -> list[ExtractedClaim]:
        batches = _batches(items, self.settings["extract_batch_size"])
        prompts = []
        for batch in batches:
            rendered = "\n\n".join(
                EXTRACT_ITEM.format(
                    index=i,
                    author=f.item.author or "unknown",
                    author_category=f.author_category,
                    source=_source_label(f.item),
                    topic=f.topic,
                    body=truncate_text(f.item.body, EXTRACT_BODY_CHARS),
                )
                for i, f in enumerate(batch)
            )
            prompts.append(EXTRACT_CLAIMS.format(items=rendered))

        claims: list[ExtractedClaim] = []
        for batch, data in zip(batches, await self._ask_many("extract", prompts)):
            if not data:
                continue
            for raw, idx in _flatten_claims(data):
                if idx is None and len(batch) == 1:
                    idx = 0
                origin = batch[idx] if idx is not None and 0 <= idx < len(batch) else None
                claim = normalize_claim(raw, origin)
                if claim is not None:
                    claims.append(claim)
        return claims

    async def synthesize_topic(self, topic: str, claims: list[ExtractedClaim]) -> dict:
        def _lines(cohort: list[ExtractedClaim]) -> str:
            if not cohort:
                return "(none)"
            ranked = sorted(cohort, key=lambda c: c.quoteworthiness, reverse=True)
            return "\n".join(
                f"- {c.author or 'unknown'}: {c.claim_text} "
                f"[{c.claim_type}, {c.stance}, confidence {c.confidence:.1f}]"
                for c in ranked[:MAX_CLAIMS_PER_COHORT]
            )

        lab = [c for c in claims if c.author_category == "lab-researcher"]
        critic = [c for c in claims if c.author_category == "critic"]
        other = [c for c in claims if c.author_category not in ("lab-researcher", "critic")]
        prompt = SYNTHESIZE_TOPIC.format(
            topic=topic,
            lab_claims=_lines(lab),
            critic_claims=_lines(critic),
            other_claims=_lines(other),
        )
        data = (await self._ask_many("synthesize", [prompt]))[0]
        return normalize_synthesis(data) if data else {}

    async def assess_hype(self, syntheses: list[TopicSynthesis]) -> HypeAssessment:
        if not syntheses:
            return HypeAssessment()
        prompt = ASSESS_HYPE.format(syntheses=_render_syntheses(syntheses))
        data = (await self._ask_many("hype", [prompt]))[0]
        return normalize_hype_assessment(data) if data else HypeAssessment()

    async def generate_digest(
        self, syntheses: list[TopicSynthesis], assessment: HypeAssessment,
    ) -> str | None:
        if not syntheses:
            return None
        prompt = WRITE_DIGEST.format(
            syntheses=_render_syntheses(syntheses, with_narrative=True),
            summary=assessment.summary or "(none)",
            overhyped=", ".join(s.topic for s in assessment.overhyped) or "none",
            underhyped=", ".join(s.topic for s in assessment.underhyped) or "none",
            sentiment=assessment.overall_sentiment,
        )
        set_current_task("digest")
        try:
            provider = get_provider_for_task(self.config, "digest")
            response = await provider.complete(
                prompt, model=task_model(self.config, "digest"), max_tokens=6000,
            )
        except Exception:
            logger.exception("Digest generation failed")
            return None
        text = response.text.strip()
        fenced = re.fullmatch(r"```(?:markdown|md)?\s*\n(.*)\n```", text, re.DOTALL)
        if fenced:
            text = fenced.group(1).strip()
        return text or None


def _flatten_claims(data: dict) -> list[tuple[dict, int | None]]:
    """Accept a flat claims list or a per-item "extractions" grouping."""
    flat: list[tuple[dict, int | None]] = []
    for raw in data.get("claims") or []:
        if isinstance(raw, dict):
            flat.append((raw, _index(raw)))
    for group in data.get("extractions") or []:
        if not isinstance(group, dict):
            continue
        group_idx = _index(group)
        for raw in group.get("claims") or []:
            if isinstance(raw, dict):
                idx = _index(raw)
                flat.append((raw, idx if idx is not None else group_idx))
    return flat


def _render_syntheses(syntheses: list[TopicSynthesis], with_narrative: bool = False) -> str:
    blocks = []
    for s in syntheses:
        block = SYNTHESIS_BLOCK.format(
            topic=s.topic,
            claim_count=s.claim_count,
            lab_consensus=s.lab_consensus or "(none)",
            critic_consensus=s.critic_consensus or "(none)",
            delta=s.hype_delta.delta,
            lab_sentiment=s.hype_delta.lab_sentiment,
            critic_sentiment=s.hype_delta.critic_sentiment,
            confidence=s.hype_delta.confidence,
            disagreements="; ".join(d.point for d in s.disagreements) or "(none)",
        )
        if with_narrative:
            block += f"\n{s.narrative}"
            if s.notable_predictions:
                block += "\nPredictions:\n" + "\n".join(f"- {p}" for p in s.notable_predictions)
        blocks.append(block)
    return "\n\n".join(blocks)


class OfflineGateway(AnalysisGateway):
    """Degraded mode with no reasoning service: pass items through unjudged."""

    def __init__(self, config: dict | None = None):
        self.config = config or {}

    async def filter_items(self, items: list[RawItem]) -> list[FilteredItem]:
        return [FilteredItem(item=item, relevance=1.0) for item in items]

    async def extract_claims(self, items: list[FilteredItem]) -> list[ExtractedClaim]:
        claims = []
        for f in items:
            text = truncate_text(f.item.body.strip(), 500)
            if not text:
                continue
            claim = normalize_claim({"claimText": text}, f)
            if claim is not None:
                claims.append(claim)
        return claims

    async def synthesize_topic(self, topic: str, claims: list[ExtractedClaim]) -> dict:
        return {}

    async def assess_hype(self, syntheses: list[TopicSynthesis]) -> HypeAssessment:
        return HypeAssessment()


def build_gateway(config: dict) -> AnalysisGateway:
    """Gateway for the configured analysis mode ("llm" or "offline")."""
    mode = get_analysis_config(config)["mode"]
    if mode == "offline":
        logger.info("Analysis gateway running in offline mode")
        return OfflineGateway(config)
    return LLMAnalysisGateway(config)
