"""Per-topic synthesis and the cross-topic hype assessment."""

from __future__ import annotations

import logging

from hypedelta.config import get_cohorts
from hypedelta.gateway import AnalysisGateway
from hypedelta.models import (
    TOPICS,
    ExtractedClaim,
    HypeAssessment,
    HypeDelta,
    TopicSynthesis,
)

logger = logging.getLogger(__name__)

EVIDENCE_WEIGHTS = {
    "strong": 1.0,
    "moderate": 0.66,
    "weak": 0.33,
    "appeal-to-authority": 0.1,
}
CONFIDENCE_SAMPLE_SIZE = 10
MAX_LOCAL_PREDICTIONS = 5


def group_by_topic(claims: list[ExtractedClaim]) -> dict[str, list[ExtractedClaim]]:
    """Bucket claims by topic; missing or unknown topics go to "general"."""
    groups: dict[str, list[ExtractedClaim]] = {}
    for claim in claims:
        topic = claim.topic if claim.topic in TOPICS else "general"
        groups.setdefault(topic, []).append(claim)
    return groups


def _mean_bullishness(claims: list[ExtractedClaim]) -> float:
    if not claims:
        return 0.5
    return sum(c.bullishness for c in claims) / len(claims)


def compute_hype_delta(
    claims: list[ExtractedClaim],
    lab: set[str] | None = None,
    critic: set[str] | None = None,
) -> HypeDelta:
    """Lab sentiment minus critic sentiment over one topic's claims.

    An empty cohort counts as neutral (0.5). Confidence grows with the smaller
    cohort and is 0 when either side has no claims.
    """
    lab = lab if lab is not None else {"lab-researcher"}
    critic = critic if critic is not None else {"critic"}
    lab_claims = [c for c in claims if c.author_category in lab]
    critic_claims = [c for c in claims if c.author_category in critic]
    lab_sentiment = _mean_bullishness(lab_claims)
    critic_sentiment = _mean_bullishness(critic_claims)
    return HypeDelta(
        delta=lab_sentiment - critic_sentiment,
        lab_sentiment=lab_sentiment,
        critic_sentiment=critic_sentiment,
        confidence=min(1.0, min(len(lab_claims), len(critic_claims)) / CONFIDENCE_SAMPLE_SIZE),
        lab_sample_size=len(lab_claims),
        critic_sample_size=len(critic_claims),
    )


def average_evidence_quality(claims: list[ExtractedClaim]) -> float:
    if not claims:
        return 0.0
    weights = [EVIDENCE_WEIGHTS.get(c.evidence_quality, EVIDENCE_WEIGHTS["weak"]) for c in claims]
    return sum(weights) / len(weights)


def local_predictions(claims: list[ExtractedClaim], limit: int = MAX_LOCAL_PREDICTIONS) -> list[str]:
    """Most quotable prediction claims, formatted for display."""
    predictions = sorted(
        (c for c in claims if c.claim_type == "prediction"),
        key=lambda c: c.quoteworthiness,
        reverse=True,
    )
    lines = []
    for claim in predictions[:limit]:
        line = f"{claim.author}: {claim.claim_text}" if claim.author else claim.claim_text
        if claim.timeframe:
            line += f" ({claim.timeframe})"
        lines.append(line)
    return lines


class SynthesisEngine:
    def __init__(self, config: dict, gateway: AnalysisGateway):
        self.config = config
        self.gateway = gateway
        self.lab, self.critic = get_cohorts(config)

    def group_by_topic(self, claims: list[ExtractedClaim]) -> dict[str, list[ExtractedClaim]]:
        return group_by_topic(claims)

    def compute_hype_delta(self, claims: list[ExtractedClaim]) -> HypeDelta:
        return compute_hype_delta(claims, self.lab, self.critic)

    async def synthesize_topic(self, topic: str, claims: list[ExtractedClaim]) -> TopicSynthesis:
        """Merge gateway narrative with locally computed numbers."""
        narrative = await self.gateway.synthesize_topic(topic, claims)
        evidence = narrative.get("evidence_quality")
        return TopicSynthesis(
            topic=topic,
            claim_count=len(claims),
            lab_consensus=narrative.get("lab_consensus", ""),
            critic_consensus=narrative.get("critic_consensus", ""),
            agreements=narrative.get("agreements", []),
            disagreements=narrative.get("disagreements", []),
            emerging_narratives=narrative.get("emerging_narratives", []),
            notable_predictions=(
                narrative.get("notable_predictions") or local_predictions(claims)
            ),
            evidence_quality=(
                evidence if evidence is not None else average_evidence_quality(claims)
            ),
            hype_delta=self.compute_hype_delta(claims),
            narrative=narrative.get("narrative", ""),
        )

    async def synthesize_all(
        self,
        claims: list[ExtractedClaim],
        topics: list[str] | None = None,
        min_claims: int = 1,
    ) -> list[TopicSynthesis]:
        """Synthesize each topic group in turn, largest groups first."""
        groups = self.group_by_topic(claims)
        if topics:
            groups = {t: c for t, c in groups.items() if t in topics}
        syntheses = []
        for topic, topic_claims in sorted(groups.items(), key=lambda kv: -len(kv[1])):
            if len(topic_claims) < min_claims:
                logger.debug("Skipping %s: %d claims", topic, len(topic_claims))
                continue
            syntheses.append(await self.synthesize_topic(topic, topic_claims))
            logger.info(
                "Synthesized %s: %d claims, delta %+.2f",
                topic, len(topic_claims), syntheses[-1].hype_delta.delta,
            )
        return syntheses

    async def generate_hype_assessment(self, syntheses: list[TopicSynthesis]) -> HypeAssessment:
        if not syntheses:
            return HypeAssessment()
        try:
            return await self.gateway.assess_hype(syntheses)
        except Exception:
            logger.exception("Hype assessment failed, using neutral assessment")
            return HypeAssessment()
