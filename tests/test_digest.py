"""Tests for digest paths and the local markdown rendering."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from hypedelta.digest import digest_path, format_fallback_digest, write_digest
from hypedelta.models import (
    Disagreement,
    HypeAssessment,
    HypeDelta,
    SynthesisResult,
    TopicHypeScore,
    TopicSynthesis,
)


def _result(digest=None) -> SynthesisResult:
    return SynthesisResult(
        period_start=datetime(2025, 1, 6),
        period_end=datetime(2025, 1, 13),
        syntheses=[TopicSynthesis(
            topic="agents",
            claim_count=12,
            hype_delta=HypeDelta(delta=0.35, lab_sentiment=0.8, critic_sentiment=0.45,
                                 confidence=0.4, lab_sample_size=6, critic_sample_size=4),
            disagreements=[Disagreement(point="Are demos representative?")],
            notable_predictions=["Lab Person: agents book travel (near-term)"],
            narrative="Agent launches dominated the week.",
        )],
        hype_assessment=HypeAssessment(
            overhyped=[TopicHypeScore(topic="agents", score=0.6, reasoning="demo-driven")],
            overall_sentiment=0.7,
            summary="Agents are running ahead of evidence.",
        ),
        digest=digest,
    )


def test_digest_path_uses_iso_week():
    config = {"digest": {"dir": "out"}}
    assert digest_path(config, datetime(2025, 1, 13)) == Path("out/2025-W03.md")
    assert digest_path(config, datetime(2024, 12, 30)) == Path("out/2025-W01.md")
    assert digest_path({}, datetime(2025, 3, 5)) == Path("data/digests/2025-W10.md")


def test_fallback_digest_sections():
    text = format_fallback_digest(_result())
    assert text.startswith("# AI Discourse Digest: Jan 06 to Jan 13, 2025")
    assert "Agents are running ahead of evidence." in text
    assert "- agents (+0.60): demo-driven" in text
    assert "Field sentiment: 70% bullish" in text
    assert "### agents (12 claims)" in text
    assert "Hype delta +0.35 (lab 0.80 n=6, critic 0.45 n=4, confidence 0.40)" in text
    assert "- Disagreement: Are demos representative?" in text
    assert "- Prediction: Lab Person: agents book travel (near-term)" in text


def test_fallback_digest_empty_period():
    empty = SynthesisResult(period_start=datetime(2025, 1, 6), period_end=datetime(2025, 1, 13))
    assert "No topics had enough claims" in format_fallback_digest(empty)


def test_write_digest_prefers_generated_text(tmp_path):
    config = {"digest": {"dir": str(tmp_path / "digests")}}

    path = write_digest(config, _result(digest="# Written by the model\n"))
    assert path == tmp_path / "digests" / "2025-W03.md"
    assert path.read_text() == "# Written by the model\n"

    path = write_digest(config, _result())
    assert "### agents" in path.read_text()
