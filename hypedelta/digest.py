"""Weekly digest rendering and file output."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from hypedelta.config import get_digest_dir
from hypedelta.models import SynthesisResult, TopicHypeScore

logger = logging.getLogger(__name__)


def digest_path(config: dict, when: datetime) -> Path:
    """data/digests/{iso-year}-W{iso-week}.md for the week containing `when`."""
    year, week, _ = when.isocalendar()
    return Path(get_digest_dir(config)) / f"{year}-W{week:02d}.md"


def _score_lines(label: str, scores: list[TopicHypeScore]) -> list[str]:
    if not scores:
        return []
    lines = [f"**{label}**", ""]
    for s in scores:
        line = f"- {s.topic} ({s.score:+.2f})"
        if s.reasoning:
            line += f": {s.reasoning}"
        lines.append(line)
    lines.append("")
    return lines


def format_fallback_digest(result: SynthesisResult) -> str:
    """Markdown digest built from the synthesis numbers alone."""
    start = result.period_start.strftime("%b %d")
    end = result.period_end.strftime("%b %d, %Y")
    lines = [f"# AI Discourse Digest: {start} to {end}", ""]

    if not result.syntheses:
        lines.append("_No topics had enough claims this period._")
        return "\n".join(lines) + "\n"

    assessment = result.hype_assessment
    lines += ["## Hype Check", ""]
    if assessment.summary:
        lines += [assessment.summary, ""]
    lines += _score_lines("Overhyped", assessment.overhyped)
    lines += _score_lines("Underhyped", assessment.underhyped)
    lines += [f"Field sentiment: {assessment.overall_sentiment:.0%} bullish", ""]

    lines += ["## Topics", ""]
    for s in result.syntheses:
        d = s.hype_delta
        lines.append(f"### {s.topic} ({s.claim_count} claims)")
        lines.append("")
        lines.append(
            f"Hype delta {d.delta:+.2f} (lab {d.lab_sentiment:.2f} n={d.lab_sample_size}, "
            f"critic {d.critic_sentiment:.2f} n={d.critic_sample_size}, "
            f"confidence {d.confidence:.2f})"
        )
        lines.append("")
        if s.narrative:
            lines += [s.narrative, ""]
        for point in s.disagreements:
            lines.append(f"- Disagreement: {point.point}")
        for prediction in s.notable_predictions:
            lines.append(f"- Prediction: {prediction}")
        if s.disagreements or s.notable_predictions:
            lines.append("")

    return "\n".join(lines)


def write_digest(config: dict, result: SynthesisResult) -> Path:
    """Write the result's digest (or a local rendering) to the weekly file."""
    path = digest_path(config, result.period_end)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = result.digest or format_fallback_digest(result)
    path.write_text(text, encoding="utf-8")
    logger.info("Digest written to %s (%d chars)", path, len(text))
    return path
