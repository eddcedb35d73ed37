"""Prediction lifecycle tracking and accuracy statistics."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from hypedelta.db import _dt_str, _parse_dt
from hypedelta.models import PREDICTION_STATUSES, Prediction, utcnow

logger = logging.getLogger(__name__)

PENDING_STATUS = "too-early"
TERMINAL_STATUSES = frozenset(PREDICTION_STATUSES) - {PENDING_STATUS}
SCORED_STATUSES = ("verified", "partially-verified")

TIMEFRAME_HORIZONS = {
    "near-term": timedelta(days=365),
    "medium-term": timedelta(days=3 * 365),
    "long-term": timedelta(days=10 * 365),
}


class PredictionStateError(ValueError):
    """Raised for an invalid status or a disallowed status transition."""


class PredictionNotFoundError(LookupError):
    """Raised when updating a prediction id that does not exist."""


def target_date_for(made_at: datetime, timeframe: str | None) -> datetime | None:
    horizon = TIMEFRAME_HORIZONS.get(timeframe or "")
    return made_at + horizon if horizon else None


class PredictionTracker:
    """State machine over falsifiable predictions.

    ``too-early`` is the only non-terminal status. Once a prediction has been
    resolved, moving it again requires ``override=True``.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record(self, prediction: Prediction) -> str:
        """Insert a prediction with status ``too-early``; returns its id."""
        prediction.id = prediction.id or f"pred_{uuid.uuid4().hex[:16]}"
        prediction.status = PENDING_STATUS
        prediction.verified_at = None
        prediction.accuracy_score = None
        if prediction.target_date is None:
            prediction.target_date = target_date_for(prediction.made_at, prediction.timeframe)

        self.conn.execute(
            """INSERT INTO predictions
               (id, claim_id, prediction_text, author, author_category, topic,
                confidence, timeframe, made_at, target_date, status, notes)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO NOTHING""",
            (
                prediction.id,
                prediction.claim_id,
                prediction.prediction_text,
                prediction.author,
                prediction.author_category,
                prediction.topic,
                prediction.confidence,
                prediction.timeframe,
                _dt_str(prediction.made_at),
                _dt_str(prediction.target_date),
                PENDING_STATUS,
                prediction.notes,
            ),
        )
        self.conn.commit()
        return prediction.id

    def update_status(
        self,
        prediction_id: str,
        status: str,
        accuracy_score: float | None = None,
        evidence: str | None = None,
        override: bool = False,
    ) -> Prediction:
        """Resolve a prediction. Raises PredictionStateError on a bad transition."""
        if status not in TERMINAL_STATUSES:
            raise PredictionStateError(
                f"'{status}' is not a verification status "
                f"(expected one of {', '.join(sorted(TERMINAL_STATUSES))})"
            )
        if accuracy_score is not None and not 0.0 <= accuracy_score <= 1.0:
            raise PredictionStateError(f"accuracy score {accuracy_score} outside [0, 1]")

        current = self.get(prediction_id)
        if current is None:
            raise PredictionNotFoundError(prediction_id)

        if current.status != PENDING_STATUS and not override:
            raise PredictionStateError(
                f"prediction {prediction_id} is already '{current.status}'; "
                f"pass override=True to change it to '{status}'"
            )
        if current.status != PENDING_STATUS:
            logger.warning(
                "Overriding prediction %s: %s -> %s",
                prediction_id, current.status, status,
            )

        verified_at = utcnow()
        self.conn.execute(
            """UPDATE predictions SET status = ?, verified_at = ?,
               accuracy_score = ?, evidence = ? WHERE id = ?""",
            (status, _dt_str(verified_at), accuracy_score, evidence, prediction_id),
        )
        self.conn.commit()

        current.status = status
        current.verified_at = verified_at
        current.accuracy_score = accuracy_score
        current.evidence = evidence
        return current

    def get(self, prediction_id: str) -> Prediction | None:
        row = self.conn.execute(
            "SELECT * FROM predictions WHERE id = ?", (prediction_id,),
        ).fetchone()
        return _row_to_prediction(row) if row else None

    def get_pending(self, limit: int = 100) -> list[Prediction]:
        rows = self.conn.execute(
            "SELECT * FROM predictions WHERE status = ? ORDER BY made_at DESC LIMIT ?",
            (PENDING_STATUS, limit),
        ).fetchall()
        return [_row_to_prediction(r) for r in rows]

    def get_by_author(self, author: str) -> list[Prediction]:
        rows = self.conn.execute(
            "SELECT * FROM predictions WHERE author = ? ORDER BY made_at DESC",
            (author,),
        ).fetchall()
        return [_row_to_prediction(r) for r in rows]

    def get_due(self, as_of: datetime | None = None) -> list[Prediction]:
        """Pending predictions whose target date has passed."""
        as_of = as_of or utcnow()
        rows = self.conn.execute(
            """SELECT * FROM predictions
               WHERE status = ? AND target_date IS NOT NULL AND target_date <= ?
               ORDER BY target_date""",
            (PENDING_STATUS, _dt_str(as_of)),
        ).fetchall()
        return [_row_to_prediction(r) for r in rows]

    def get_accuracy_stats(self, author: str | None = None) -> dict:
        """Counts per status and mean accuracy over scored predictions."""
        where, params = ("WHERE author = ?", (author,)) if author else ("", ())
        rows = self.conn.execute(
            f"SELECT status, COUNT(*) AS n FROM predictions {where} GROUP BY status",
            params,
        ).fetchall()
        counts = {status: 0 for status in PREDICTION_STATUSES}
        for row in rows:
            counts[row["status"]] = row["n"]

        score_where = "WHERE status IN (?, ?) AND accuracy_score IS NOT NULL"
        score_params: tuple = SCORED_STATUSES
        if author:
            score_where += " AND author = ?"
            score_params = (*SCORED_STATUSES, author)
        avg = self.conn.execute(
            f"SELECT AVG(accuracy_score) AS avg FROM predictions {score_where}",
            score_params,
        ).fetchone()["avg"]

        return {
            "total": sum(counts.values()),
            "verified": counts["verified"],
            "falsified": counts["falsified"],
            "partially_verified": counts["partially-verified"],
            "unfalsifiable": counts["unfalsifiable"],
            "ambiguous": counts["ambiguous"],
            "pending": counts[PENDING_STATUS],
            "average_accuracy": float(avg) if avg is not None else 0.0,
        }


def _row_to_prediction(row: sqlite3.Row) -> Prediction:
    return Prediction(
        id=row["id"],
        claim_id=row["claim_id"],
        prediction_text=row["prediction_text"],
        author=row["author"],
        author_category=row["author_category"],
        topic=row["topic"],
        confidence=row["confidence"],
        timeframe=row["timeframe"],
        made_at=_parse_dt(row["made_at"]),
        target_date=_parse_dt(row["target_date"]),
        status=row["status"],
        verified_at=_parse_dt(row["verified_at"]),
        accuracy_score=row["accuracy_score"],
        evidence=row["evidence"],
        notes=row["notes"],
    )
