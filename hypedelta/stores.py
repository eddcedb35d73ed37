"""Durable stores for sources, content, claims and synthesis results.

All queries are parameterized. Writes are single statements that rely on
the schema's uniqueness constraints for idempotency.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import timedelta

import numpy as np

from hypedelta.db import (
    UNATTACHED_ID,
    UNATTACHED_KIND,
    _dt_str,
    _ensure_unattached,
    _json_load,
    _parse_dt,
)
from hypedelta.models import (
    Content,
    Disagreement,
    ExtractedClaim,
    HypeAssessment,
    HypeDelta,
    RawItem,
    Source,
    SynthesisResult,
    TopicHypeScore,
    TopicSynthesis,
    to_dict,
    utcnow,
)

logger = logging.getLogger(__name__)


def _cutoff(days: float) -> str:
    return _dt_str(utcnow() - timedelta(days=days))


# --- Sources ---


class SourceStore:
    """Tracked external origins, keyed by (kind, identifier)."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def upsert(self, source: Source) -> int:
        """Insert or update a source definition; keeps activity and last_fetched."""
        self.conn.execute(
            """INSERT INTO sources
               (kind, identifier, name, category, tags, active, fetch_frequency_hours)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(kind, identifier) DO UPDATE SET
                 name = excluded.name,
                 category = excluded.category,
                 tags = excluded.tags,
                 fetch_frequency_hours = excluded.fetch_frequency_hours""",
            (
                source.kind,
                source.identifier,
                source.name,
                source.category,
                json.dumps(source.tags),
                int(source.active),
                source.fetch_frequency_hours,
            ),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT id FROM sources WHERE kind = ? AND identifier = ?",
            (source.kind, source.identifier),
        ).fetchone()
        source.id = row["id"]
        return row["id"]

    def get(self, source_id: int) -> Source | None:
        row = self.conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def get_all(self) -> list[Source]:
        rows = self.conn.execute(
            "SELECT * FROM sources WHERE kind != ? ORDER BY kind, identifier",
            (UNATTACHED_KIND,),
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    def get_active(self) -> list[Source]:
        rows = self.conn.execute(
            "SELECT * FROM sources WHERE active = 1 AND kind != ? ORDER BY kind, identifier",
            (UNATTACHED_KIND,),
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    def get_by_kind(self, kind: str, active_only: bool = True) -> list[Source]:
        sql = "SELECT * FROM sources WHERE kind = ?"
        if active_only:
            sql += " AND active = 1"
        rows = self.conn.execute(sql + " ORDER BY identifier", (kind,)).fetchall()
        return [_row_to_source(r) for r in rows]

    def get_due(self, kind: str | None = None) -> list[Source]:
        """Active sources whose fetch cadence has elapsed (or never fetched)."""
        now = utcnow()
        sources = self.get_by_kind(kind) if kind else self.get_active()
        due = []
        for source in sources:
            if source.last_fetched is None:
                due.append(source)
            elif now - source.last_fetched >= timedelta(hours=source.fetch_frequency_hours):
                due.append(source)
        return due

    def mark_fetched(self, source_id: int) -> None:
        self.conn.execute(
            "UPDATE sources SET last_fetched = ? WHERE id = ?",
            (_dt_str(utcnow()), source_id),
        )
        self.conn.commit()

    def set_active(self, source_id: int, active: bool) -> None:
        self.conn.execute(
            "UPDATE sources SET active = ? WHERE id = ?", (int(active), source_id),
        )
        self.conn.commit()

    def remove(self, source_id: int) -> bool:
        """Delete a source, or deactivate it if it owns content.

        Returns True when the row was deleted.
        """
        owned = self.conn.execute(
            "SELECT COUNT(*) AS n FROM content WHERE source_id = ?", (source_id,),
        ).fetchone()["n"]
        if owned:
            logger.info("Source %d owns %d items, deactivating instead", source_id, owned)
            self.set_active(source_id, False)
            return False
        self.conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self.conn.commit()
        return True


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        kind=row["kind"],
        identifier=row["identifier"],
        name=row["name"],
        category=row["category"],
        tags=_json_load(row["tags"], []),
        active=bool(row["active"]),
        fetch_frequency_hours=row["fetch_frequency_hours"],
        last_fetched=_parse_dt(row["last_fetched"]),
    )


# --- Content ---

_CONTENT_SELECT = """
SELECT c.*, s.kind AS source_kind
FROM content c JOIN sources s ON s.id = c.source_id
WHERE s.kind != ?
"""


class ContentStore:
    """Idempotent ledger of ingested items, unique on (source_id, external_id)."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._unattached_id: int | None = None

    def upsert(self, item: RawItem) -> int:
        """Insert or update an item, returning its internal id."""
        self.conn.execute(
            """INSERT INTO content
               (source_id, external_id, title, body, url, author,
                published_at, fetched_at, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(source_id, external_id) DO UPDATE SET
                 title = excluded.title,
                 body = excluded.body,
                 url = excluded.url,
                 author = excluded.author,
                 published_at = COALESCE(excluded.published_at, content.published_at),
                 fetched_at = excluded.fetched_at,
                 metadata = excluded.metadata""",
            (
                item.source_id,
                item.external_id,
                item.title,
                item.body,
                item.url,
                item.author,
                _dt_str(item.published_at),
                _dt_str(utcnow()),
                json.dumps(item.metadata, default=str),
            ),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT id FROM content WHERE source_id = ? AND external_id = ?",
            (item.source_id, item.external_id),
        ).fetchone()
        if isinstance(item, Content):
            item.id = row["id"]
        return row["id"]

    def get(self, content_id: int) -> Content | None:
        row = self.conn.execute(
            _CONTENT_SELECT + " AND c.id = ?", (UNATTACHED_KIND, content_id),
        ).fetchone()
        return _row_to_content(row) if row else None

    def count(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) AS n FROM content WHERE external_id != ?", (UNATTACHED_ID,),
        ).fetchone()["n"]

    def get_recent(self, days: float = 7, limit: int = 500) -> list[Content]:
        """Items published within the window, unprocessed first."""
        cutoff = _cutoff(days)
        rows = self.conn.execute(
            _CONTENT_SELECT
            + """ AND COALESCE(c.published_at, c.fetched_at) >= ?
               ORDER BY c.processed_at IS NOT NULL,
                        COALESCE(c.published_at, c.fetched_at) DESC
               LIMIT ?""",
            (UNATTACHED_KIND, cutoff, limit),
        ).fetchall()
        return [_row_to_content(r) for r in rows]

    def get_unprocessed(self, days: float = 7, limit: int = 100) -> list[Content]:
        cutoff = _cutoff(days)
        rows = self.conn.execute(
            _CONTENT_SELECT
            + """ AND c.processed_at IS NULL
               AND COALESCE(c.published_at, c.fetched_at) >= ?
               ORDER BY COALESCE(c.published_at, c.fetched_at) DESC
               LIMIT ?""",
            (UNATTACHED_KIND, cutoff, limit),
        ).fetchall()
        return [_row_to_content(r) for r in rows]

    def get_by_source(self, source_id: int, limit: int = 50) -> list[Content]:
        rows = self.conn.execute(
            _CONTENT_SELECT + " AND c.source_id = ? ORDER BY c.published_at DESC LIMIT ?",
            (UNATTACHED_KIND, source_id, limit),
        ).fetchall()
        return [_row_to_content(r) for r in rows]

    def get_id(self, source_id: int, external_id: str) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM content WHERE source_id = ? AND external_id = ?",
            (source_id, external_id),
        ).fetchone()
        return row["id"] if row else None

    def get_id_by_url(self, url: str) -> int | None:
        if not url:
            return None
        row = self.conn.execute(
            "SELECT id FROM content WHERE url = ? ORDER BY id LIMIT 1", (url,),
        ).fetchone()
        return row["id"] if row else None

    def mark_processed(self, content_ids: list[int]) -> None:
        if not content_ids:
            return
        now = _dt_str(utcnow())
        self.conn.executemany(
            "UPDATE content SET processed_at = ? WHERE id = ?",
            [(now, cid) for cid in content_ids],
        )
        self.conn.commit()

    def unattached_id(self) -> int:
        """Id of the sentinel row that receives claims with no resolvable origin."""
        if self._unattached_id is None:
            self._unattached_id = _ensure_unattached(self.conn)
            self.conn.commit()
        return self._unattached_id


def _row_to_content(row: sqlite3.Row) -> Content:
    return Content(
        id=row["id"],
        source_id=row["source_id"],
        external_id=row["external_id"],
        title=row["title"],
        body=row["body"],
        url=row["url"],
        author=row["author"],
        published_at=_parse_dt(row["published_at"]),
        fetched_at=_parse_dt(row["fetched_at"]),
        processed_at=_parse_dt(row["processed_at"]),
        metadata=_json_load(row["metadata"], {}),
        source_kind=row["source_kind"],
    )


# --- Claims ---


class ClaimStore:
    """Append-only store of extracted claims and their embeddings."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def upsert(self, claim: ExtractedClaim) -> str:
        """Insert a claim. Claims have no natural key, so this always inserts."""
        if claim.content_id is None:
            raise ValueError("claim must reference a content row before storing")
        claim.id = f"claim_{uuid.uuid4().hex[:16]}"
        self.conn.execute(
            """INSERT INTO claims
               (id, content_id, claim_text, claim_type, topic, stance,
                bullishness, confidence, timeframe, evidence_quality,
                quoteworthiness, target_entity, related_entities,
                original_quote, author, author_category, source_url, extracted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                claim.id,
                claim.content_id,
                claim.claim_text,
                claim.claim_type,
                claim.topic,
                claim.stance,
                claim.bullishness,
                claim.confidence,
                claim.timeframe,
                claim.evidence_quality,
                claim.quoteworthiness,
                claim.target_entity,
                json.dumps(claim.related_entities),
                claim.original_quote,
                claim.author,
                claim.author_category,
                claim.source_url,
                _dt_str(claim.extracted_at),
            ),
        )
        self.conn.commit()
        return claim.id

    def get(self, claim_id: str) -> ExtractedClaim | None:
        row = self.conn.execute("SELECT * FROM claims WHERE id = ?", (claim_id,)).fetchone()
        return _row_to_claim(row) if row else None

    def get_recent(self, days: float = 7, limit: int = 1000) -> list[ExtractedClaim]:
        rows = self.conn.execute(
            "SELECT * FROM claims WHERE extracted_at >= ? ORDER BY extracted_at DESC LIMIT ?",
            (_cutoff(days), limit),
        ).fetchall()
        return [_row_to_claim(r) for r in rows]

    def get_by_topic(self, topic: str, days: float = 7, limit: int = 200) -> list[ExtractedClaim]:
        rows = self.conn.execute(
            """SELECT * FROM claims WHERE topic = ? AND extracted_at >= ?
               ORDER BY extracted_at DESC LIMIT ?""",
            (topic, _cutoff(days), limit),
        ).fetchall()
        return [_row_to_claim(r) for r in rows]

    def get_by_author_category(
        self, category: str, days: float = 7, limit: int = 200,
    ) -> list[ExtractedClaim]:
        rows = self.conn.execute(
            """SELECT * FROM claims WHERE author_category = ? AND extracted_at >= ?
               ORDER BY extracted_at DESC LIMIT ?""",
            (category, _cutoff(days), limit),
        ).fetchall()
        return [_row_to_claim(r) for r in rows]

    def search(
        self,
        topic: str | None = None,
        author: str | None = None,
        author_category: str | None = None,
        claim_type: str | None = None,
        since=None,
        until=None,
        text: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExtractedClaim], int]:
        """Filtered, paginated claim query. Returns (page, total matches)."""
        clauses: list[str] = []
        params: list = []
        if topic:
            clauses.append("topic = ?")
            params.append(topic)
        if author:
            clauses.append("author = ?")
            params.append(author)
        if author_category:
            clauses.append("author_category = ?")
            params.append(author_category)
        if claim_type:
            clauses.append("claim_type = ?")
            params.append(claim_type)
        if since:
            clauses.append("extracted_at >= ?")
            params.append(_dt_str(since))
        if until:
            clauses.append("extracted_at < ?")
            params.append(_dt_str(until))
        if text:
            escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            clauses.append("claim_text LIKE ? ESCAPE '\\'")
            params.append(f"%{escaped}%")

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        total = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM claims{where}", params,
        ).fetchone()["n"]
        rows = self.conn.execute(
            f"SELECT * FROM claims{where} ORDER BY extracted_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [_row_to_claim(r) for r in rows], total

    def topic_summary(self, days: float = 7) -> list[dict]:
        """Per-topic claim counts and sentiment over the lookback window."""
        rows = self.conn.execute(
            """SELECT topic,
                      COUNT(*) AS claim_count,
                      AVG(bullishness) AS avg_bullishness,
                      SUM(author_category = 'lab-researcher') AS lab_claims,
                      SUM(author_category = 'critic') AS critic_claims,
                      SUM(claim_type = 'prediction') AS predictions
               FROM claims WHERE extracted_at >= ?
               GROUP BY topic ORDER BY claim_count DESC""",
            (_cutoff(days),),
        ).fetchall()
        return [dict(r) for r in rows]

    def store_embedding(self, claim_id: str, embedding) -> None:
        vec = np.asarray(embedding, dtype=np.float32)
        self.conn.execute(
            """INSERT INTO claim_embeddings (claim_id, embedding, dims) VALUES (?, ?, ?)
               ON CONFLICT(claim_id) DO UPDATE SET
                 embedding = excluded.embedding, dims = excluded.dims""",
            (claim_id, vec.tobytes(), int(vec.shape[0])),
        )
        self.conn.commit()

    def find_similar(
        self,
        embedding,
        limit: int = 10,
        min_similarity: float = 0.7,
        days: float | None = None,
    ) -> list[tuple[ExtractedClaim, float]]:
        """Claims whose stored embedding is closest to the query vector."""
        query = np.asarray(embedding, dtype=np.float32)
        sql = """SELECT c.*, e.embedding AS vec FROM claims c
                 JOIN claim_embeddings e ON e.claim_id = c.id
                 WHERE e.dims = ?"""
        params: list = [int(query.shape[0])]
        if days is not None:
            sql += " AND c.extracted_at >= ?"
            params.append(_cutoff(days))
        rows = self.conn.execute(sql, params).fetchall()
        if not rows:
            return []

        matrix = np.vstack([np.frombuffer(r["vec"], dtype=np.float32) for r in rows])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms

        ranked = sorted(zip(rows, scores), key=lambda pair: pair[1], reverse=True)
        return [
            (_row_to_claim(row), float(score))
            for row, score in ranked[:limit]
            if score >= min_similarity
        ]


def _row_to_claim(row: sqlite3.Row) -> ExtractedClaim:
    return ExtractedClaim(
        id=row["id"],
        content_id=row["content_id"],
        claim_text=row["claim_text"],
        claim_type=row["claim_type"],
        topic=row["topic"],
        stance=row["stance"],
        bullishness=row["bullishness"],
        confidence=row["confidence"],
        timeframe=row["timeframe"],
        evidence_quality=row["evidence_quality"],
        quoteworthiness=row["quoteworthiness"],
        target_entity=row["target_entity"],
        related_entities=_json_load(row["related_entities"], []),
        original_quote=row["original_quote"],
        author=row["author"],
        author_category=row["author_category"],
        source_url=row["source_url"],
        extracted_at=_parse_dt(row["extracted_at"]),
    )


# --- Synthesis results ---


class SynthesisStore:
    """History of synthesis cycles; each run appends one row."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(self, result: SynthesisResult) -> int:
        cur = self.conn.execute(
            """INSERT INTO synthesis_results
               (period_start, period_end, created_at, syntheses, hype_assessment, digest)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                _dt_str(result.period_start),
                _dt_str(result.period_end),
                _dt_str(result.created_at),
                json.dumps(to_dict(result.syntheses)),
                json.dumps(to_dict(result.hype_assessment)),
                result.digest,
            ),
        )
        self.conn.commit()
        result.id = cur.lastrowid
        return cur.lastrowid

    def get_latest(self) -> SynthesisResult | None:
        row = self.conn.execute(
            "SELECT * FROM synthesis_results ORDER BY created_at DESC, id DESC LIMIT 1"
        ).fetchone()
        return _row_to_result(row) if row else None

    def get_recent(self, limit: int = 10) -> list[SynthesisResult]:
        rows = self.conn.execute(
            "SELECT * FROM synthesis_results ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_result(r) for r in rows]


def _row_to_result(row: sqlite3.Row) -> SynthesisResult:
    return SynthesisResult(
        id=row["id"],
        period_start=_parse_dt(row["period_start"]),
        period_end=_parse_dt(row["period_end"]),
        created_at=_parse_dt(row["created_at"]),
        syntheses=[synthesis_from_dict(d) for d in _json_load(row["syntheses"], [])],
        hype_assessment=assessment_from_dict(_json_load(row["hype_assessment"], {})),
        digest=row["digest"],
    )


def synthesis_from_dict(data: dict) -> TopicSynthesis:
    return TopicSynthesis(
        topic=data["topic"],
        claim_count=data.get("claim_count", 0),
        lab_consensus=data.get("lab_consensus", ""),
        critic_consensus=data.get("critic_consensus", ""),
        agreements=data.get("agreements", []),
        disagreements=[Disagreement(**d) for d in data.get("disagreements", [])],
        emerging_narratives=data.get("emerging_narratives", []),
        notable_predictions=data.get("notable_predictions", []),
        evidence_quality=data.get("evidence_quality", 0.0),
        hype_delta=HypeDelta(**data.get("hype_delta", {})),
        narrative=data.get("narrative", ""),
    )


def assessment_from_dict(data: dict) -> HypeAssessment:
    return HypeAssessment(
        overhyped=[TopicHypeScore(**s) for s in data.get("overhyped", [])],
        underhyped=[TopicHypeScore(**s) for s in data.get("underhyped", [])],
        accurately_assessed=[
            TopicHypeScore(**s) for s in data.get("accurately_assessed", [])
        ],
        overall_sentiment=data.get("overall_sentiment", 0.5),
        summary=data.get("summary", ""),
    )
