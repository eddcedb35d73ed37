"""SQLite database schema, connection setup, and the pipeline run ledger."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path

from hypedelta.models import PipelineRun

SCHEMA_VERSION = 1

UNATTACHED_KIND = "system"
UNATTACHED_ID = "unattached"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    identifier TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    active INTEGER NOT NULL DEFAULT 1,
    fetch_frequency_hours INTEGER NOT NULL DEFAULT 24,
    last_fetched TEXT,
    UNIQUE (kind, identifier)
);

CREATE TABLE IF NOT EXISTS content (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL,
    external_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    author TEXT NOT NULL DEFAULT '',
    published_at TEXT,
    fetched_at TEXT NOT NULL,
    processed_at TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    UNIQUE (source_id, external_id),
    FOREIGN KEY (source_id) REFERENCES sources(id)
);

CREATE TABLE IF NOT EXISTS claims (
    id TEXT PRIMARY KEY,
    content_id INTEGER NOT NULL,
    claim_text TEXT NOT NULL,
    claim_type TEXT NOT NULL,
    topic TEXT NOT NULL,
    stance TEXT NOT NULL,
    bullishness REAL NOT NULL,
    confidence REAL NOT NULL,
    timeframe TEXT,
    evidence_quality TEXT NOT NULL,
    quoteworthiness REAL NOT NULL,
    target_entity TEXT,
    related_entities TEXT NOT NULL DEFAULT '[]',
    original_quote TEXT,
    author TEXT NOT NULL DEFAULT '',
    author_category TEXT NOT NULL DEFAULT 'unknown',
    source_url TEXT NOT NULL DEFAULT '',
    extracted_at TEXT NOT NULL,
    FOREIGN KEY (content_id) REFERENCES content(id)
);

CREATE TABLE IF NOT EXISTS claim_embeddings (
    claim_id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    dims INTEGER NOT NULL,
    FOREIGN KEY (claim_id) REFERENCES claims(id)
);

CREATE TABLE IF NOT EXISTS predictions (
    id TEXT PRIMARY KEY,
    claim_id TEXT,
    prediction_text TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT '',
    author_category TEXT NOT NULL DEFAULT 'unknown',
    topic TEXT NOT NULL DEFAULT 'general',
    confidence REAL NOT NULL DEFAULT 0.5,
    timeframe TEXT,
    made_at TEXT NOT NULL,
    target_date TEXT,
    status TEXT NOT NULL DEFAULT 'too-early',
    verified_at TEXT,
    accuracy_score REAL,
    evidence TEXT,
    notes TEXT,
    FOREIGN KEY (claim_id) REFERENCES claims(id)
);

CREATE TABLE IF NOT EXISTS synthesis_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    created_at TEXT NOT NULL,
    syntheses TEXT NOT NULL DEFAULT '[]',
    hype_assessment TEXT NOT NULL DEFAULT '{}',
    digest TEXT
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL DEFAULT 'process',
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    items_in INTEGER NOT NULL DEFAULT 0,
    items_out INTEGER NOT NULL DEFAULT 0,
    llm_tokens_used INTEGER NOT NULL DEFAULT 0,
    llm_cost_usd REAL NOT NULL DEFAULT 0.0
);

CREATE INDEX IF NOT EXISTS idx_content_published ON content(published_at);
CREATE INDEX IF NOT EXISTS idx_content_processed ON content(processed_at);
CREATE INDEX IF NOT EXISTS idx_content_url ON content(url);
CREATE INDEX IF NOT EXISTS idx_claims_topic ON claims(topic);
CREATE INDEX IF NOT EXISTS idx_claims_author_category ON claims(author_category);
CREATE INDEX IF NOT EXISTS idx_claims_extracted ON claims(extracted_at);
CREATE INDEX IF NOT EXISTS idx_predictions_status ON predictions(status);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode and foreign keys enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables, the unattached sentinel, and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        _ensure_unattached(conn)
        conn.commit()
    finally:
        conn.close()


def _ensure_unattached(conn: sqlite3.Connection) -> int:
    """Create the reserved source/content pair that orphaned claims point at."""
    conn.execute(
        """INSERT OR IGNORE INTO sources (kind, identifier, name, active)
           VALUES (?, ?, 'Unattached claims', 0)""",
        (UNATTACHED_KIND, UNATTACHED_ID),
    )
    source_id = conn.execute(
        "SELECT id FROM sources WHERE kind = ? AND identifier = ?",
        (UNATTACHED_KIND, UNATTACHED_ID),
    ).fetchone()["id"]
    conn.execute(
        """INSERT OR IGNORE INTO content (source_id, external_id, body, fetched_at)
           VALUES (?, ?, '', ?)""",
        (source_id, UNATTACHED_ID, datetime(1970, 1, 1).isoformat()),
    )
    return conn.execute(
        "SELECT id FROM content WHERE source_id = ? AND external_id = ?",
        (source_id, UNATTACHED_ID),
    ).fetchone()["id"]


def _dt_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _parse_dt(s: str | None) -> datetime | None:
    if s is None:
        return None
    return datetime.fromisoformat(s)


def _json_load(s: str | None, default):
    if not s:
        return default
    return json.loads(s)


# --- Pipeline run ledger ---


def insert_run(conn: sqlite3.Connection, run: PipelineRun) -> int:
    """Record the start of an orchestration cycle."""
    cur = conn.execute(
        "INSERT INTO pipeline_runs (kind, started_at, status) VALUES (?, ?, ?)",
        (run.kind, _dt_str(run.started_at), run.status),
    )
    conn.commit()
    return cur.lastrowid


def finish_run(conn: sqlite3.Connection, run_id: int, run: PipelineRun) -> None:
    """Update a run record with final stats."""
    conn.execute(
        """UPDATE pipeline_runs SET
           finished_at = ?, status = ?, items_in = ?, items_out = ?,
           llm_tokens_used = ?, llm_cost_usd = ?
           WHERE id = ?""",
        (
            _dt_str(run.finished_at),
            run.status,
            run.items_in,
            run.items_out,
            run.llm_tokens_used,
            run.llm_cost_usd,
            run_id,
        ),
    )
    conn.commit()


def get_recent_runs(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Get recent orchestration runs, newest first."""
    rows = conn.execute(
        "SELECT * FROM pipeline_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
    ).fetchall()
    return [dict(row) for row in rows]
