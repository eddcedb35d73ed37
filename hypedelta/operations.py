"""Write API: manual and scheduled triggers with single-flight guarding."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from hypedelta.config import get_db_path, get_embedding_config, get_rate_limits
from hypedelta.db import finish_run, get_connection, init_db, insert_run
from hypedelta.digest import write_digest
from hypedelta.embeddings import EmbeddingService
from hypedelta.gateway import AnalysisGateway, build_gateway
from hypedelta.ingest.fetcher import SourceFetcher
from hypedelta.models import (
    FetchReport,
    PipelineRun,
    ProcessingResult,
    RawItem,
    Source,
    SynthesisResult,
    utcnow,
)
from hypedelta.pipeline import PipelineOrchestrator
from hypedelta.retry import RateLimiter
from hypedelta.stores import SourceStore

logger = logging.getLogger(__name__)

FETCH_DAYS = (1, 30)
PROCESS_LIMIT = (1, 500)
SYNTHESIS_DAYS = (1, 90)


class OperationConflictError(RuntimeError):
    """Raised when an operation is triggered while it is already running."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Operation '{name}' is already running")


class OperationRegistry:
    """Names of the operations currently in flight.

    Names may be scoped as `family:member` (`fetch:twitter`). A bare family
    name conflicts with every member of that family and the reverse, while
    different members run side by side.

    Claims are checked and taken without yielding to the event loop, so two
    triggers in the same loop can never both hold a name.
    """

    def __init__(self):
        self._running: set[str] = set()

    @staticmethod
    def _overlaps(a: str, b: str) -> bool:
        if a == b:
            return True
        return a.startswith(b + ":") or b.startswith(a + ":")

    def _conflict(self, name: str) -> str | None:
        return next((r for r in sorted(self._running) if self._overlaps(name, r)), None)

    @contextmanager
    def claim(self, *names: str):
        for name in names:
            if self._conflict(name) is not None:
                raise OperationConflictError(name)
        self._running.update(names)
        try:
            yield
        finally:
            self._running.difference_update(names)

    def is_running(self, name: str) -> bool:
        return self._conflict(name) is not None

    @property
    def running(self) -> set[str]:
        return set(self._running)


def clamp(value: int | float, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return int(max(low, min(high, value)))


class Operations:
    """Entry points shared by the CLI and the scheduler.

    Each operation opens its own database connection and holds its name in
    the registry for its whole duration.
    """

    def __init__(
        self,
        config: dict,
        registry: OperationRegistry | None = None,
        gateway: AnalysisGateway | None = None,
        embeddings: EmbeddingService | None = None,
    ):
        self.config = config
        self.registry = registry or OperationRegistry()
        self.gateway = gateway or build_gateway(config)
        self.embeddings = embeddings
        if self.embeddings is None and get_embedding_config(config)["enabled"]:
            self.embeddings = EmbeddingService(config)
        self.limiter = RateLimiter(intervals=get_rate_limits(config))

    @contextmanager
    def _connection(self):
        db_path = get_db_path(self.config)
        init_db(db_path)
        conn = get_connection(db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _orchestrator(self, conn: sqlite3.Connection) -> PipelineOrchestrator:
        return PipelineOrchestrator(self.config, conn, self.gateway, self.embeddings)

    # --- Fetch ---

    async def fetch(self, days: int = 1) -> FetchReport:
        """Fetch every active source, keeping items published in the last `days`."""
        days = clamp(days, FETCH_DAYS)
        with self.registry.claim("fetch"), self._connection() as conn:
            return await self._fetch(conn, SourceStore(conn).get_active(), days)

    async def fetch_kind(self, kind: str, days: int = 1) -> FetchReport:
        """Fetch the active sources of one kind (used by the per-kind timers)."""
        days = clamp(days, FETCH_DAYS)
        with self.registry.claim(f"fetch:{kind}"), self._connection() as conn:
            return await self._fetch(conn, SourceStore(conn).get_by_kind(kind), days)

    async def _fetch(self, conn: sqlite3.Connection, sources: list[Source], days: int) -> FetchReport:
        run = PipelineRun(kind="fetch", items_in=len(sources))
        run_id = insert_run(conn, run)
        fetcher = SourceFetcher(self.config, conn, self.limiter)
        try:
            report = await fetcher.fetch_sources(sources, since=utcnow() - timedelta(days=days))
        except Exception:
            run.status = "failed"
            run.finished_at = utcnow()
            finish_run(conn, run_id, run)
            raise
        run.status = "completed"
        run.finished_at = utcnow()
        run.items_out = report.total_items
        finish_run(conn, run_id, run)
        return report

    async def monitor(self, window_minutes: int = 15) -> list[tuple[Source, list[RawItem]]]:
        with self.registry.claim("monitor"), self._connection() as conn:
            fetcher = SourceFetcher(self.config, conn, self.limiter)
            return await fetcher.monitor(window_minutes=window_minutes)

    # --- Analysis ---

    async def process(self, limit: int = 100, days: float = 7) -> ProcessingResult:
        limit = clamp(limit, PROCESS_LIMIT)
        with self.registry.claim("process"), self._connection() as conn:
            return await self._orchestrator(conn).process_pending(limit=limit, days=days)

    async def synthesize(self, days: int = 7, generate_digest: bool = True) -> SynthesisResult:
        days = clamp(days, SYNTHESIS_DAYS)
        with self.registry.claim("synthesize"), self._connection() as conn:
            return await self._orchestrator(conn).run_synthesis(
                lookback_days=days, generate_digest=generate_digest,
            )

    async def run_pipeline(self, days: int = 1, limit: int = 100) -> dict:
        """Fetch, process and synthesize in sequence under one claim."""
        days = clamp(days, FETCH_DAYS)
        limit = clamp(limit, PROCESS_LIMIT)
        with self.registry.claim("fetch", "process", "synthesize"), self._connection() as conn:
            report = await self._fetch(conn, SourceStore(conn).get_active(), days)
            orchestrator = self._orchestrator(conn)
            processed = await orchestrator.process_pending(limit=limit, days=max(days, 7))
            synthesis = await orchestrator.run_synthesis(lookback_days=7)
        return {"fetch": report, "process": processed, "synthesis": synthesis}

    async def weekly_digest(self) -> Path:
        """Synthesize the past week and write the digest markdown file."""
        with self.registry.claim("synthesize"), self._connection() as conn:
            result = await self._orchestrator(conn).run_synthesis(lookback_days=7)
        return write_digest(self.config, result)
