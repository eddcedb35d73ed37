"""Pipeline orchestrator: ingestion cycle and synthesis cycle."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from datetime import timedelta

from hypedelta.config import get_analysis_config
from hypedelta.db import finish_run, insert_run
from hypedelta.embeddings import EmbeddingService
from hypedelta.gateway import AnalysisGateway
from hypedelta.llm.batch import CostTracker, track_costs
from hypedelta.models import (
    ExtractedClaim,
    PipelineRun,
    Prediction,
    ProcessingResult,
    RawItem,
    SynthesisResult,
    utcnow,
)
from hypedelta.predictions import PredictionTracker
from hypedelta.stores import ClaimStore, ContentStore, SynthesisStore
from hypedelta.synthesis import SynthesisEngine

logger = logging.getLogger(__name__)

MIN_BODY_CHARS = 50
EMBED_CONCURRENCY = 5

_LINK_ONLY = re.compile(r"^(?:\s*https?://\S+)+\s*$")


def is_noise(item: RawItem) -> bool:
    """Cheap local check for retweets, very short posts and bare links."""
    body = (item.body or "").strip()
    if body.startswith("RT @"):
        return True
    if len(body) < MIN_BODY_CHARS:
        return True
    return bool(_LINK_ONLY.match(body))


class PipelineOrchestrator:
    """Runs the staged analysis over content and records each cycle."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        gateway: AnalysisGateway,
        embeddings: EmbeddingService | None = None,
    ):
        self.config = config
        self.conn = conn
        self.gateway = gateway
        self.embeddings = embeddings
        self.content = ContentStore(conn)
        self.claims = ClaimStore(conn)
        self.syntheses = SynthesisStore(conn)
        self.predictions = PredictionTracker(conn)
        self.engine = SynthesisEngine(config, gateway)
        self.relevance_threshold = get_analysis_config(config)["relevance_threshold"]

    def prefilter(self, items: list[RawItem]) -> list[RawItem]:
        kept = [item for item in items if not is_noise(item)]
        if len(kept) < len(items):
            logger.info("Pre-filter dropped %d of %d items", len(items) - len(kept), len(items))
        return kept

    # --- Ingestion cycle ---

    async def process_batch(self, items: list[RawItem]) -> ProcessingResult:
        """Filter, extract, enrich and store one batch of items."""
        run = PipelineRun(kind="process", items_in=len(items))
        with track_costs() as tracker:
            run_id = insert_run(self.conn, run)
            logger.info("Process run #%d started with %d items", run_id, len(items))
            try:
                result = await self._process(items)
            except Exception:
                logger.exception("Process run #%d failed", run_id)
                self._finish(run_id, run, tracker, "failed")
                raise
            run.items_out = result.claims_stored
            self._finish(run_id, run, tracker, "completed")

        logger.info(
            "Process run #%d completed: %d items -> %d relevant -> %d claims "
            "(%d predictions), %d tokens, $%.4f",
            run_id, result.input_items, result.filtered_items, result.claims_stored,
            result.predictions_recorded, run.llm_tokens_used, run.llm_cost_usd,
        )
        return result

    async def process_pending(self, limit: int = 100, days: float = 7) -> ProcessingResult:
        """Process stored content that has not been analysed yet."""
        pending = self.content.get_unprocessed(days=days, limit=limit)
        logger.info("%d unprocessed items in the last %s days", len(pending), days)
        return await self.process_batch(pending)

    async def _process(self, items: list[RawItem]) -> ProcessingResult:
        result = ProcessingResult(input_items=len(items))

        candidates = self.prefilter(items)
        result.after_prefilter = len(candidates)

        claims: list[ExtractedClaim] = []
        if candidates:
            assessed = await self.gateway.filter_items(candidates)
            relevant = [f for f in assessed if f.relevance >= self.relevance_threshold]
            result.filtered_items = len(relevant)
            logger.info(
                "Filter kept %d of %d items (threshold %.2f)",
                len(relevant), len(candidates), self.relevance_threshold,
            )
            if relevant:
                claims = await self.gateway.extract_claims(relevant)
        result.claims_extracted = len(claims)

        if claims and self.embeddings is not None:
            result.claims_embedded = await self._enrich(claims)

        content_ids = self._store_content(items, result)
        self._store_claims(claims, content_ids, result)
        self.content.mark_processed(sorted(set(content_ids.values())))
        return result

    async def _enrich(self, claims: list[ExtractedClaim]) -> int:
        """Attach embeddings; a failing claim keeps embedding=None."""
        semaphore = asyncio.Semaphore(EMBED_CONCURRENCY)

        async def _embed(claim: ExtractedClaim) -> bool:
            async with semaphore:
                try:
                    claim.embedding = await self.embeddings.embed(claim.claim_text)
                except Exception:
                    logger.exception("Embedding failed for claim: %.80s", claim.claim_text)
                    return False
            return True

        results = await asyncio.gather(*[_embed(c) for c in claims])
        return sum(results)

    def _store_content(
        self, items: list[RawItem], result: ProcessingResult,
    ) -> dict[tuple[int, str], int]:
        """Upsert items that are not yet stored; map natural key to content id."""
        content_ids: dict[tuple[int, str], int] = {}
        for item in items:
            key = (item.source_id, item.external_id)
            existing = getattr(item, "id", None)
            if existing is not None:
                content_ids[key] = existing
                continue
            content_ids[key] = self.content.upsert(item)
            result.content_stored += 1
        return content_ids

    def _resolve_content_id(
        self, claim: ExtractedClaim, content_ids: dict[tuple[int, str], int],
    ) -> int:
        content_id = content_ids.get((claim.source_id, claim.external_id))
        if content_id is None and claim.source_id is not None and claim.external_id:
            content_id = self.content.get_id(claim.source_id, claim.external_id)
        if content_id is None:
            content_id = self.content.get_id_by_url(claim.source_url)
        if content_id is None:
            logger.warning("No content row for claim, attaching to sentinel: %.80s", claim.claim_text)
            content_id = self.content.unattached_id()
        return content_id

    def _store_claims(
        self,
        claims: list[ExtractedClaim],
        content_ids: dict[tuple[int, str], int],
        result: ProcessingResult,
    ) -> None:
        for claim in claims:
            claim.content_id = self._resolve_content_id(claim, content_ids)
            self.claims.upsert(claim)
            if claim.embedding is not None:
                self.claims.store_embedding(claim.id, claim.embedding)
            result.claims_stored += 1

            if claim.claim_type == "prediction":
                self.predictions.record(Prediction(
                    prediction_text=claim.claim_text,
                    author=claim.author,
                    author_category=claim.author_category,
                    topic=claim.topic,
                    confidence=claim.confidence,
                    timeframe=claim.timeframe,
                    claim_id=claim.id,
                    made_at=claim.extracted_at,
                ))
                result.predictions_recorded += 1

    # --- Synthesis cycle ---

    async def run_synthesis(
        self,
        lookback_days: float = 7,
        topics: list[str] | None = None,
        generate_digest: bool = True,
        min_claims: int | None = None,
    ) -> SynthesisResult:
        """Synthesize recent claims per topic and append a SynthesisResult."""
        if min_claims is None:
            min_claims = get_analysis_config(self.config)["min_claims_per_topic"]
        run = PipelineRun(kind="synthesize")
        with track_costs() as tracker:
            run_id = insert_run(self.conn, run)
            try:
                period_end = utcnow()
                period_start = period_end - timedelta(days=lookback_days)
                claims = self.claims.get_recent(days=lookback_days)
                run.items_in = len(claims)
                logger.info(
                    "Synthesis run #%d over %d claims from the last %s days",
                    run_id, len(claims), lookback_days,
                )

                syntheses = await self.engine.synthesize_all(claims, topics, min_claims)
                assessment = await self.engine.generate_hype_assessment(syntheses)
                digest = None
                if generate_digest and syntheses:
                    digest = await self.gateway.generate_digest(syntheses, assessment)

                result = SynthesisResult(
                    period_start=period_start,
                    period_end=period_end,
                    syntheses=syntheses,
                    hype_assessment=assessment,
                    digest=digest,
                )
                self.syntheses.save(result)
            except Exception:
                logger.exception("Synthesis run #%d failed", run_id)
                self._finish(run_id, run, tracker, "failed")
                raise
            run.items_out = len(syntheses)
            self._finish(run_id, run, tracker, "completed")

        logger.info(
            "Synthesis run #%d completed: %d topics, digest %s, $%.4f",
            run_id, len(syntheses), "written" if digest else "skipped", run.llm_cost_usd,
        )
        return result

    def _finish(self, run_id: int, run: PipelineRun, tracker: CostTracker, status: str) -> None:
        run.status = status
        run.finished_at = utcnow()
        run.llm_tokens_used = tracker.total_tokens
        run.llm_cost_usd = tracker.total_cost_usd
        finish_run(self.conn, run_id, run)
