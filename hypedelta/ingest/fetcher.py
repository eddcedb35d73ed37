"""Fetch coordination: runs adapters per source, isolates failures, persists items."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime

from hypedelta.config import get_rate_limits, get_seed_sources
from hypedelta.ingest import get_adapter
from hypedelta.models import TIMELINE_KINDS, FetchReport, RawItem, Source
from hypedelta.retry import RateLimiter
from hypedelta.stores import ContentStore, SourceStore

logger = logging.getLogger(__name__)


def default_frequency_hours(kind: str, entry: dict) -> int:
    """Polling cadence for a seeded source when none is configured."""
    if kind == "twitter":
        return 6 if entry.get("priority") == "low" else 4
    if kind == "substack":
        return 6 if entry.get("tier") == "tier1" else 12
    return {
        "bluesky": 6,
        "lesswrong": 12,
        "youtube": 24,
        "blog": 24,
        "arxiv": 24,
        "podcast": 48,
    }.get(kind, 24)


def seed_sources(conn: sqlite3.Connection, config: dict) -> int:
    """Upsert every source listed under sources.seed; returns the count."""
    store = SourceStore(conn)
    count = 0
    for entry in get_seed_sources(config):
        kind = entry["kind"]
        source = Source(
            kind=kind,
            identifier=entry["identifier"],
            name=entry.get("name", ""),
            category=entry.get("category", ""),
            tags=entry.get("tags", []),
            fetch_frequency_hours=entry.get(
                "fetch_frequency_hours", default_frequency_hours(kind, entry),
            ),
        )
        store.upsert(source)
        count += 1
    logger.info("Seeded %d sources", count)
    return count


class SourceFetcher:
    """Fetch a set of sources one after another, persisting in adapter order."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        limiter: RateLimiter | None = None,
    ):
        self.config = config
        self.sources = SourceStore(conn)
        self.content = ContentStore(conn)
        self.limiter = limiter or RateLimiter(intervals=get_rate_limits(config))
        self.delay_between_sources = (
            config.get("fetch", {}).get("delay_between_sources", 1.0)
        )

    async def fetch_sources(
        self,
        sources: list[Source],
        since: datetime | None = None,
        persist: bool = True,
    ) -> FetchReport:
        """Fetch each source; one failing source never stops the others."""
        report = FetchReport()
        for i, source in enumerate(sources):
            if i and self.delay_between_sources:
                await asyncio.sleep(self.delay_between_sources)
            try:
                adapter = get_adapter(source.kind, self.config, self.limiter)
                items = await adapter.fetch(source)
            except Exception as exc:
                logger.exception("Source %s failed", source.label)
                report.failed.append({
                    "source_id": source.id,
                    "source": source.label,
                    "error": str(exc),
                })
                continue

            if since is not None:
                items = [it for it in items if it.published_at is None or it.published_at >= since]
            if persist:
                self._persist(items)
                self.sources.mark_fetched(source.id)
            report.successful.append({
                "source_id": source.id,
                "source": source.label,
                "items": len(items),
            })

        logger.info(
            "Fetched %d items from %d sources (%d failed)",
            report.total_items, len(report.successful), len(report.failed),
        )
        return report

    async def fetch_due(self, kind: str | None = None, since: datetime | None = None) -> FetchReport:
        """Fetch sources whose cadence has elapsed."""
        due = self.sources.get_due(kind)
        logger.info("%d sources due for fetch%s", len(due), f" ({kind})" if kind else "")
        return await self.fetch_sources(due, since=since)

    async def monitor(
        self,
        sources: list[Source] | None = None,
        window_minutes: int = 15,
        persist: bool = True,
    ) -> list[tuple[Source, list[RawItem]]]:
        """Poll timeline sources for items inside a sliding time window."""
        if sources is None:
            sources = [s for s in self.sources.get_active() if s.kind in TIMELINE_KINDS]

        results = []
        for source in sources:
            try:
                adapter = get_adapter(source.kind, self.config, self.limiter)
                items = await adapter.monitor(source, window_minutes)
            except Exception:
                logger.exception("Monitor failed for %s", source.label)
                results.append((source, []))
                continue
            if persist and items:
                self._persist(items)
            results.append((source, items))

        logger.info(
            "Monitor found %d items across %d sources in the last %d minutes",
            sum(len(items) for _, items in results), len(sources), window_minutes,
        )
        return results

    def _persist(self, items: list[RawItem]) -> None:
        for item in items:
            self.content.upsert(item)
