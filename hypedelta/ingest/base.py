"""Abstract base class for all source adapters."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from hypedelta.config import get_rate_limits, get_source_kind_config
from hypedelta.models import RawItem, Source, utcnow
from hypedelta.retry import RateLimiter


class SourceFetchError(Exception):
    """A transport or payload failure scoped to a single source."""

    def __init__(self, source: Source, message: str):
        super().__init__(f"{source.kind}:{source.identifier}: {message}")
        self.source = source


def fallback_external_id(source: Source, *parts) -> str:
    """Deterministic id for items whose payload carries no native id."""
    key = "|".join(str(p) for p in parts if p)
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return f"{source.identifier}_{digest}"


def within_window(
    items: list[RawItem], since: datetime, until: datetime | None = None,
) -> list[RawItem]:
    """Keep items published in [since, until); undated items are dropped."""
    kept = []
    for item in items:
        if item.published_at is None or item.published_at < since:
            continue
        if until is not None and item.published_at >= until:
            continue
        kept.append(item)
    return kept


class BaseSource(ABC):
    """Base class for source adapters.

    Adapters map an external payload into RawItems for one Source row. They
    raise SourceFetchError (or let transport errors propagate) on failure;
    the fetcher isolates failures per source.
    """

    default_max_items = 50

    def __init__(self, config: dict, limiter: RateLimiter | None = None):
        self.config = config
        self.options = get_source_kind_config(config, self.name)
        self.limiter = limiter or RateLimiter(intervals=get_rate_limits(config))
        self.max_items = self.options.get("max_items", self.default_max_items)

    @abstractmethod
    async def fetch(self, source: Source) -> list[RawItem]:
        """Fetch the latest items for a source, capped at max_items."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Source kind this adapter handles."""
        ...

    async def monitor(self, source: Source, window_minutes: int) -> list[RawItem]:
        """Items published within the trailing window."""
        until = utcnow()
        since = until - timedelta(minutes=window_minutes)
        items = await self.fetch(source)
        return within_window(items, since, until + timedelta(seconds=1))
