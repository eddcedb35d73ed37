"""arXiv adapter via the export API (Atom feed)."""

from __future__ import annotations

import logging
import re
from datetime import datetime

import feedparser
import httpx

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource, SourceFetchError
from hypedelta.models import RawItem, Source
from hypedelta.retry import call_with_fallback, retry_async

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = [
    "https://export.arxiv.org/api/query",
    "http://export.arxiv.org/api/query",
]

_CATEGORY_RE = re.compile(r"^[a-z\-]+\.[A-Z]{2}$", re.IGNORECASE)


def build_search_query(identifier: str) -> str:
    """Category identifiers like 'cs.AI' become 'cat:cs.AI'; others pass through."""
    if _CATEGORY_RE.match(identifier):
        return f"cat:{identifier}"
    return identifier


def arxiv_id(entry_id: str) -> str:
    """'http://arxiv.org/abs/2401.01234v2' -> '2401.01234'."""
    ident = entry_id.split("/abs/")[-1]
    return re.sub(r"v\d+$", "", ident)


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


@register_source("arxiv")
class ArxivSource(BaseSource):
    """Newest submissions matching a category or search query."""

    @property
    def name(self) -> str:
        return "arxiv"

    async def fetch(self, source: Source) -> list[RawItem]:
        params = {
            "search_query": build_search_query(source.identifier),
            "start": 0,
            "max_results": self.max_items,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }
        endpoints = self.options.get("endpoints", DEFAULT_ENDPOINTS)

        async def _query(endpoint: str) -> str:
            await self.limiter.acquire("arxiv")
            return await retry_async(self._fetch_atom, endpoint, params, max_retries=2)

        feed = feedparser.parse(await call_with_fallback(endpoints, _query))
        if feed.get("bozo") and not feed.entries:
            raise SourceFetchError(source, "unparseable arXiv response")

        items = []
        for entry in feed.entries:
            entry_id = entry.get("id", "")
            if not entry_id:
                continue
            published = entry.get("published_parsed")
            authors = [a.get("name", "") for a in entry.get("authors", [])]
            url = entry.get("link") or entry_id
            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=arxiv_id(entry_id),
                    title=_squash(entry.get("title", "")),
                    body=_squash(entry.get("summary", "")),
                    url=url,
                    author=", ".join(a for a in authors[:5] if a),
                    published_at=datetime(*published[:6]) if published else None,
                    metadata={
                        "categories": [t.get("term") for t in entry.get("tags", [])],
                        "pdf_url": entry_id.replace("/abs/", "/pdf/"),
                        "authors": authors,
                    },
                )
            )

        logger.info("arXiv fetched %d papers for '%s'", len(items), source.identifier)
        return items

    @staticmethod
    async def _fetch_atom(endpoint: str, params: dict) -> str:
        async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
            resp = await client.get(endpoint, params=params)
            resp.raise_for_status()
            return resp.text
