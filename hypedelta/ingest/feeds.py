"""Syndication-feed adapters: Substack newsletters, blogs and podcasts."""

from __future__ import annotations

import logging
from abc import abstractmethod
from datetime import datetime

import feedparser
import httpx

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource, SourceFetchError, fallback_external_id
from hypedelta.ingest.html import extract_content, html_to_text
from hypedelta.models import RawItem, Source
from hypedelta.retry import retry_async

logger = logging.getLogger(__name__)


def _entry_datetime(entry) -> datetime | None:
    """feedparser normalises *_parsed fields to UTC struct_time."""
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime(*parsed[:6])


def _entry_html(entry) -> str:
    content = entry.get("content") or []
    if content and content[0].get("value"):
        return content[0]["value"]
    return entry.get("summary", "") or entry.get("description", "")


class FeedSource(BaseSource):
    """Common RSS/Atom handling; subclasses choose the feed URL and extras."""

    @abstractmethod
    def feed_url(self, source: Source) -> str:
        ...

    async def fetch(self, source: Source) -> list[RawItem]:
        url = self.feed_url(source)
        await self.limiter.acquire("feed")
        raw_xml = await retry_async(
            self._fetch_feed_xml, url, max_retries=2, base_delay=1.0,
        )
        feed = feedparser.parse(raw_xml)
        if feed.get("bozo") and not feed.entries:
            raise SourceFetchError(source, f"unparseable feed at {url}")

        items = []
        for entry in feed.entries[: self.max_items]:
            item = await self._entry_to_item(source, entry)
            if item is not None:
                items.append(item)

        logger.info("%s fetched %d entries from %s", self.name, len(items), url)
        return items

    async def _entry_to_item(self, source: Source, entry) -> RawItem | None:
        link = entry.get("link", "")
        title = entry.get("title", "")
        body = html_to_text(_entry_html(entry))
        if not body and not title:
            return None
        published_at = _entry_datetime(entry)
        external_id = entry.get("id") or link or fallback_external_id(
            source, title, published_at,
        )
        return RawItem(
            source_id=source.id,
            external_id=external_id,
            body=body or title,
            title=title,
            url=link,
            author=source.name or entry.get("author", ""),
            published_at=published_at,
            metadata=self._metadata(entry),
        )

    def _metadata(self, entry) -> dict:
        return {"tags": [t.get("term") for t in entry.get("tags", []) if t.get("term")]}

    @staticmethod
    async def _fetch_feed_xml(url: str) -> str:
        async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.text


@register_source("substack")
class SubstackSource(FeedSource):
    """Substack publication; identifier is the subdomain or a full feed URL."""

    @property
    def name(self) -> str:
        return "substack"

    def feed_url(self, source: Source) -> str:
        ident = source.identifier
        if ident.startswith("http"):
            return ident
        return f"https://{ident}.substack.com/feed"


@register_source("blog")
class BlogSource(FeedSource):
    """Any RSS/Atom blog feed. Short entries are enriched from the linked page."""

    @property
    def name(self) -> str:
        return "blog"

    def feed_url(self, source: Source) -> str:
        return source.identifier

    async def _entry_to_item(self, source: Source, entry) -> RawItem | None:
        item = await super()._entry_to_item(source, entry)
        min_chars = self.options.get("min_body_chars", 300)
        if item and item.url and len(item.body) < min_chars and self.options.get("extract", True):
            extracted = await extract_content(item.url)
            if extracted and len(extracted) > len(item.body):
                item.body = extracted
                item.metadata["extracted"] = True
        return item


@register_source("podcast")
class PodcastSource(FeedSource):
    """Podcast RSS feed; the body is the episode's show notes."""

    @property
    def name(self) -> str:
        return "podcast"

    def feed_url(self, source: Source) -> str:
        return source.identifier

    async def _entry_to_item(self, source: Source, entry) -> RawItem | None:
        item = await super()._entry_to_item(source, entry)
        if item is None:
            return None
        enclosures = entry.get("enclosures") or []
        if enclosures:
            audio_url = enclosures[0].get("href", "")
            item.metadata["audio_url"] = audio_url
            if not entry.get("id") and not entry.get("link") and audio_url:
                item.external_id = audio_url
        return item

    def _metadata(self, entry) -> dict:
        metadata = super()._metadata(entry)
        metadata["duration"] = entry.get("itunes_duration")
        metadata["episode"] = entry.get("itunes_episode")
        return metadata
