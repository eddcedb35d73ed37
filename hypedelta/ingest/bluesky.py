"""Bluesky author-feed adapter via the AT Protocol public API."""

from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource
from hypedelta.models import RawItem, Source, to_naive_utc
from hypedelta.retry import retry_async

logger = logging.getLogger(__name__)

BSKY_AUTHOR_FEED_URL = "https://public.api.bsky.app/xrpc/app.bsky.feed.getAuthorFeed"


def _at_uri_to_web_url(at_uri: str, handle: str = "") -> str:
    """Convert an AT Protocol URI to a bsky.app web URL.

    at://did:plc:abc123/app.bsky.feed.post/xyz789
    -> https://bsky.app/profile/<handle or did>/post/xyz789
    """
    match = re.match(r"at://([^/]+)/app\.bsky\.feed\.post/(.+)", at_uri)
    if match:
        did, rkey = match.groups()
        return f"https://bsky.app/profile/{handle or did}/post/{rkey}"
    return at_uri


@register_source("bluesky")
class BlueskySource(BaseSource):
    """Fetch an account's own posts, skipping replies and reposts."""

    @property
    def name(self) -> str:
        return "bluesky"

    async def fetch(self, source: Source) -> list[RawItem]:
        actor = source.identifier.lstrip("@")
        await self.limiter.acquire("bluesky")
        data = await retry_async(self._fetch_api, actor, self.max_items)

        items = []
        for entry in data.get("feed", []):
            post = entry.get("post") or {}
            record = post.get("record") or {}
            reason = (entry.get("reason") or {}).get("$type", "")
            if entry.get("reply") or record.get("reply") or "reasonRepost" in reason:
                continue

            text = record.get("text", "")
            uri = post.get("uri", "")
            if not text or not uri:
                continue

            author = post.get("author") or {}
            published_at = None
            created_at = record.get("createdAt", "")
            if created_at:
                try:
                    published_at = to_naive_utc(
                        datetime.fromisoformat(created_at.replace("Z", "+00:00"))
                    )
                except ValueError:
                    logger.debug("Unparseable Bluesky timestamp: %s", created_at)

            embed = post.get("embed") or {}
            external = embed.get("external") or {}
            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=uri,
                    body=text,
                    url=_at_uri_to_web_url(uri, author.get("handle", "")),
                    author=source.name or author.get("displayName") or actor,
                    published_at=published_at,
                    metadata={
                        "likes": post.get("likeCount"),
                        "reposts": post.get("repostCount"),
                        "replies": post.get("replyCount"),
                        "link": external.get("uri"),
                    },
                )
            )

        logger.info("Bluesky fetched %d posts for %s", len(items), actor)
        return items[: self.max_items]

    @staticmethod
    async def _fetch_api(actor: str, limit: int) -> dict:
        params = {
            "actor": actor,
            "limit": min(limit, 100),
            "filter": "posts_no_replies",
        }
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.get(BSKY_AUTHOR_FEED_URL, params=params)
            resp.raise_for_status()
            return resp.json()
