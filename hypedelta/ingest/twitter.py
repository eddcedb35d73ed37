"""Twitter/X timeline adapter.

Primary access is TwitterAPI.io (needs an API key). Nitter instance RSS
feeds are tried in order when the API is unavailable or fails; most public
instances are unreliable, so they are configured as an ordered fallback list.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

import feedparser
import httpx

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource, SourceFetchError, within_window
from hypedelta.ingest.html import html_to_text
from hypedelta.models import RawItem, Source, to_naive_utc, utcnow
from hypedelta.retry import call_with_fallback, retry_async

logger = logging.getLogger(__name__)

TWITTERAPI_BASE = "https://api.twitterapi.io/twitter"
API_ENDPOINT = "twitterapi"

DEFAULT_NITTER_INSTANCES = [
    "https://nitter.poast.org",
    "https://nitter.privacydev.net",
]


def _parse_created_at(value: str) -> datetime | None:
    """Parse Twitter's 'Tue Dec 10 07:00:30 +0000 2024' (or ISO) timestamps."""
    if not value:
        return None
    for parser in (
        lambda v: datetime.strptime(v, "%a %b %d %H:%M:%S %z %Y"),
        lambda v: datetime.fromisoformat(v.replace("Z", "+00:00")),
    ):
        try:
            return to_naive_utc(parser(value))
        except ValueError:
            continue
    return None


def _status_id(link: str) -> str:
    match = re.search(r"/status/(\d+)", link or "")
    return match.group(1) if match else ""


@register_source("twitter")
class TwitterSource(BaseSource):
    """Fetch a user's recent tweets, excluding replies and retweets."""

    @property
    def name(self) -> str:
        return "twitter"

    @property
    def api_key(self) -> str:
        return self.options.get("api_key", "")

    def endpoints(self) -> list[str]:
        """Ordered access paths: the API (if keyed), then Nitter instances."""
        endpoints = [API_ENDPOINT] if self.api_key else []
        instances = self.options.get("nitter_instances", DEFAULT_NITTER_INSTANCES)
        endpoints.extend(i.rstrip("/") for i in instances)
        return endpoints

    async def fetch(self, source: Source) -> list[RawItem]:
        handle = source.identifier.lstrip("@")
        endpoints = self.endpoints()
        if not endpoints:
            raise SourceFetchError(source, "no API key or Nitter instances configured")

        async def _attempt(endpoint: str) -> list[RawItem]:
            if endpoint == API_ENDPOINT:
                return await self._fetch_via_api(source, handle)
            return await self._fetch_via_nitter(source, handle, endpoint)

        try:
            items = await call_with_fallback(endpoints, _attempt)
        except Exception as exc:
            raise SourceFetchError(source, f"all endpoints failed: {exc}") from exc

        logger.info("Twitter fetched %d tweets for @%s", len(items), handle)
        return items[: self.max_items]

    async def monitor(self, source: Source, window_minutes: int) -> list[RawItem]:
        """Time-bounded advanced search for tweets inside the window."""
        if not self.api_key:
            return await super().monitor(source, window_minutes)

        handle = source.identifier.lstrip("@")
        until = utcnow()
        since = until - timedelta(minutes=window_minutes)
        query = (
            f"from:{handle} "
            f"since_time:{int((since - datetime(1970, 1, 1)).total_seconds())} "
            f"until_time:{int((until - datetime(1970, 1, 1)).total_seconds())}"
        )

        await self.limiter.acquire(API_ENDPOINT)
        data = await retry_async(
            self._get_json,
            f"{TWITTERAPI_BASE}/tweet/advanced_search",
            {"query": query, "queryType": "Latest"},
            self.api_key,
        )
        tweets = data.get("tweets") or (data.get("data") or {}).get("tweets") or []
        items = self._tweets_to_items(source, handle, tweets)
        # the search API rounds to whole seconds, so re-check the boundary
        return within_window(items, since, until + timedelta(seconds=1))

    async def _fetch_via_api(self, source: Source, handle: str) -> list[RawItem]:
        await self.limiter.acquire(API_ENDPOINT)
        data = await retry_async(
            self._get_json,
            f"{TWITTERAPI_BASE}/user/last_tweets",
            {"userName": handle},
            self.api_key,
        )
        if data.get("status") not in (None, "success"):
            raise SourceFetchError(source, f"TwitterAPI.io error: {data.get('msg', data)}")
        tweets = (data.get("data") or {}).get("tweets") or data.get("tweets")
        if tweets is None:
            raise SourceFetchError(source, "TwitterAPI.io response has no tweets")
        return self._tweets_to_items(source, handle, tweets)

    def _tweets_to_items(
        self, source: Source, handle: str, tweets: list[dict],
    ) -> list[RawItem]:
        items = []
        for tweet in tweets:
            text = tweet.get("text", "")
            if tweet.get("isReply") or tweet.get("retweeted_tweet"):
                continue
            if not text or text.startswith("RT @"):
                continue
            tweet_id = str(tweet.get("id", ""))
            if not tweet_id:
                continue
            author = tweet.get("author") or {}
            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=tweet_id,
                    body=text,
                    url=tweet.get("url") or f"https://twitter.com/{handle}/status/{tweet_id}",
                    author=source.name or author.get("name") or handle,
                    published_at=_parse_created_at(tweet.get("createdAt", "")),
                    metadata={
                        "like_count": tweet.get("likeCount"),
                        "retweet_count": tweet.get("retweetCount"),
                        "reply_count": tweet.get("replyCount"),
                        "view_count": tweet.get("viewCount"),
                        "is_quote": bool(tweet.get("quoted_tweet")),
                        "provider": "twitterapi.io",
                    },
                )
            )
        return items

    async def _fetch_via_nitter(
        self, source: Source, handle: str, instance: str,
    ) -> list[RawItem]:
        await self.limiter.acquire("nitter")
        raw_xml = await retry_async(
            self._fetch_feed_xml, f"{instance}/{handle}/rss",
            max_retries=1, base_delay=1.0,
        )
        feed = feedparser.parse(raw_xml)
        if not feed.entries:
            raise SourceFetchError(source, f"empty feed from {instance}")

        items = []
        for entry in feed.entries:
            title = entry.get("title", "")
            # Nitter marks replies "R to @x:" and retweets "RT by @x:"
            if title.startswith(("R to @", "RT by @", "RT @")):
                continue
            tweet_id = _status_id(entry.get("guid", "") or entry.get("link", ""))
            if not tweet_id:
                continue
            body = html_to_text(entry.get("description", "") or entry.get("summary", "")) or title
            published = entry.get("published_parsed")
            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=tweet_id,
                    body=body,
                    url=f"https://twitter.com/{handle}/status/{tweet_id}",
                    author=source.name or handle,
                    published_at=datetime(*published[:6]) if published else None,
                    metadata={"provider": "nitter", "nitter_instance": instance},
                )
            )
        return items

    @staticmethod
    async def _get_json(url: str, params: dict, api_key: str) -> dict:
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.get(url, params=params, headers={"X-API-Key": api_key})
            resp.raise_for_status()
            return resp.json()

    @staticmethod
    async def _fetch_feed_xml(url: str) -> str:
        async with httpx.AsyncClient(timeout=15, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.text
