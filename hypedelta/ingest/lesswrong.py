"""LessWrong / Alignment Forum adapter via the ForumMagnum GraphQL API."""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource, SourceFetchError
from hypedelta.ingest.html import html_to_text
from hypedelta.models import RawItem, Source, to_naive_utc
from hypedelta.retry import call_with_fallback, retry_async

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = [
    "https://www.lesswrong.com/graphql",
    "https://www.alignmentforum.org/graphql",
]

POSTS_BY_TAG_QUERY = """
query GetPosts($tagSlug: String, $limit: Int) {
  posts(input: {
    terms: {
      limit: $limit
      filterSettings: { tags: [{ tagSlug: $tagSlug, filterMode: "Required" }] }
      sortedBy: "new"
    }
  }) {
    results {
      _id
      title
      slug
      postedAt
      baseScore
      commentCount
      user { username displayName }
      contents { html wordCount }
    }
  }
}
"""


@register_source("lesswrong")
class LessWrongSource(BaseSource):
    """Newest posts carrying a tag; the source identifier is the tag slug."""

    @property
    def name(self) -> str:
        return "lesswrong"

    async def fetch(self, source: Source) -> list[RawItem]:
        endpoints = self.options.get("endpoints", DEFAULT_ENDPOINTS)
        variables = {"tagSlug": source.identifier or "ai", "limit": self.max_items}

        async def _query(endpoint: str) -> dict:
            await self.limiter.acquire("lesswrong")
            data = await retry_async(
                self._post_graphql, endpoint, POSTS_BY_TAG_QUERY, variables,
                max_retries=2,
            )
            # ForumMagnum reports query failures in a 200 body
            if data.get("errors"):
                raise SourceFetchError(source, f"GraphQL errors: {data['errors'][:1]}")
            return data

        data = await call_with_fallback(endpoints, _query)
        posts = ((data.get("data") or {}).get("posts") or {}).get("results") or []

        items = []
        for post in posts:
            post_id = post.get("_id")
            if not post_id:
                continue
            user = post.get("user") or {}
            contents = post.get("contents") or {}
            published_at = None
            if post.get("postedAt"):
                published_at = to_naive_utc(
                    datetime.fromisoformat(post["postedAt"].replace("Z", "+00:00"))
                )
            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=post_id,
                    title=post.get("title", ""),
                    body=html_to_text(contents.get("html", "")) or post.get("title", ""),
                    url=f"https://www.lesswrong.com/posts/{post_id}/{post.get('slug', '')}",
                    author=user.get("displayName") or user.get("username") or "",
                    published_at=published_at,
                    metadata={
                        "score": post.get("baseScore"),
                        "comments": post.get("commentCount"),
                        "word_count": contents.get("wordCount"),
                    },
                )
            )

        logger.info("LessWrong fetched %d posts for tag '%s'", len(items), source.identifier)
        return items

    @staticmethod
    async def _post_graphql(endpoint: str, query: str, variables: dict) -> dict:
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.post(
                endpoint,
                json={"query": query, "variables": variables},
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
            return resp.json()
