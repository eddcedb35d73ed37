"""Turning HTML into the plain text stored as item bodies.

Feed entries carry HTML fragments, which `html_to_text` flattens with a few
regexes. Blog posts whose feed only ships a teaser are re-fetched and run
through trafilatura by `extract_content`.
"""

from __future__ import annotations

import html
import logging
import re

import httpx
import trafilatura

from hypedelta.retry import retry_async

logger = logging.getLogger(__name__)

USER_AGENT = "hypedelta/0.1 (AI discourse monitor)"

# Longer articles are cut; claim extraction only reads the opening anyway
MAX_ARTICLE_CHARS = 50_000


async def extract_content(url: str) -> str | None:
    """Main article text of `url`, or None when it cannot be had.

    Only used to enrich teaser-length feed entries, so every network or
    HTTP failure is logged at debug level and turned into None.
    """
    try:
        page = await retry_async(_fetch_html, url, max_retries=2, base_delay=0.5)
    except (httpx.HTTPError, TimeoutError, ConnectionError) as exc:
        logger.debug("Extraction failed for %s: %s", url, exc)
        return None
    if not page:
        return None

    text = trafilatura.extract(
        page,
        url=url,
        include_comments=False,
        include_tables=False,
        favor_precision=True,
    )
    if not text:
        logger.debug("No article body found at %s", url)
        return None
    return re.sub(r"\n{3,}", "\n\n", text.strip())[:MAX_ARTICLE_CHARS]


async def _fetch_html(url: str) -> str | None:
    async with httpx.AsyncClient(
        timeout=15, follow_redirects=True, headers={"User-Agent": USER_AGENT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        # Linked PDFs and images are not articles
        if "html" not in resp.headers.get("content-type", "text/html"):
            return None
        return resp.text


def html_to_text(fragment: str) -> str:
    """Strip tags from an HTML fragment, keeping paragraph breaks."""
    if not fragment:
        return ""
    text = re.sub(r"(?is)<(script|style)\b.*?</\1>", "", fragment)
    text = re.sub(r"(?i)<br\s*/?>", "\n", text)
    text = re.sub(r"(?i)</(p|div|li|h[1-6]|blockquote)>", "\n\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
