"""Tests for the Substack, blog and podcast feed adapters."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from hypedelta.ingest.base import SourceFetchError
from hypedelta.ingest.feeds import BlogSource, PodcastSource, SubstackSource
from hypedelta.models import Source

SUBSTACK_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
<channel>
<title>The Skeptic</title>
<item>
  <title>Benchmarks are not understanding</title>
  <link>https://skeptic.substack.com/p/benchmarks</link>
  <guid isPermaLink="false">substack:post:101</guid>
  <pubDate>Mon, 06 Jan 2025 14:30:00 GMT</pubDate>
  <description>Short teaser</description>
  <content:encoded><![CDATA[<p>First paragraph.</p><p>Second &amp; final paragraph.</p>]]></content:encoded>
</item>
</channel>
</rss>"""

BLOG_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
<title>Lab Blog</title>
<item>
  <title>Introducing our new model</title>
  <link>https://lab.example/blog/new-model</link>
  <pubDate>Tue, 07 Jan 2025 09:00:00 GMT</pubDate>
  <description>A short summary.</description>
</item>
</channel>
</rss>"""

PODCAST_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
<channel>
<title>AI Talk</title>
<item>
  <title>Episode 12: Are we near AGI?</title>
  <guid>ep-12</guid>
  <description>We discuss timelines with a guest researcher.</description>
  <enclosure url="https://cdn.example/ep12.mp3" type="audio/mpeg" length="1000"/>
  <itunes:duration>01:02:03</itunes:duration>
  <itunes:episode>12</itunes:episode>
</item>
</channel>
</rss>"""


def test_substack_feed_url():
    adapter = SubstackSource({})
    assert adapter.feed_url(Source(kind="substack", identifier="skeptic")) == (
        "https://skeptic.substack.com/feed"
    )
    assert adapter.feed_url(
        Source(kind="substack", identifier="https://custom.example/feed"),
    ) == "https://custom.example/feed"


@pytest.mark.asyncio
@patch.object(SubstackSource, "_fetch_feed_xml", new_callable=AsyncMock)
async def test_substack_prefers_full_content(mock_feed, sample_config):
    mock_feed.return_value = SUBSTACK_RSS
    source = Source(kind="substack", identifier="skeptic", name="The Skeptic", id=3)

    items = await SubstackSource(sample_config).fetch(source)

    assert len(items) == 1
    item = items[0]
    assert item.external_id == "substack:post:101"
    assert item.body == "First paragraph.\n\nSecond & final paragraph."
    assert item.title == "Benchmarks are not understanding"
    assert item.author == "The Skeptic"
    assert item.published_at == datetime(2025, 1, 6, 14, 30)
    mock_feed.assert_awaited_once_with("https://skeptic.substack.com/feed")


@pytest.mark.asyncio
@patch("hypedelta.ingest.feeds.extract_content", new_callable=AsyncMock)
@patch.object(BlogSource, "_fetch_feed_xml", new_callable=AsyncMock)
async def test_blog_enriches_short_entries(mock_feed, mock_extract, sample_config):
    mock_feed.return_value = BLOG_RSS
    mock_extract.return_value = "The full article text. " * 30
    source = Source(kind="blog", identifier="https://lab.example/rss.xml", id=4)

    items = await BlogSource(sample_config).fetch(source)

    assert len(items) == 1
    assert items[0].body.startswith("The full article text.")
    assert items[0].metadata["extracted"] is True
    assert items[0].external_id == "https://lab.example/blog/new-model"
    mock_extract.assert_awaited_once_with("https://lab.example/blog/new-model")


@pytest.mark.asyncio
@patch("hypedelta.ingest.feeds.extract_content", new_callable=AsyncMock)
@patch.object(BlogSource, "_fetch_feed_xml", new_callable=AsyncMock)
async def test_blog_keeps_feed_body_when_extraction_fails(mock_feed, mock_extract, sample_config):
    mock_feed.return_value = BLOG_RSS
    mock_extract.return_value = None
    source = Source(kind="blog", identifier="https://lab.example/rss.xml", id=4)

    items = await BlogSource(sample_config).fetch(source)

    assert items[0].body == "A short summary."
    assert "extracted" not in items[0].metadata


@pytest.mark.asyncio
@patch.object(PodcastSource, "_fetch_feed_xml", new_callable=AsyncMock)
async def test_podcast_metadata(mock_feed, sample_config):
    mock_feed.return_value = PODCAST_RSS
    source = Source(kind="podcast", identifier="https://ai-talk.example/rss", id=5)

    items = await PodcastSource(sample_config).fetch(source)

    assert len(items) == 1
    item = items[0]
    assert item.external_id == "ep-12"
    assert item.body == "We discuss timelines with a guest researcher."
    assert item.metadata["audio_url"] == "https://cdn.example/ep12.mp3"
    assert item.metadata["duration"] == "01:02:03"
    assert item.metadata["episode"] == "12"


@pytest.mark.asyncio
@patch.object(SubstackSource, "_fetch_feed_xml", new_callable=AsyncMock)
async def test_unparseable_feed_raises(mock_feed, sample_config):
    mock_feed.return_value = "this is not a feed <<<"
    source = Source(kind="substack", identifier="broken", id=6)

    with pytest.raises(SourceFetchError):
        await SubstackSource(sample_config).fetch(source)
