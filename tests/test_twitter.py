"""Tests for the Twitter/X adapter and its Nitter fallback."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from hypedelta.ingest.base import SourceFetchError
from hypedelta.ingest.twitter import TwitterSource, _parse_created_at, _status_id
from hypedelta.models import Source, utcnow

MOCK_API_RESPONSE = {
    "status": "success",
    "data": {
        "tweets": [
            {
                "id": "1867",
                "text": "New reasoning results are in, and they are better than expected.",
                "url": "https://x.com/labperson/status/1867",
                "createdAt": "Tue Dec 10 07:00:30 +0000 2024",
                "likeCount": 120,
                "author": {"name": "Lab Person"},
            },
            {"id": "1868", "text": "@someone agreed", "isReply": True},
            {"id": "1869", "text": "RT @other: look at this"},
            {"id": "1870", "text": "quote", "retweeted_tweet": {"id": "1"}},
        ],
    },
}

NITTER_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
<title>Lab Person / @labperson</title>
<item>
  <title>Scaling is not over</title>
  <description>&lt;p&gt;Scaling is not over, the next models will show it.&lt;/p&gt;</description>
  <link>https://nitter.example/labperson/status/2001#m</link>
  <guid>https://nitter.example/labperson/status/2001#m</guid>
  <pubDate>Wed, 11 Dec 2024 10:00:00 GMT</pubDate>
</item>
<item>
  <title>R to @critic: you are wrong</title>
  <description>you are wrong</description>
  <link>https://nitter.example/labperson/status/2002#m</link>
  <guid>https://nitter.example/labperson/status/2002#m</guid>
</item>
</channel>
</rss>"""


@pytest.fixture
def source():
    return Source(kind="twitter", identifier="@labperson", name="Lab Person", id=1)


def test_parse_created_at():
    assert _parse_created_at("Tue Dec 10 07:00:30 +0000 2024") == datetime(2024, 12, 10, 7, 0, 30)
    assert _parse_created_at("2024-12-10T09:00:30+02:00") == datetime(2024, 12, 10, 7, 0, 30)
    assert _parse_created_at("garbage") is None
    assert _parse_created_at("") is None


def test_status_id():
    assert _status_id("https://nitter.net/a/status/123#m") == "123"
    assert _status_id("https://nitter.net/a") == ""


def test_endpoint_order(sample_config):
    adapter = TwitterSource(sample_config)
    assert adapter.endpoints() == ["twitterapi", "https://nitter.example"]


@pytest.mark.asyncio
@patch.object(TwitterSource, "_get_json", new_callable=AsyncMock)
async def test_fetch_via_api_skips_replies_and_retweets(mock_get, sample_config, source):
    mock_get.return_value = MOCK_API_RESPONSE
    items = await TwitterSource(sample_config).fetch(source)

    assert len(items) == 1
    item = items[0]
    assert item.external_id == "1867"
    assert item.source_id == 1
    assert item.author == "Lab Person"
    assert item.published_at == datetime(2024, 12, 10, 7, 0, 30)
    assert item.metadata["like_count"] == 120

    url, params, key = mock_get.call_args.args
    assert url.endswith("/user/last_tweets")
    assert params == {"userName": "labperson"}
    assert key == "tw-key"


@pytest.mark.asyncio
@patch.object(TwitterSource, "_fetch_feed_xml", new_callable=AsyncMock)
@patch.object(TwitterSource, "_get_json", new_callable=AsyncMock)
async def test_api_error_falls_back_to_nitter(mock_get, mock_feed, sample_config, source):
    mock_get.return_value = {"status": "error", "msg": "invalid key"}
    mock_feed.return_value = NITTER_RSS

    items = await TwitterSource(sample_config).fetch(source)

    assert [i.external_id for i in items] == ["2001"]
    assert items[0].body == "Scaling is not over, the next models will show it."
    assert items[0].url == "https://twitter.com/labperson/status/2001"
    assert items[0].metadata["provider"] == "nitter"
    assert items[0].published_at == datetime(2024, 12, 11, 10, 0, 0)
    mock_feed.assert_awaited_once_with("https://nitter.example/labperson/rss")


@pytest.mark.asyncio
@patch.object(TwitterSource, "_fetch_feed_xml", new_callable=AsyncMock)
@patch.object(TwitterSource, "_get_json", new_callable=AsyncMock)
async def test_all_endpoints_failing_raises(mock_get, mock_feed, sample_config, source):
    mock_get.return_value = {"status": "error", "msg": "invalid key"}
    mock_feed.return_value = "<rss><channel></channel></rss>"

    with pytest.raises(SourceFetchError, match="all endpoints failed"):
        await TwitterSource(sample_config).fetch(source)
    assert mock_get.await_count == 1
    assert mock_feed.await_count == 1


@pytest.mark.asyncio
async def test_no_endpoints_configured(source):
    config = {"sources": {"twitter": {"nitter_instances": []}}}
    with pytest.raises(SourceFetchError, match="no API key"):
        await TwitterSource(config).fetch(source)


@pytest.mark.asyncio
@patch.object(TwitterSource, "_get_json", new_callable=AsyncMock)
async def test_monitor_uses_time_bounded_search(mock_get, sample_config, source):
    recent = utcnow() - timedelta(minutes=5)
    stale = utcnow() - timedelta(hours=2)
    fmt = "%a %b %d %H:%M:%S +0000 %Y"
    mock_get.return_value = {"tweets": [
        {"id": "3001", "text": "Fresh take on agents", "createdAt": recent.strftime(fmt)},
        {"id": "3000", "text": "Old take on agents", "createdAt": stale.strftime(fmt)},
    ]}

    items = await TwitterSource(sample_config).monitor(source, window_minutes=15)

    assert [i.external_id for i in items] == ["3001"]
    url, params, _ = mock_get.call_args.args
    assert url.endswith("/tweet/advanced_search")
    assert params["query"].startswith("from:labperson since_time:")
    assert params["queryType"] == "Latest"
