"""Tests for the Bluesky AT Protocol adapter."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hypedelta.ingest.bluesky import BlueskySource, _at_uri_to_web_url
from hypedelta.models import Source

MOCK_BSKY_FEED = {
    "feed": [
        {
            "post": {
                "uri": "at://did:plc:abc123/app.bsky.feed.post/xyz789",
                "author": {"handle": "critic.bsky.social", "displayName": "A Critic"},
                "record": {
                    "text": "LLM benchmark gains are mostly contamination, and here is why.",
                    "createdAt": "2024-01-15T12:00:00Z",
                },
                "embed": {"external": {"uri": "https://example.com/paper"}},
                "likeCount": 12,
            },
        },
        {
            "post": {
                "uri": "at://did:plc:abc123/app.bsky.feed.post/reply1",
                "record": {"text": "replying", "reply": {"parent": {}}},
            },
        },
        {
            "post": {
                "uri": "at://did:plc:other/app.bsky.feed.post/rp",
                "record": {"text": "someone else's post"},
            },
            "reason": {"$type": "app.bsky.feed.defs#reasonRepost"},
        },
    ],
}


def test_at_uri_to_web_url():
    """AT URI is correctly converted to bsky.app web URL."""
    uri = "at://did:plc:abc123/app.bsky.feed.post/xyz789"
    assert _at_uri_to_web_url(uri) == "https://bsky.app/profile/did:plc:abc123/post/xyz789"
    assert _at_uri_to_web_url(uri, "me.bsky.social") == (
        "https://bsky.app/profile/me.bsky.social/post/xyz789"
    )


def test_at_uri_to_web_url_passthrough():
    """Non-matching URIs are returned as-is."""
    uri = "https://example.com/something"
    assert _at_uri_to_web_url(uri) == uri


@pytest.mark.asyncio
@patch.object(BlueskySource, "_fetch_api", new_callable=AsyncMock)
async def test_fetch_skips_replies_and_reposts(mock_api, sample_config):
    mock_api.return_value = MOCK_BSKY_FEED
    source = Source(kind="bluesky", identifier="critic.bsky.social", id=7)

    items = await BlueskySource(sample_config).fetch(source)

    assert len(items) == 1
    item = items[0]
    assert item.source_id == 7
    assert item.external_id == "at://did:plc:abc123/app.bsky.feed.post/xyz789"
    assert item.url == "https://bsky.app/profile/critic.bsky.social/post/xyz789"
    assert item.author == "A Critic"
    assert item.published_at == datetime(2024, 1, 15, 12, 0, 0)
    assert item.metadata["link"] == "https://example.com/paper"
    mock_api.assert_awaited_once_with("critic.bsky.social", 50)


@pytest.mark.asyncio
@patch("hypedelta.ingest.bluesky.httpx.AsyncClient")
async def test_fetch_api_request(mock_client_cls):
    mock_resp = MagicMock()
    mock_resp.json.return_value = {"feed": []}
    mock_resp.raise_for_status = MagicMock()

    mock_client = AsyncMock()
    mock_client.get.return_value = mock_resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client

    data = await BlueskySource._fetch_api("someone.bsky.social", 500)

    assert data == {"feed": []}
    params = mock_client.get.call_args.kwargs["params"]
    assert params["actor"] == "someone.bsky.social"
    assert params["limit"] == 100
    assert params["filter"] == "posts_no_replies"
