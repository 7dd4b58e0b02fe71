"""Tests for roomkeeper.sources module."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from roomkeeper import db
from roomkeeper.db import Cursor, Subscription
from roomkeeper.sources import (
    GithubSource,
    Item,
    RateLimited,
    RssSource,
    TransientFetchError,
    _oldest_first,
    _strip_html,
)

from conftest import ROOM, _mock_httpx_client


SAMPLE_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
  <title>Example Blog</title>
  <link>https://blog.example.org/</link>
  <item>
    <title>Third post</title>
    <link>https://blog.example.org/3</link>
    <guid>post-3</guid>
    <pubDate>Tue, 03 Feb 2026 10:00:00 GMT</pubDate>
    <description>&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;</description>
  </item>
  <item>
    <title>Second post</title>
    <link>https://blog.example.org/2</link>
    <guid>post-2</guid>
    <pubDate>Mon, 02 Feb 2026 10:00:00 GMT</pubDate>
  </item>
  <item>
    <title>First post</title>
    <link>https://blog.example.org/1</link>
    <guid>post-1</guid>
    <pubDate>Sun, 01 Feb 2026 10:00:00 GMT</pubDate>
  </item>
</channel>
</rss>
"""

FEED_URL = "https://blog.example.org/feed.xml"


def _rss_subscription(url=FEED_URL):
    return Subscription(kind="rss", source_id=db.make_source_id(ROOM, url), room=ROOM, target=url)


def _github_subscription(user="octocat"):
    return Subscription(
        kind="github", source_id=db.make_source_id(ROOM, user), room=ROOM, target=user, token="ghp_x",
    )


def _response(status=200, content=b"", headers=None, json_data=None):
    response = MagicMock()
    response.status_code = status
    response.content = content
    response.headers = headers or {}
    response.json.return_value = json_data
    return response


NOTIFICATIONS = [
    {
        "id": "202",
        "updated_at": "2026-02-03T09:00:00Z",
        "subject": {"title": "Fix the flux capacitor", "type": "PullRequest"},
        "repository": {"full_name": "acme/widgets"},
    },
    {
        "id": "101",
        "updated_at": "2026-02-02T09:00:00Z",
        "subject": {"title": "Widgets are broken", "type": "Issue"},
        "repository": {"full_name": "acme/widgets"},
    },
]


class TestHelpers:
    def test_strip_html(self):
        assert _strip_html("<p>One</p><p>Two &amp; three</p>") == "One\n\nTwo & three"
        assert _strip_html("a<br/>b") == "a\nb"

    def test_oldest_first_by_timestamp(self):
        items = [
            Item("b", published="2026-01-02T00:00:00+00:00"),
            Item("c", published="2026-01-03T00:00:00+00:00"),
            Item("a", published="2026-01-01T00:00:00+00:00"),
        ]
        assert [i.item_id for i in _oldest_first(items)] == ["a", "b", "c"]

    def test_oldest_first_without_timestamps_reverses(self):
        items = [Item("c"), Item("b"), Item("a")]
        assert [i.item_id for i in _oldest_first(items)] == ["a", "b", "c"]


class TestRssSource:
    @pytest.mark.asyncio
    async def test_fetch_returns_items_oldest_first(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(
            content=SAMPLE_RSS, headers={"ETag": '"v1"', "Last-Modified": "Tue, 03 Feb 2026 10:00:00 GMT"},
        ))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            result = await RssSource().fetch_since(_rss_subscription(), None)

        assert [i.item_id for i in result.items] == ["post-1", "post-2", "post-3"]
        assert result.items[2].title == "Third post"
        assert result.items[2].url == "https://blog.example.org/3"
        assert result.items[2].summary == "Hello world"
        assert result.items[0].published == "2026-02-01T10:00:00+00:00"
        assert result.etag == '"v1"'
        assert result.last_modified == "Tue, 03 Feb 2026 10:00:00 GMT"

    @pytest.mark.asyncio
    async def test_sends_conditional_headers(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(status=304))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            result = await RssSource().fetch_since(
                _rss_subscription(), Cursor("post-3"), etag='"v1"', last_modified="yesterday",
            )

        headers = mock_http.get.call_args.kwargs["headers"]
        assert headers["If-None-Match"] == '"v1"'
        assert headers["If-Modified-Since"] == "yesterday"
        assert result.items == []
        assert result.etag == '"v1"'
        assert result.last_modified == "yesterday"

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(status=429, headers={"Retry-After": "120"}))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(RateLimited) as exc_info:
                await RssSource().fetch_since(_rss_subscription(), None)

        assert exc_info.value.retry_after == 120.0

    @pytest.mark.asyncio
    async def test_500_is_transient(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(status=500))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransientFetchError):
                await RssSource().fetch_since(_rss_subscription(), None)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransientFetchError):
                await RssSource().fetch_since(_rss_subscription(), None)

    @pytest.mark.asyncio
    async def test_garbage_is_transient(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(content=b"<html><body>nope"))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransientFetchError):
                await RssSource().fetch_since(_rss_subscription(), None)

    @pytest.mark.asyncio
    async def test_validate_returns_title(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(content=SAMPLE_RSS))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            assert await RssSource().validate(FEED_URL) == "Example Blog"


class TestGithubSource:
    @pytest.mark.asyncio
    async def test_fetch_notifications(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(
            json_data=NOTIFICATIONS, headers={"Last-Modified": "Tue, 03 Feb 2026 09:00:00 GMT"},
        ))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            result = await GithubSource().fetch_since(_github_subscription(), None)

        assert [i.item_id for i in result.items] == [
            "101@2026-02-02T09:00:00Z", "202@2026-02-03T09:00:00Z",
        ]
        first = result.items[0]
        assert first.category == "Issue"
        assert first.title == "Widgets are broken"
        assert first.repository == "acme/widgets"
        assert first.url == "https://github.com/notifications"
        assert first.published == "2026-02-02T09:00:00+00:00"
        assert result.last_modified == "Tue, 03 Feb 2026 09:00:00 GMT"

        call = mock_http.get.call_args
        assert call.args[0] == "https://api.github.com/notifications"
        assert call.kwargs["headers"]["Authorization"] == "Bearer ghp_x"
        assert "since" not in call.kwargs["params"]

    @pytest.mark.asyncio
    async def test_since_from_cursor(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(json_data=[]))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            await GithubSource().fetch_since(
                _github_subscription(), Cursor("101@x", "2026-02-02T09:00:00+00:00"),
            )

        assert mock_http.get.call_args.kwargs["params"]["since"] == "2026-02-02T09:00:00+00:00"

    @pytest.mark.asyncio
    async def test_poll_interval_is_honoured(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(json_data=[], headers={"X-Poll-Interval": "60"}))
        source = GithubSource()
        subscription = _github_subscription()

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            await source.fetch_since(subscription, None)
            with pytest.raises(RateLimited):
                await source.fetch_since(subscription, None)

        assert mock_http.get.call_count == 1
        assert not source.next_request_allowed(subscription.source_id)
        # Other accounts are unaffected
        assert source.next_request_allowed(_github_subscription("someone-else").source_id)

    @pytest.mark.asyncio
    async def test_exhausted_quota_is_rate_limited(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(
            status=403, headers={"X-RateLimit-Remaining": "0"},
        ))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(RateLimited):
                await GithubSource().fetch_since(_github_subscription(), None)

    @pytest.mark.asyncio
    async def test_plain_403_is_transient(self):
        mock_http = _mock_httpx_client()
        mock_http.get = AsyncMock(return_value=_response(status=403, headers={"X-RateLimit-Remaining": "42"}))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransientFetchError):
                await GithubSource().fetch_since(_github_subscription(), None)

    @pytest.mark.asyncio
    async def test_validate(self):
        mock_http = _mock_httpx_client()
        mock_http.head = AsyncMock(return_value=_response(status=401))

        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            assert await GithubSource().validate("octocat", "bad") is False

        mock_http.head = AsyncMock(return_value=_response(status=200))
        with patch("roomkeeper.sources.httpx.AsyncClient", return_value=mock_http):
            assert await GithubSource().validate("octocat", "good") is True
