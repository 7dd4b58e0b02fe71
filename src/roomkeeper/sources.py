"""Source clients for RSS/Atom feeds and GitHub notifications.

Each client returns the items of one subscription oldest-first and raises
RateLimited or TransientFetchError instead of leaking transport details.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import feedparser
import httpx

from . import __version__
from .db import Cursor, Subscription, format_ts, parse_ts, utcnow

logger = logging.getLogger("roomkeeper.sources")

USER_AGENT = f"roomkeeper/{__version__}"
GITHUB_API_URL = "https://api.github.com"


class FetchError(Exception):
    """Fetching a source failed."""


class RateLimited(FetchError):
    """Upstream asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientFetchError(FetchError):
    """Network error, bad status or unparsable response; try again next run."""


@dataclass
class Item:
    """One entry of a source, identified by a source-provided stable id."""
    item_id: str
    title: str | None = None
    url: str | None = None
    summary: str | None = None
    published: str | None = None    # ISO timestamp from the source
    author: str | None = None
    category: str | None = None     # GitHub subject type
    repository: str | None = None   # GitHub repository full name


@dataclass
class FetchResult:
    items: list[Item] = field(default_factory=list)
    etag: str | None = None
    last_modified: str | None = None


def _retry_after(headers) -> float | None:
    """Seconds to wait from a Retry-After header (delta or HTTP date)."""
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utcnow()).total_seconds())


def _strip_html(content: str) -> str:
    # Convert block/break tags to newlines before stripping
    text = re.sub(r"<br\s*/?>", "\n", content)
    text = re.sub(r"</p>\s*<p[^>]*>", "\n\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text).strip()


def _oldest_first(items: list[Item]) -> list[Item]:
    """Order items oldest-first.

    Feeds and the GitHub API list newest first; reverse document order and,
    when every item carries a timestamp, sort on it (stable for ties).
    """
    items = list(reversed(items))
    if items and all(item.published for item in items):
        items.sort(key=lambda item: parse_ts(item.published))
    return items


# ============================================================================
# RSS / Atom
# ============================================================================


def parse_feed_entries(parsed) -> list[Item]:
    """Convert feedparser entries into Items (document order)."""
    items = []
    for entry in parsed.entries:
        published = None
        for attr in ("published_parsed", "updated_parsed"):
            value = getattr(entry, attr, None)
            if value:
                try:
                    published = datetime(*value[:6], tzinfo=timezone.utc).isoformat()
                except (TypeError, ValueError):
                    continue
                break

        summary = None
        if getattr(entry, "summary", None):
            summary = _strip_html(entry.summary)
        elif getattr(entry, "content", None):
            summary = _strip_html(entry.content[0].get("value", ""))

        link = getattr(entry, "link", None)
        item_id = getattr(entry, "id", None) or link
        if not item_id:
            logger.debug("Skipping feed entry without id or link")
            continue

        items.append(Item(
            item_id=item_id,
            title=getattr(entry, "title", None),
            url=link,
            summary=summary,
            published=published,
            author=getattr(entry, "author", None),
        ))
    return items


class RssSource:
    """RSS/Atom client using conditional GET."""

    kind = "rss"

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def _get(self, url: str, headers: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                return await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{url}: {e}") from e

    async def fetch_since(
        self,
        subscription: Subscription,
        cursor: Cursor | None,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        """Fetch the feed window. The poller decides which items are new."""
        url = subscription.target
        headers = {"User-Agent": USER_AGENT}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        response = await self._get(url, headers)

        if response.status_code == 304:
            logger.debug("RSS %s: 304 Not Modified", url)
            return FetchResult([], etag, last_modified)

        if response.status_code in (429, 503):
            raise RateLimited(
                f"{url}: HTTP {response.status_code}",
                retry_after=_retry_after(response.headers),
            )
        if response.status_code >= 400:
            raise TransientFetchError(f"{url}: HTTP {response.status_code}")

        parsed = feedparser.parse(response.content)
        if not parsed.entries and (parsed.bozo or not parsed.version):
            raise TransientFetchError(f"{url}: unparsable feed ({parsed.get('bozo_exception')})")

        items = _oldest_first(parse_feed_entries(parsed))
        logger.debug("RSS %s: HTTP %d, %d entries", url, response.status_code, len(items))
        return FetchResult(
            items,
            etag=response.headers.get("ETag") or etag,
            last_modified=response.headers.get("Last-Modified") or last_modified,
        )

    async def validate(self, url: str) -> str:
        """Check that url serves a parsable feed. Returns the feed title."""
        response = await self._get(url, {"User-Agent": USER_AGENT})
        if response.status_code >= 400:
            raise TransientFetchError(f"{url}: HTTP {response.status_code}")
        parsed = feedparser.parse(response.content)
        if not parsed.entries and (parsed.bozo or not parsed.version):
            raise TransientFetchError(f"{url}: not a valid feed")
        return parsed.feed.get("title", url)


# ============================================================================
# GitHub notifications
# ============================================================================


class GithubSource:
    """GitHub notifications client honouring X-Poll-Interval."""

    kind = "github"

    def __init__(self, api_url: str = GITHUB_API_URL, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        # source_id -> earliest time the API allows the next request
        self._next_allowed: dict[str, datetime] = {}

    def _headers(self, token: str) -> dict:
        return {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
        }

    def next_request_allowed(self, source_id: str) -> bool:
        allowed = self._next_allowed.get(source_id)
        return allowed is None or allowed <= utcnow()

    async def fetch_since(
        self,
        subscription: Subscription,
        cursor: Cursor | None,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        if not self.next_request_allowed(subscription.source_id):
            wait = (self._next_allowed[subscription.source_id] - utcnow()).total_seconds()
            raise RateLimited("X-Poll-Interval not elapsed", retry_after=wait)

        params = {"all": "false", "per_page": "50"}
        if cursor and cursor.published:
            params["since"] = cursor.published
        headers = self._headers(subscription.token)
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.api_url}/notifications", headers=headers, params=params,
                )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"github {subscription.target}: {e}") from e

        poll_interval = response.headers.get("X-Poll-Interval")
        if poll_interval:
            try:
                self._next_allowed[subscription.source_id] = (
                    utcnow() + timedelta(seconds=int(poll_interval))
                )
            except ValueError:
                pass

        status = response.status_code
        if status == 304:
            return FetchResult([], etag, last_modified)
        if status == 429 or (
            status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            retry_after = _retry_after(response.headers)
            reset = response.headers.get("X-RateLimit-Reset")
            if retry_after is None and reset and reset.isdigit():
                retry_after = max(0.0, int(reset) - utcnow().timestamp())
            raise RateLimited(f"github {subscription.target}: HTTP {status}", retry_after)
        if status >= 400:
            raise TransientFetchError(f"github {subscription.target}: HTTP {status}")

        items = []
        for notification in response.json():
            subject = notification.get("subject") or {}
            updated = parse_ts(notification.get("updated_at"))
            items.append(Item(
                # A thread id recurs when the thread gets new activity
                item_id=f"{notification['id']}@{notification.get('updated_at', '')}",
                title=subject.get("title"),
                url="https://github.com/notifications",
                published=format_ts(updated),
                category=subject.get("type"),
                repository=(notification.get("repository") or {}).get("full_name"),
            ))

        logger.debug("GitHub %s: HTTP %d, %d notifications", subscription.target, status, len(items))
        return FetchResult(
            _oldest_first(items),
            etag=etag,
            last_modified=response.headers.get("Last-Modified") or last_modified,
        )

    async def validate(self, username: str, token: str) -> bool:
        """Return True if token grants access to the notifications API."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.head(
                    f"{self.api_url}/notifications", headers=self._headers(token),
                )
        except httpx.HTTPError as e:
            logger.warning("GitHub token check for %s failed: %s", username, e)
            return False
        return response.status_code < 400


def build_sources() -> dict:
    """Source clients keyed by subscription kind."""
    return {"rss": RssSource(), "github": GithubSource()}
