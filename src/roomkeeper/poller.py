"""Diff a fetched batch against the subscription cursor and notify the room."""

import enum
import hashlib
import html
import logging
from dataclasses import dataclass
from datetime import datetime

from . import db
from .db import Cursor, RecurringTaskState, Subscription, parse_ts
from .matrix import SendError
from .sources import Item

logger = logging.getLogger("roomkeeper.poller")

_SUMMARY_MAX = 500


class PollStatus(enum.Enum):
    SENT = "sent"            # every new item delivered, cursor advanced
    EMPTY = "empty"          # nothing new
    PARTIAL = "partial"      # a send failed, cursor advanced to the last sent item
    FAILED = "failed"        # first send failed, cursor unchanged


@dataclass
class PollOutcome:
    subscription: Subscription
    status: PollStatus
    sent: int = 0
    new: int = 0
    state: RecurringTaskState | None = None
    error: str | None = None


# ============================================================================
# Diffing
# ============================================================================


def new_items(items: list[Item], cursor: Cursor | None) -> list[Item]:
    """Items of an oldest-first batch that the cursor does not cover yet.

    Items after the cursor's item id are new. If the id has left the window,
    fall back to the source's timestamps; without those the whole window
    counts as new.
    """
    if cursor is None:
        return list(items)

    for idx, item in enumerate(items):
        if item.item_id == cursor.item_id:
            return list(items[idx + 1:])

    if cursor.published:
        since = parse_ts(cursor.published)
        return [
            item for item in items
            if item.published and parse_ts(item.published) > since
        ]

    return list(items)


def cursor_for(item: Item) -> Cursor:
    return Cursor(item_id=item.item_id, published=item.published)


def txn_id_for(subscription: Subscription, item_id: str) -> str:
    """Stable transaction id so a re-send of the same item is deduplicated."""
    digest = hashlib.sha256(item_id.encode()).hexdigest()[:16]
    return f"{subscription.kind}-{subscription.source_id}-{digest}"


# ============================================================================
# Rendering
# ============================================================================


def _truncate(text: str | None, max_len: int = _SUMMARY_MAX) -> str:
    if not text:
        return ""
    text = text.strip()
    if len(text) <= max_len:
        return text
    return text[:max_len].rsplit(" ", 1)[0] + "…"


def render_item(subscription: Subscription, item: Item) -> tuple[str, str]:
    """Render an item as (plain body, HTML body)."""
    if subscription.kind == "github":
        headline = f"{item.category or 'Notification'}: {item.title or ''}".strip()
        body = [headline]
        markup = [f"<b>{html.escape(headline)}</b>"]
        if item.repository:
            body.append(item.repository)
            markup.append(html.escape(item.repository))
        url = item.url or "https://github.com/notifications"
        body.append(url)
        markup.append(f'<a href="{html.escape(url)}">See notifications</a>')
        return "\n".join(body), "<br>\n".join(markup)

    body = []
    markup = []
    if item.title:
        body.append(item.title)
        markup.append(f"<b>{html.escape(item.title)}</b>")
    summary = _truncate(item.summary)
    if summary:
        body.append(summary)
        markup.append(html.escape(summary).replace("\n", "<br>"))
    if item.url:
        body.append(item.url)
        markup.append(f'<a href="{html.escape(item.url)}">{html.escape(item.url)}</a>')
    if not body:
        body.append(item.item_id)
        markup.append(html.escape(item.item_id))
    return "\n".join(body), "<br>\n".join(markup)


def render_digest(subscription: Subscription, items: list[Item]) -> tuple[str, str]:
    """Render several items as one message."""
    header = f"{len(items)} new items from {subscription.label}"
    body = [header]
    markup = [f"<b>{html.escape(header)}</b>", "<ul>"]
    for item in items:
        title = item.title or item.item_id
        if subscription.kind == "github" and item.category:
            title = f"{item.category}: {title}"
        if item.url:
            body.append(f"- {title} ({item.url})")
            markup.append(f'<li><a href="{html.escape(item.url)}">{html.escape(title)}</a></li>')
        else:
            body.append(f"- {title}")
            markup.append(f"<li>{html.escape(title)}</li>")
    markup.append("</ul>")
    return "\n".join(body), "\n".join(markup)


# ============================================================================
# Polling
# ============================================================================


async def poll_source(
    store: db.JobStore,
    sink,
    source,
    subscription: Subscription,
    state: RecurringTaskState | None,
    next_run: datetime,
    now: datetime,
) -> PollOutcome:
    """Fetch one subscription, notify its room of new items and commit.

    Sends happen before the commit. If a send fails the batch stops there
    and the cursor only covers the items that went out, so the rest are
    retried next run. FetchError propagates to the caller unchanged.
    """
    cursor = state.cursor if state else None
    result = await source.fetch_since(
        subscription,
        cursor,
        etag=state.etag if state else None,
        last_modified=state.last_modified if state else None,
    )

    fresh = new_items(result.items, cursor)
    sent: list[Item] = []
    error = None

    if fresh and subscription.digest and len(fresh) > 1:
        text, markup = render_digest(subscription, fresh)
        try:
            await sink.send_message(
                subscription.room, text, html=markup,
                txn_id=txn_id_for(subscription, "digest:" + fresh[-1].item_id),
            )
            sent = fresh
        except SendError as e:
            error = str(e)
    else:
        for item in fresh:
            text, markup = render_item(subscription, item)
            try:
                await sink.send_message(
                    subscription.room, text, html=markup,
                    txn_id=txn_id_for(subscription, item.item_id),
                )
            except SendError as e:
                error = str(e)
                break
            sent.append(item)

    complete = len(sent) == len(fresh)

    def _commit(txn: db.Transaction) -> RecurringTaskState | None:
        if db.get_subscription(txn, subscription.kind, subscription.source_id) is None:
            # Removed while we were polling
            return None
        current = db.get_task_state(txn, subscription.kind, subscription.source_id)
        if current is None:
            current = RecurringTaskState(kind=subscription.kind, source_id=subscription.source_id)
        if sent:
            current.cursor = cursor_for(sent[-1])
        if complete:
            # Validators only move once the whole window is processed, else a
            # conditional GET would hide the unsent items
            current.etag = result.etag
            current.last_modified = result.last_modified
            current.last_success_at = now
        current.next_eligible_run = next_run
        current.consecutive_rate_limit_skips = 0
        current.last_error = error
        db.put_task_state(txn, current)
        return current

    committed = store.transaction(_commit)

    if not fresh:
        status = PollStatus.EMPTY
        logger.debug(
            "Source %s/%s: 0 new items (fetched %d)",
            subscription.kind, subscription.label, len(result.items),
        )
    elif complete:
        status = PollStatus.SENT
        logger.info(
            "Source %s/%s: %d new item(s) sent to %s",
            subscription.kind, subscription.label, len(sent), subscription.room,
        )
    else:
        status = PollStatus.PARTIAL if sent else PollStatus.FAILED
        logger.warning(
            "Source %s/%s: sent %d of %d new item(s), rest retried next run: %s",
            subscription.kind, subscription.label, len(sent), len(fresh), error,
        )

    return PollOutcome(
        subscription=subscription,
        status=status,
        sent=len(sent),
        new=len(fresh),
        state=committed,
        error=error,
    )
