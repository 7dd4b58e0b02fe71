"""Tests for roomkeeper.poller module."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from roomkeeper import db
from roomkeeper.db import Cursor, RecurringTaskState, Subscription
from roomkeeper.matrix import SendError
from roomkeeper.poller import (
    PollStatus,
    new_items,
    poll_source,
    render_digest,
    render_item,
    txn_id_for,
)
from roomkeeper.sources import FetchResult, Item, TransientFetchError

from conftest import NOW, ROOM

NEXT = NOW + timedelta(minutes=10)


def _item(item_id, published=None, **kw):
    return Item(item_id=item_id, title=f"Title {item_id}", url=f"https://e.org/{item_id}", published=published, **kw)


def _subscription(**kw):
    url = "https://e.org/feed"
    return Subscription(kind="rss", source_id=db.make_source_id(ROOM, url), room=ROOM, target=url, **kw)


@pytest.fixture
def subscription(store):
    sub = _subscription()
    db.put_subscription(store, sub)
    return sub


def _source(*batches):
    source = AsyncMock()
    source.fetch_since = AsyncMock(side_effect=[FetchResult(list(b)) for b in batches])
    return source


def _sent_bodies(sink):
    return [call.args[1] for call in sink.send_message.call_args_list]


class TestNewItems:
    def test_no_cursor_means_everything(self):
        items = [_item("a"), _item("b")]
        assert new_items(items, None) == items

    def test_items_after_cursor(self):
        items = [_item("a"), _item("b"), _item("c")]
        assert [i.item_id for i in new_items(items, Cursor("b"))] == ["c"]

    def test_cursor_at_newest(self):
        items = [_item("a"), _item("b")]
        assert new_items(items, Cursor("b")) == []

    def test_cursor_out_of_window_uses_timestamps(self):
        items = [
            _item("c", "2026-01-03T00:00:00+00:00"),
            _item("d", "2026-01-04T00:00:00+00:00"),
        ]
        cursor = Cursor("b", "2026-01-03T00:00:00+00:00")
        assert [i.item_id for i in new_items(items, cursor)] == ["d"]

    def test_cursor_out_of_window_without_timestamp(self):
        items = [_item("c"), _item("d")]
        assert new_items(items, Cursor("b")) == items


class TestRendering:
    def test_rss_item(self):
        text, markup = render_item(_subscription(), Item("x", title="Hello <world>", url="https://e.org/x", summary="Body"))
        assert text == "Hello <world>\nBody\nhttps://e.org/x"
        assert "<b>Hello &lt;world&gt;</b>" in markup
        assert 'href="https://e.org/x"' in markup

    def test_long_summary_truncated(self):
        text, _ = render_item(_subscription(), Item("x", title="T", summary="word " * 300))
        assert len(text) < 600
        assert text.endswith("…")

    def test_github_item(self):
        sub = Subscription(kind="github", source_id="s", room=ROOM, target="octocat")
        item = Item("1@t", title="Fix bug", category="PullRequest", repository="acme/w",
                    url="https://github.com/notifications")
        text, markup = render_item(sub, item)
        assert text.splitlines() == ["PullRequest: Fix bug", "acme/w", "https://github.com/notifications"]
        assert "See notifications" in markup

    def test_digest(self):
        text, markup = render_digest(_subscription(name="Blog"), [_item("a"), _item("b")])
        assert text.splitlines()[0] == "2 new items from Blog"
        assert "- Title a (https://e.org/a)" in text
        assert markup.count("<li>") == 2

    def test_txn_id_stable(self):
        sub = _subscription()
        assert txn_id_for(sub, "a") == txn_id_for(sub, "a")
        assert txn_id_for(sub, "a") != txn_id_for(sub, "b")


class TestPollSource:
    @pytest.mark.asyncio
    async def test_first_poll_sends_all_in_order(self, store, sink, subscription):
        outcome = await poll_source(store, sink, _source([_item("A"), _item("B")]), subscription, None, NEXT, NOW)

        assert outcome.status is PollStatus.SENT
        assert outcome.sent == 2
        assert [b.splitlines()[0] for b in _sent_bodies(sink)] == ["Title A", "Title B"]
        state = db.get_task_state(store, "rss", subscription.source_id)
        assert state.cursor == Cursor("B")
        assert state.next_eligible_run == NEXT
        assert state.last_success_at == NOW

    @pytest.mark.asyncio
    async def test_overlapping_windows(self, store, sink, subscription):
        source = _source([_item("A"), _item("B")], [_item("B"), _item("C")])

        await poll_source(store, sink, source, subscription, None, NEXT, NOW)
        state = db.get_task_state(store, "rss", subscription.source_id)
        assert state.cursor.item_id == "B"

        await poll_source(store, sink, source, subscription, state, NEXT + timedelta(minutes=10), NEXT)
        state = db.get_task_state(store, "rss", subscription.source_id)

        assert [b.splitlines()[0] for b in _sent_bodies(sink)] == ["Title A", "Title B", "Title C"]
        assert state.cursor.item_id == "C"

    @pytest.mark.asyncio
    async def test_cursor_passed_to_source(self, store, sink, subscription):
        source = _source([])
        state = RecurringTaskState(kind="rss", source_id=subscription.source_id, cursor=Cursor("B"), etag='"e"')
        await poll_source(store, sink, source, subscription, state, NEXT, NOW)

        call = source.fetch_since.call_args
        assert call.args[1] == Cursor("B")
        assert call.kwargs["etag"] == '"e"'

    @pytest.mark.asyncio
    async def test_empty_batch_only_advances_schedule(self, store, sink, subscription):
        state = RecurringTaskState(kind="rss", source_id=subscription.source_id, cursor=Cursor("B"))
        db.put_task_state(store, state)

        outcome = await poll_source(store, sink, _source([_item("A"), _item("B")]), subscription, state, NEXT, NOW)

        assert outcome.status is PollStatus.EMPTY
        sink.send_message.assert_not_called()
        saved = db.get_task_state(store, "rss", subscription.source_id)
        assert saved.cursor == Cursor("B")
        assert saved.next_eligible_run == NEXT

    @pytest.mark.asyncio
    async def test_success_resets_skip_counter(self, store, sink, subscription):
        state = RecurringTaskState(
            kind="rss", source_id=subscription.source_id, consecutive_rate_limit_skips=3, last_error="429",
        )
        db.put_task_state(store, state)

        await poll_source(store, sink, _source([_item("A")]), subscription, state, NEXT, NOW)

        saved = db.get_task_state(store, "rss", subscription.source_id)
        assert saved.consecutive_rate_limit_skips == 0
        assert saved.last_error is None

    @pytest.mark.asyncio
    async def test_send_failure_commits_sent_prefix(self, store, sink, subscription):
        sink.send_message = AsyncMock(side_effect=["$1", SendError("boom"), "$3"])
        source = _source([_item("A"), _item("B"), _item("C")], [_item("A"), _item("B"), _item("C")])

        outcome = await poll_source(store, sink, source, subscription, None, NEXT, NOW)

        assert outcome.status is PollStatus.PARTIAL
        assert outcome.sent == 1
        assert sink.send_message.call_count == 2
        state = db.get_task_state(store, "rss", subscription.source_id)
        assert state.cursor.item_id == "A"
        assert state.last_error == "boom"

        # Next run retries B and C
        sink.send_message = AsyncMock(return_value="$x")
        await poll_source(store, sink, source, subscription, state, NEXT + timedelta(minutes=10), NEXT)
        assert [b.splitlines()[0] for b in _sent_bodies(sink)] == ["Title B", "Title C"]

    @pytest.mark.asyncio
    async def test_partial_send_keeps_validators(self, store, sink, subscription):
        sink.send_message = AsyncMock(side_effect=SendError("down"))
        source = AsyncMock()
        source.fetch_since = AsyncMock(return_value=FetchResult([_item("A")], etag='"new"'))
        state = RecurringTaskState(kind="rss", source_id=subscription.source_id, etag='"old"')
        db.put_task_state(store, state)

        outcome = await poll_source(store, sink, source, subscription, state, NEXT, NOW)

        assert outcome.status is PollStatus.FAILED
        saved = db.get_task_state(store, "rss", subscription.source_id)
        assert saved.etag == '"old"'
        assert saved.cursor is None

    @pytest.mark.asyncio
    async def test_digest_sends_one_message(self, store, sink):
        sub = _subscription(digest=True)
        db.put_subscription(store, sub)

        outcome = await poll_source(store, sink, _source([_item("A"), _item("B")]), sub, None, NEXT, NOW)

        assert outcome.sent == 2
        assert sink.send_message.call_count == 1
        assert _sent_bodies(sink)[0].startswith("2 new items")
        assert db.get_task_state(store, "rss", sub.source_id).cursor.item_id == "B"

    @pytest.mark.asyncio
    async def test_sends_carry_txn_ids(self, store, sink, subscription):
        await poll_source(store, sink, _source([_item("A")]), subscription, None, NEXT, NOW)
        assert sink.send_message.call_args.kwargs["txn_id"] == txn_id_for(subscription, "A")

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_without_commit(self, store, sink, subscription):
        source = AsyncMock()
        source.fetch_since = AsyncMock(side_effect=TransientFetchError("down"))

        with pytest.raises(TransientFetchError):
            await poll_source(store, sink, source, subscription, None, NEXT, NOW)

        assert db.get_task_state(store, "rss", subscription.source_id) is None

    @pytest.mark.asyncio
    async def test_removed_subscription_not_recreated(self, store, sink):
        sub = _subscription()  # never stored
        outcome = await poll_source(store, sink, _source([_item("A")]), sub, None, NEXT, NOW)
        assert outcome.state is None
        assert db.get_task_state(store, "rss", sub.source_id) is None
