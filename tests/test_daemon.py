"""Tests for roomkeeper.daemon module."""

import asyncio
import fcntl
from unittest.mock import AsyncMock, patch

import pytest

from roomkeeper import db
from roomkeeper.config import SourceConfig
from roomkeeper.daemon import Services, run_daemon, serve
from roomkeeper.driver import seed_config_sources
from roomkeeper.sources import FetchResult, Item

from conftest import ROOM


async def _hang(since=None, timeout=30):
    await asyncio.sleep(3600)
    return {"next_batch": "never"}


class TestServe:
    @pytest.mark.asyncio
    async def test_loops_stop_on_event(self, make_config, sink):
        config = make_config()
        sink.sync = AsyncMock(side_effect=_hang)
        services = Services(config, client=sink, sources={})
        services.store.init()
        db.set_sync_token(services.store, "s1")

        stop_event = asyncio.Event()
        task = asyncio.create_task(serve(services, stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        assert task.done()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_polls_and_delivers_while_running(self, make_config, sink):
        config = make_config(sources=[SourceConfig(kind="rss", room=ROOM, url="https://e.org/feed")])
        sink.sync = AsyncMock(side_effect=_hang)
        source = AsyncMock()
        source.fetch_since = AsyncMock(return_value=FetchResult([Item("a", title="New post")]))
        services = Services(config, client=sink, sources={"rss": source})
        services.store.init()
        db.set_sync_token(services.store, "s1")

        seed_config_sources(services.store, config)
        services.reminders.schedule(ROOM, "@mod:example.org", "tea", db.utcnow())

        stop_event = asyncio.Event()
        task = asyncio.create_task(serve(services, stop_event))
        for _ in range(100):
            if sink.send_message.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        rooms = {call.args[0] for call in sink.send_message.call_args_list}
        assert rooms == {ROOM}
        assert sink.send_message.call_count == 2


class TestRunDaemon:
    def test_refuses_second_instance(self, make_config, tmp_path):
        config = make_config()
        lock_path = tmp_path / "held.lock"
        config.scheduler.lock_path = str(lock_path)

        with open(lock_path, "w") as held:
            fcntl.flock(held, fcntl.LOCK_EX | fcntl.LOCK_NB)
            with patch("roomkeeper.daemon.asyncio.run") as mock_run:
                assert run_daemon(config) == 1
            mock_run.assert_not_called()
