"""Inbound Matrix event loop: invites, !commands and the sync token."""

import asyncio
import logging

from . import db
from .commands import CommandContext, dispatch
from .config import Config
from .matrix import SendError

logger = logging.getLogger("roomkeeper.sync_poller")


def extract_invites(response: dict, user_id: str) -> list[tuple[str, str | None]]:
    """(room_id, inviter) for every pending invite of user_id in a sync batch."""
    invites = []
    for room_id, room in response.get("rooms", {}).get("invite", {}).items():
        inviter = None
        for event in room.get("invite_state", {}).get("events", []):
            if (
                event.get("type") == "m.room.member"
                and event.get("state_key") == user_id
                and event.get("content", {}).get("membership") == "invite"
            ):
                inviter = event.get("sender")
        invites.append((room_id, inviter))
    return invites


def extract_commands(response: dict, user_id: str) -> list[tuple[str, str, str]]:
    """(room_id, sender, body) of every !command text message in a sync batch.

    Messages sent by the bot itself are skipped.
    """
    commands = []
    for room_id, room in response.get("rooms", {}).get("join", {}).items():
        for event in room.get("timeline", {}).get("events", []):
            if event.get("type") != "m.room.message":
                continue
            if event.get("sender") == user_id:
                continue
            content = event.get("content", {})
            if content.get("msgtype") != "m.text":
                continue
            body = content.get("body", "")
            if isinstance(body, str) and body.lstrip().startswith("!"):
                commands.append((room_id, event["sender"], body))
    return commands


def extract_left_rooms(response: dict) -> list[str]:
    return list(response.get("rooms", {}).get("leave", {}))


class SyncPoller:
    """Long-polls /sync and hands commands to the dispatcher."""

    def __init__(
        self,
        config: Config,
        store: db.JobStore,
        client,
        driver=None,
        reminders=None,
        sources: dict | None = None,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.driver = driver
        self.reminders = reminders
        self.sources = sources or {}
        self._stopping = False
        self._stopped = asyncio.Event()
        self._request: asyncio.Future | None = None

    def _context(self, room_id: str, sender: str) -> CommandContext:
        return CommandContext(
            config=self.config,
            store=self.store,
            sink=self.client,
            room=room_id,
            sender=sender,
            driver=self.driver,
            reminders=self.reminders,
            sources=self.sources,
        )

    async def handle_invites(self, response: dict) -> int:
        joined = 0
        for room_id, inviter in extract_invites(response, self.client.user_id):
            if inviter and self.config.access.is_admin(inviter):
                try:
                    await self.client.join_room(room_id)
                except SendError as e:
                    logger.warning("Could not accept invite to %s: %s", room_id, e)
                    continue
                logger.info("Joined %s (invited by %s)", room_id, inviter)
                joined += 1
            else:
                logger.info("Ignoring invite to %s from %s (not an admin)", room_id, inviter)
        return joined

    def drop_left_rooms(self, response: dict) -> int:
        """Remove subscriptions of rooms the bot is no longer in."""
        rooms = extract_left_rooms(response)
        if not rooms:
            return 0

        def _drop(txn: db.Transaction) -> int:
            removed = 0
            for room_id in rooms:
                for subscription in db.list_subscriptions(txn, room=room_id):
                    db.remove_subscription(txn, subscription.kind, subscription.source_id)
                    removed += 1
            return removed

        removed = self.store.transaction(_drop)
        if removed:
            logger.info("Removed %d subscription(s) of rooms left: %s", removed, ", ".join(rooms))
            if self.driver:
                self.driver.notify_changed()
        return removed

    async def process(self, response: dict) -> int:
        """Handle one sync batch. Returns the number of commands dispatched."""
        await self.handle_invites(response)
        self.drop_left_rooms(response)

        handled = 0
        for room_id, sender, body in extract_commands(response, self.client.user_id):
            if await dispatch(self._context(room_id, sender), body):
                handled += 1
        return handled

    async def _sync(self, since: str | None, timeout: int) -> dict:
        self._request = asyncio.ensure_future(self.client.sync(since=since, timeout=timeout))
        try:
            return await self._request
        finally:
            self._request = None

    def stop(self) -> None:
        """Stop after the current batch; an idle long-poll is abandoned."""
        self._stopping = True
        self._stopped.set()
        if self._request is not None:
            self._request.cancel()

    async def run(self) -> None:
        sched = self.config.scheduler
        token = db.get_sync_token(self.store)
        logger.info("Sync loop started (%s)", "resuming" if token else "initial sync")

        while not self._stopping:
            try:
                if token is None:
                    # First start: only note where the timeline is, no history replay
                    response = await self._sync(None, 0)
                    token = response["next_batch"]
                    db.set_sync_token(self.store, token)
                    logger.info("Initial sync done, ignoring earlier events")
                    continue

                response = await self._sync(token, sched.sync_timeout)
                handled = await self.process(response)
                if handled:
                    logger.debug("Handled %d command(s)", handled)
                token = response.get("next_batch", token)
                db.set_sync_token(self.store, token)
            except asyncio.CancelledError:
                if self._stopping:
                    break
                raise
            except Exception as e:
                logger.error("Sync failed, retrying in %ds: %s: %s", sched.sync_retry_seconds, type(e).__name__, e)
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=sched.sync_retry_seconds)
                except asyncio.TimeoutError:
                    pass

        logger.info("Sync loop stopped")
