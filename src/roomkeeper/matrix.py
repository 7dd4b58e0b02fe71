"""Matrix client-server API client (the bot's outbound sink)."""

import logging
import uuid
from typing import Protocol
from urllib.parse import quote

import httpx

from .config import Config

logger = logging.getLogger("roomkeeper.matrix")

API_PREFIX = "/_matrix/client/v3"


class SendError(Exception):
    """A message could not be delivered to a room. Treated as transient."""


class Sink(Protocol):
    """What the scheduler needs from the chat client."""

    async def send_message(
        self, room_id: str, text: str, html: str | None = None, txn_id: str | None = None,
    ) -> str: ...

    async def join_room(self, room: str) -> str: ...

    async def leave_room(self, room_id: str) -> None: ...


def _path_param(value: str) -> str:
    # Room ids and aliases contain '!', '#' and ':'
    return quote(value, safe="")


def localpart(user_id: str) -> str:
    """'@alice:example.org' -> 'alice'."""
    return user_id.lstrip("@").split(":", 1)[0]


def mention_html(user_id: str, display_name: str | None = None) -> str:
    name = display_name or localpart(user_id)
    return f'<a href="https://matrix.to/#/{user_id}">@{name}</a>'


class MatrixClient:
    """Client for the Matrix client-server API using a regular user account."""

    def __init__(self, config: Config):
        self.config = config
        self.base_url = config.matrix.homeserver.rstrip("/")
        self.user_id = config.matrix.user_id
        self.access_token = config.matrix.access_token
        self.timeout = config.matrix.request_timeout

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def login(self) -> str:
        """Log in with the configured password unless an access token is set."""
        if self.access_token:
            return self.access_token

        url = f"{self.base_url}{API_PREFIX}/login"
        payload = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self.user_id},
            "password": self.config.matrix.password,
            "initial_device_display_name": self.config.matrix.device_name,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()

        self.access_token = data["access_token"]
        self.user_id = data.get("user_id", self.user_id)
        logger.info("Logged in as %s (device %s)", self.user_id, data.get("device_id"))
        return self.access_token

    async def send_message(
        self,
        room_id: str,
        text: str,
        html: str | None = None,
        txn_id: str | None = None,
        msgtype: str = "m.notice",
    ) -> str:
        """Send a message to a room. Returns the event id.

        Passing a stable txn_id makes a re-send after a crash idempotent on
        homeservers that deduplicate transaction ids per device.
        """
        txn_id = txn_id or uuid.uuid4().hex
        url = (
            f"{self.base_url}{API_PREFIX}/rooms/{_path_param(room_id)}"
            f"/send/m.room.message/{_path_param(txn_id)}"
        )
        content = {"msgtype": msgtype, "body": text}
        if html:
            content["format"] = "org.matrix.custom.html"
            content["formatted_body"] = html

        logger.debug("Sending message to %s (%d chars)", room_id, len(text))
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.put(url, headers=self._headers(), json=content)
                response.raise_for_status()
                return response.json().get("event_id", "")
        except httpx.HTTPError as e:
            raise SendError(f"send to {room_id} failed: {e}") from e

    async def join_room(self, room: str) -> str:
        """Join a room by id or alias. Returns the room id."""
        url = f"{self.base_url}{API_PREFIX}/join/{_path_param(room)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=self._headers(), json={})
                response.raise_for_status()
                return response.json().get("room_id", room)
        except httpx.HTTPError as e:
            raise SendError(f"join {room} failed: {e}") from e

    async def leave_room(self, room_id: str) -> None:
        url = f"{self.base_url}{API_PREFIX}/rooms/{_path_param(room_id)}/leave"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=self._headers(), json={})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise SendError(f"leave {room_id} failed: {e}") from e

    async def joined_rooms(self) -> list[str]:
        url = f"{self.base_url}{API_PREFIX}/joined_rooms"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url, headers=self._headers())
            response.raise_for_status()
            return response.json().get("joined_rooms", [])

    async def get_display_name(self, room_id: str, user_id: str) -> str | None:
        """Display name of a room member, or None if unknown."""
        url = (
            f"{self.base_url}{API_PREFIX}/rooms/{_path_param(room_id)}"
            f"/state/m.room.member/{_path_param(user_id)}"
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=self._headers())
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json().get("displayname")
        except httpx.HTTPError as e:
            logger.debug("Display name lookup for %s in %s failed: %s", user_id, room_id, e)
            return None

    async def sync(self, since: str | None = None, timeout: int = 30) -> dict:
        """
        Long-poll /sync for new events.

        Without a since token the server returns a full snapshot; callers
        use that only to obtain the first next_batch token.
        """
        url = f"{self.base_url}{API_PREFIX}/sync"
        params: dict = {"timeout": timeout * 1000 if since else 0}
        if since:
            params["since"] = since
        else:
            # Snapshot only needs the token, not the history
            params["filter"] = '{"room":{"timeline":{"limit":1}}}'

        async with httpx.AsyncClient(timeout=timeout + 10) as client:
            response = await client.get(url, headers=self._headers(), params=params)
            response.raise_for_status()
            return response.json()


def split_message(message: str, max_length: int = 16000) -> list[str]:
    """Split a message into chunks that fit a single room event.

    Splits on paragraph boundaries (double newline), then single newlines,
    then hard splits. Each part gets a page indicator like "(1/3)" when
    more than one part is produced.
    """
    if len(message) <= max_length:
        return [message]

    parts = []
    remaining = message

    while remaining:
        if len(remaining) <= max_length:
            parts.append(remaining)
            break

        # Reserve space for page indicator suffix like " (1/3)"
        effective_max = max_length - 10

        chunk = remaining[:effective_max]
        split_pos = chunk.rfind("\n\n")

        if split_pos < effective_max // 2:
            split_pos = chunk.rfind("\n")

        if split_pos < effective_max // 2:
            split_pos = effective_max

        parts.append(remaining[:split_pos].rstrip())
        remaining = remaining[split_pos:].lstrip("\n")

    if len(parts) > 1:
        total = len(parts)
        parts = [f"{part} ({i + 1}/{total})" for i, part in enumerate(parts)]

    return parts
