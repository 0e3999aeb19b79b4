"""
Stream Chat REST client.

Only the handful of server-side calls this service needs are wrapped here:
user upsert, channel creation and partial update, posting system messages,
reading a channel's read state, mark-read, unread counts and user tokens.
Every call is authenticated with a server JWT signed by the API secret.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx
import jwt

from app.utils import parse_iso

logger = logging.getLogger(__name__)


class ChatProviderError(Exception):
    """Raised when the chat provider rejects a call or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def split_cid(cid: str, default_type: str = "messaging") -> tuple[str, str]:
    """Split a channel cid ("messaging:appointment-7") into (type, id)."""
    if ":" in cid:
        channel_type, channel_id = cid.split(":", 1)
        return channel_type, channel_id
    return default_type, cid


@dataclass
class ChannelReadState:
    """What the provider knows about one member's progress through a channel."""
    last_message_at: Optional[datetime] = None
    last_message_user_id: Optional[str] = None
    last_read_at: Optional[datetime] = None
    has_read_state: bool = False

    def is_unread_for(self, user_id: str) -> bool:
        if self.last_message_at is None:
            return False
        if not self.has_read_state or self.last_read_at is None:
            # Never opened the channel: only someone else's message counts
            return self.last_message_user_id != user_id
        return self.last_message_at > self.last_read_at


class StreamChatProvider:
    """Thin async wrapper over the Stream Chat server REST API."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://chat.stream-io-api.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def server_token(self) -> str:
        return jwt.encode({"server": True}, self.api_secret, algorithm="HS256")

    def create_user_token(self, user_id: str, expires_in: Optional[int] = None) -> str:
        payload: dict[str, Any] = {"user_id": user_id}
        if expires_in:
            now = int(time.time())
            payload["iat"] = now
            payload["exp"] = now + expires_in
        return jwt.encode(payload, self.api_secret, algorithm="HS256")

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        query = {"api_key": self.api_key}
        if params:
            query.update(params)
        headers = {
            "Authorization": self.server_token(),
            "stream-auth-type": "jwt",
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, params=query, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:500]
            logger.error(f"Stream {method} {path} failed with {e.response.status_code}: {detail}")
            raise ChatProviderError(
                f"Stream API error {e.response.status_code} on {path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Stream {method} {path} unreachable: {e}")
            raise ChatProviderError(f"Stream API unreachable: {e}") from e

        if not response.content:
            return {}
        return response.json()

    # -------------------------------------------------------------------------
    # Users & channels
    # -------------------------------------------------------------------------

    async def upsert_users(self, users: list[dict]) -> None:
        if not users:
            return
        await self._request("POST", "/users", json={"users": {u["id"]: u for u in users}})

    async def create_channel(
        self,
        channel_type: str,
        channel_id: str,
        members: list[str],
        created_by_id: str,
        data: Optional[dict] = None,
    ) -> str:
        """Get-or-create a channel and return its cid."""
        channel_data = dict(data or {})
        channel_data["members"] = members
        channel_data["created_by_id"] = created_by_id
        body = await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/query",
            json={"data": channel_data, "state": False},
        )
        return (body.get("channel") or {}).get("cid") or f"{channel_type}:{channel_id}"

    async def send_message(self, channel_type: str, channel_id: str, text: str, user_id: str) -> dict:
        body = await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/message",
            json={"message": {"text": text, "user_id": user_id}},
        )
        return body.get("message") or {}

    async def update_channel_partial(self, channel_type: str, channel_id: str, set_fields: dict) -> None:
        await self._request(
            "PATCH",
            f"/channels/{channel_type}/{channel_id}",
            json={"set": set_fields},
        )

    async def get_channel_read_state(self, channel_type: str, channel_id: str, user_id: str) -> ChannelReadState:
        body = await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/query",
            json={"state": True, "watch": False, "messages": {"limit": 1}},
        )

        state = ChannelReadState()
        messages = body.get("messages") or []
        if messages:
            last_message = messages[-1]
            state.last_message_at = parse_iso(last_message.get("created_at"))
            state.last_message_user_id = (last_message.get("user") or {}).get("id")

        for read in body.get("read") or []:
            if (read.get("user") or {}).get("id") == user_id:
                state.has_read_state = True
                state.last_read_at = parse_iso(read.get("last_read"))
                break

        return state

    async def mark_read(self, channel_type: str, channel_id: str, user_id: str) -> None:
        await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/read",
            json={"user_id": user_id},
        )

    async def get_unread_counts(self, user_id: str) -> dict[str, int]:
        """Per-channel unread counts for a user, keyed by cid."""
        body = await self._request("GET", "/unread", params={"user_id": user_id})
        counts = {}
        for channel in body.get("channels") or []:
            cid = channel.get("channel_id")
            if cid:
                counts[cid] = int(channel.get("unread_count") or 0)
        return counts
