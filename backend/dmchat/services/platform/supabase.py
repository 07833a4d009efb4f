"""Hosted platform: Supabase REST (PostgREST), Storage and Auth over httpx, Realtime over websockets."""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx

from dmchat.core.config import settings
from dmchat.models.chat import (
    Account,
    Channel,
    Identity,
    InsertAck,
    Message,
    MessageContent,
    account_from_profile_row,
    as_utc,
    channel_from_row,
    content_to_row,
    message_from_row,
)
from dmchat.services.platform.base import BasePlatform, PlatformError, RowHandler, Subscription, UploadError
from dmchat.services.platform.realtime import RealtimeSubscription

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "id,full_name,avatar_url"
CHANNEL_SELECT = (
    "id,last_message,last_message_at,created_at,"
    f"members:channel_members(user_id,profiles({PROFILE_COLUMNS}))"
)
MESSAGE_SELECT = f"id,content,kind,mime_hint,client_id,created_at,sender_id,channel_id,profiles({PROFILE_COLUMNS})"


class SupabasePlatform(BasePlatform):
    """Supabase client using the anon key, optionally acting for a signed-in user."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = (url if url is not None else settings.supabase_url).rstrip("/")
        self._key = api_key if api_key is not None else settings.supabase_key
        self._token = access_token
        self._transport = transport

    def bind(self, access_token: str) -> "SupabasePlatform":
        return SupabasePlatform(self._url, self._key, access_token, self._transport)

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        if not self._url or not self._key:
            raise PlatformError("Supabase not configured. Set DMCHAT_SUPABASE_URL and DMCHAT_SUPABASE_KEY.")
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {access_token or self._token or self._key}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._url,
            headers=self._headers(),
            timeout=settings.request_timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                if not resp.content:
                    return None
                return resp.json()
        except httpx.HTTPStatusError as e:
            raise PlatformError(f"{method} {path} failed with {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            raise PlatformError(f"{method} {path} failed: {e}") from e

    # --- Identity ---

    async def resolve_identity(self, access_token: str) -> Optional[Identity]:
        if not access_token:
            return None
        try:
            async with self._client() as client:
                resp = await client.get("/auth/v1/user", headers=self._headers(access_token))
        except httpx.HTTPError as e:
            raise PlatformError(f"Session lookup failed: {e}") from e

        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 400:
            raise PlatformError(f"Session lookup failed with {resp.status_code}: {resp.text}")

        user = resp.json()
        metadata = user.get("user_metadata") or {}
        return Identity(
            account_id=user["id"],
            email=user.get("email"),
            display_name=metadata.get("full_name"),
            avatar_url=metadata.get("avatar_url"),
        )

    # --- Queries ---

    async def list_memberships_for_account(self, account_id: str) -> list[str]:
        rows = await self._request(
            "GET", "/rest/v1/channel_members",
            params={"select": "channel_id", "user_id": f"eq.{account_id}"},
        )
        return [str(row["channel_id"]) for row in rows or []]

    async def list_channels_with_members(self, channel_ids: list[str]) -> list[Channel]:
        if not channel_ids:
            return []
        rows = await self._request(
            "GET", "/rest/v1/channels",
            params={
                "select": CHANNEL_SELECT,
                "id": f"in.({','.join(channel_ids)})",
                "order": "last_message_at.desc.nullslast",
            },
        )
        return [channel_from_row(row) for row in rows or []]

    async def list_messages(self, channel_id: str) -> list[Message]:
        rows = await self._request(
            "GET", "/rest/v1/messages",
            params={"select": MESSAGE_SELECT, "channel_id": f"eq.{channel_id}", "order": "created_at.asc"},
        )
        return [message_from_row(row) for row in rows or []]

    async def get_profile(self, account_id: str) -> Optional[Account]:
        rows = await self._request(
            "GET", "/rest/v1/profiles",
            params={"select": PROFILE_COLUMNS, "id": f"eq.{account_id}"},
        )
        return account_from_profile_row(rows[0]) if rows else None

    async def search_accounts_by_name(
        self, query: str, exclude_account_id: str, limit: int = 20
    ) -> list[Account]:
        rows = await self._request(
            "GET", "/rest/v1/profiles",
            params={
                "select": PROFILE_COLUMNS,
                "full_name": f"ilike.*{query}*",
                "id": f"neq.{exclude_account_id}",
                "limit": str(limit),
            },
        )
        return [account_from_profile_row(row) for row in rows or []]

    # --- Commands ---

    async def insert_message(
        self, channel_id: str, sender_id: str, content: MessageContent, client_id: Optional[str] = None
    ) -> InsertAck:
        payload = {"channel_id": channel_id, "sender_id": sender_id, "client_id": client_id, **content_to_row(content)}
        rows = await self._request(
            "POST", "/rest/v1/messages",
            params={"select": "id,created_at,client_id"},
            headers={"Prefer": "return=representation"},
            json=payload,
        )
        if not rows:
            raise PlatformError("Insert returned no row")
        row = rows[0]
        return InsertAck(id=str(row["id"]), created_at=row["created_at"], client_id=row.get("client_id"))

    async def update_channel_summary(
        self, channel_id: str, last_message_text: str, last_message_at: datetime
    ) -> None:
        await self._request(
            "PATCH", "/rest/v1/channels",
            params={"id": f"eq.{channel_id}"},
            json={"last_message": last_message_text, "last_message_at": as_utc(last_message_at).isoformat()},
        )

    async def create_channel(self) -> Channel:
        rows = await self._request(
            "POST", "/rest/v1/channels",
            params={"select": "id,created_at"},
            headers={"Prefer": "return=representation"},
            json={},
        )
        if not rows:
            raise PlatformError("Channel insert returned no row")
        return channel_from_row(rows[0])

    async def add_memberships(self, channel_id: str, account_ids: list[str]) -> None:
        await self._request(
            "POST", "/rest/v1/channel_members",
            json=[{"channel_id": channel_id, "user_id": account_id} for account_id in account_ids],
        )

    async def delete_channel(self, channel_id: str) -> None:
        await self._request("DELETE", "/rest/v1/channels", params={"id": f"eq.{channel_id}"})

    async def upload_file(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        bucket = settings.storage_bucket
        object_path = quote(path)
        try:
            await self._request(
                "POST", f"/storage/v1/object/{bucket}/{object_path}",
                headers={"Content-Type": content_type or "application/octet-stream", "x-upsert": "false"},
                content=data,
            )
        except PlatformError as e:
            raise UploadError(str(e)) from e
        return f"{self._url}/storage/v1/object/public/{bucket}/{object_path}"

    # --- Live feeds ---

    def _socket_url(self) -> str:
        base = self._url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{base}/realtime/v1/websocket?apikey={self._key}&vsn=1.0.0"

    async def _subscribe(self, topic: str, table: str, row_filter: str, on_event: RowHandler) -> Subscription:
        subscription = RealtimeSubscription(
            self._socket_url(),
            topic=topic,
            table=table,
            row_filter=row_filter,
            on_event=on_event,
            access_token=self._token,
            heartbeat=settings.realtime_heartbeat,
            backoff=settings.realtime_backoff,
            max_backoff=settings.realtime_max_backoff,
            max_reconnects=settings.realtime_reconnect_attempts,
        )
        await subscription.start()
        return subscription

    async def subscribe_to_inserts(self, channel_id: str, on_event: RowHandler) -> Subscription:
        return await self._subscribe(
            f"messages_channel_{channel_id}", "messages", f"channel_id=eq.{channel_id}", on_event
        )

    async def subscribe_to_memberships(self, account_id: str, on_event: RowHandler) -> Subscription:
        return await self._subscribe(
            f"user_channel_members_{account_id}", "channel_members", f"user_id=eq.{account_id}", on_event
        )
