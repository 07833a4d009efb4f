"""Tests for the hosted platform adapter against a mocked HTTP transport."""

import json

import httpx
import pytest

from dmchat.models.chat import AttachmentContent, TextContent
from dmchat.services.platform.base import PlatformError, UploadError
from dmchat.services.platform.realtime import RealtimeSubscription
from dmchat.services.platform.supabase import SupabasePlatform

BASE_URL = "https://project.supabase.test"


def _platform(handler, token="user-jwt"):
    return SupabasePlatform(BASE_URL, "anon-key", access_token=token, transport=httpx.MockTransport(handler))


class TestIdentity:
    @pytest.mark.asyncio
    async def test_resolves_user(self):
        def handler(request):
            assert request.url.path == "/auth/v1/user"
            assert request.headers["Authorization"] == "Bearer session-token"
            assert request.headers["apikey"] == "anon-key"
            return httpx.Response(200, json={
                "id": "u-1",
                "email": "ada@example.com",
                "user_metadata": {"full_name": "Ada Lovelace", "avatar_url": "https://img.test/ada.png"},
            })

        identity = await _platform(handler, token=None).resolve_identity("session-token")

        assert identity.account_id == "u-1"
        assert identity.display_name == "Ada Lovelace"
        assert identity.to_account().avatar_url == "https://img.test/ada.png"

    @pytest.mark.asyncio
    async def test_rejected_token_is_none(self):
        platform = _platform(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))
        assert await platform.resolve_identity("expired") is None

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        platform = _platform(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(PlatformError):
            await platform.resolve_identity("token")


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_channels_parses_members(self):
        def handler(request):
            assert request.url.path == "/rest/v1/channels"
            assert request.url.params["id"] == "in.(c1,c2)"
            assert request.url.params["order"] == "last_message_at.desc.nullslast"
            assert request.headers["Authorization"] == "Bearer user-jwt"
            return httpx.Response(200, json=[{
                "id": "c1",
                "created_at": "2024-01-01T00:00:00+00:00",
                "last_message": "hey",
                "last_message_at": "2024-02-01T10:00:00+00:00",
                "members": [
                    {"user_id": "u-1", "profiles": {"id": "u-1", "full_name": "Ada", "avatar_url": None}},
                    {"user_id": "u-2", "profiles": None},
                ],
            }])

        (channel,) = await _platform(handler).list_channels_with_members(["c1", "c2"])

        assert channel.last_message_text == "hey"
        assert channel.member_ids() == {"u-1", "u-2"}
        assert channel.members[0].profile.display_name == "Ada"

    @pytest.mark.asyncio
    async def test_list_messages_classifies_legacy_rows(self):
        def handler(request):
            assert request.url.params["channel_id"] == "eq.c1"
            assert request.url.params["order"] == "created_at.asc"
            return httpx.Response(200, json=[
                {"id": 1, "channel_id": "c1", "sender_id": "u-1", "content": "https://cdn.test/x.JPG",
                 "created_at": "2024-02-01T10:00:00+00:00",
                 "profiles": {"id": "u-1", "full_name": "Ada", "avatar_url": None}},
                {"id": 2, "channel_id": "c1", "sender_id": "u-2", "content": "plain",
                 "kind": "text", "created_at": "2024-02-01T10:01:00+00:00"},
            ])

        messages = await _platform(handler).list_messages("c1")

        assert messages[0].id == "1"
        assert messages[0].content == AttachmentContent(url="https://cdn.test/x.JPG", mime_hint="image/jpeg")
        assert messages[0].sender_profile.display_name == "Ada"
        assert messages[1].content == TextContent(value="plain")

    @pytest.mark.asyncio
    async def test_search_sends_filters(self):
        def handler(request):
            params = request.url.params
            assert params["full_name"] == "ilike.*ada*"
            assert params["id"] == "neq.u-9"
            assert params["limit"] == "5"
            return httpx.Response(200, json=[{"id": "u-1", "full_name": None, "avatar_url": ""}])

        (account,) = await _platform(handler).search_accounts_by_name("ada", exclude_account_id="u-9", limit=5)

        assert account.display_name == "Unknown"
        assert account.avatar_url is None

    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self):
        platform = _platform(lambda request: httpx.Response(200, json=[]))
        assert await platform.get_profile("u-404") is None


class TestCommands:
    @pytest.mark.asyncio
    async def test_insert_message_returns_ack(self):
        def handler(request):
            assert request.method == "POST"
            assert request.headers["Prefer"] == "return=representation"
            body = json.loads(request.content)
            assert body == {"channel_id": "c1", "sender_id": "u-1", "client_id": "local-abc",
                            "content": "hi", "kind": "text", "mime_hint": None}
            return httpx.Response(201, json=[{"id": 77, "created_at": "2024-02-01T10:00:00Z", "client_id": "local-abc"}])

        ack = await _platform(handler).insert_message("c1", "u-1", TextContent(value="hi"), client_id="local-abc")

        assert ack.id == "77"
        assert ack.client_id == "local-abc"
        assert ack.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_insert_failure_raises(self):
        platform = _platform(lambda request: httpx.Response(403, json={"message": "RLS violation"}))
        with pytest.raises(PlatformError, match="403"):
            await platform.insert_message("c1", "u-1", TextContent(value="hi"))

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(PlatformError):
            await _platform(handler).delete_channel("c1")

    @pytest.mark.asyncio
    async def test_add_memberships_posts_both_rows(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201)

        await _platform(handler).add_memberships("c1", ["u-1", "u-2"])

        assert seen["body"] == [{"channel_id": "c1", "user_id": "u-1"}, {"channel_id": "c1", "user_id": "u-2"}]

    @pytest.mark.asyncio
    async def test_upload_returns_public_url(self):
        def handler(request):
            assert request.url.path == "/storage/v1/object/attachments/c1/abc-cat.png"
            assert request.headers["Content-Type"] == "image/png"
            assert request.content == b"png"
            return httpx.Response(200, json={"Key": "attachments/c1/abc-cat.png"})

        url = await _platform(handler).upload_file("c1/abc-cat.png", b"png", "image/png")

        assert url == f"{BASE_URL}/storage/v1/object/public/attachments/c1/abc-cat.png"

    @pytest.mark.asyncio
    async def test_upload_failure_is_upload_error(self):
        platform = _platform(lambda request: httpx.Response(413, text="too large"))
        with pytest.raises(UploadError):
            await platform.upload_file("c1/big.bin", b"x" * 10)


def test_bind_keeps_configuration():
    platform = SupabasePlatform(BASE_URL, "anon-key")
    bound = platform.bind("user-jwt")

    assert bound is not platform
    assert bound._headers()["Authorization"] == "Bearer user-jwt"
    assert platform._headers()["Authorization"] == "Bearer anon-key"


def test_unconfigured_platform_refuses_requests():
    with pytest.raises(PlatformError, match="not configured"):
        SupabasePlatform("", "")._headers()


@pytest.mark.asyncio
async def test_unconfigured_platform_fails_like_any_backend_error():
    with pytest.raises(PlatformError):
        await SupabasePlatform("", "").list_messages("c1")


class TestRealtimeFrames:
    def _subscription(self, received):
        async def on_event(row):
            received.append(row)

        return RealtimeSubscription(
            "wss://project.supabase.test/realtime/v1/websocket",
            topic="messages_channel_c1",
            table="messages",
            row_filter="channel_id=eq.c1",
            on_event=on_event,
            access_token="user-jwt",
        )

    def test_join_frame_filters_inserts(self):
        frame = self._subscription([]).join_frame()

        assert frame["topic"] == "realtime:messages_channel_c1"
        assert frame["event"] == "phx_join"
        assert frame["payload"]["access_token"] == "user-jwt"
        (change,) = frame["payload"]["config"]["postgres_changes"]
        assert change == {"event": "INSERT", "schema": "public", "table": "messages", "filter": "channel_id=eq.c1"}

    @pytest.mark.asyncio
    async def test_insert_frame_delivers_record(self):
        received = []
        subscription = self._subscription(received)
        record = {"id": 5, "channel_id": "c1", "sender_id": "u-2", "content": "yo"}

        await subscription.handle_frame({
            "topic": "realtime:messages_channel_c1",
            "event": "postgres_changes",
            "payload": {"data": {"type": "INSERT", "record": record}},
        })

        assert received == [record]

    @pytest.mark.asyncio
    async def test_other_topics_and_events_are_ignored(self):
        received = []
        subscription = self._subscription(received)

        await subscription.handle_frame({"topic": "realtime:messages_channel_c2", "event": "postgres_changes",
                                         "payload": {"data": {"type": "INSERT", "record": {"id": 1}}}})
        await subscription.handle_frame({"topic": "realtime:messages_channel_c1", "event": "postgres_changes",
                                         "payload": {"data": {"type": "UPDATE", "record": {"id": 1}}}})
        await subscription.handle_frame({"topic": "phoenix", "event": "phx_reply", "payload": {"status": "ok"}})

        assert received == []

    @pytest.mark.asyncio
    async def test_close_before_start_is_safe(self):
        subscription = self._subscription([])
        await subscription.close()
        assert subscription.closed
