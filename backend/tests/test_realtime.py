"""Tests for the realtime subscription against a local websocket server."""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, test_utils, web

from dmchat.services.platform.base import PlatformError
from dmchat.services.platform.realtime import RealtimeSubscription

TOPIC = "realtime:messages_channel_c1"


async def _eventually(condition, timeout=5.0):
    async def wait():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait(), timeout)


def _socket_app(on_join):
    """Websocket app that hands every join frame to ``on_join(ws, count)``.

    ``on_join`` returns False to drop the connection.
    """
    joins = []

    async def socket(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            if frame["event"] != "phx_join":
                continue
            joins.append(frame)
            if await on_join(ws, len(joins)) is False:
                await ws.close()
                break
        return ws

    app = web.Application()
    app.router.add_get("/socket", socket)
    return app, joins


def _subscription(url, received, **kwargs):
    async def on_event(row):
        received.append(row)

    return RealtimeSubscription(
        url,
        topic="messages_channel_c1",
        table="messages",
        row_filter="channel_id=eq.c1",
        on_event=on_event,
        backoff=0.01,
        max_backoff=0.05,
        **kwargs,
    )


class TestReconnect:
    @pytest.mark.asyncio
    async def test_rejoins_after_server_drops_socket(self):
        record = {"id": 9, "channel_id": "c1", "sender_id": "u-2", "content": "back again"}

        async def on_join(ws, count):
            if count == 1:
                return False
            await ws.send_json({"topic": TOPIC, "event": "phx_reply", "payload": {"status": "ok"}})
            await ws.send_json({"topic": TOPIC, "event": "postgres_changes",
                                "payload": {"data": {"type": "INSERT", "record": record}}})

        app, joins = _socket_app(on_join)
        received = []
        async with test_utils.TestServer(app) as server:
            subscription = _subscription(str(server.make_url("/socket")), received)
            await subscription.start()
            try:
                await _eventually(lambda: received)
                assert received == [record]
                assert len(joins) == 2
                assert subscription.joined
                assert not subscription.closed
            finally:
                await subscription.close()

        assert subscription.closed

    @pytest.mark.asyncio
    async def test_rejected_join_gives_up_after_retries(self):
        async def on_join(ws, count):
            await ws.send_json({"topic": TOPIC, "event": "phx_reply",
                                "payload": {"status": "error", "response": {"reason": "unauthorized"}}})

        app, joins = _socket_app(on_join)
        async with test_utils.TestServer(app) as server:
            subscription = _subscription(str(server.make_url("/socket")), [], max_reconnects=2)
            await subscription.start()
            try:
                await _eventually(lambda: subscription.closed)
                assert len(joins) == 3
                assert not subscription.joined
            finally:
                await subscription.close()

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self):
        async def drop(ws, count):
            return False

        app, joins = _socket_app(drop)
        async with test_utils.TestServer(app) as server:
            subscription = _subscription(str(server.make_url("/socket")), [], max_reconnects=100)
            subscription.backoff = subscription.max_backoff = 10.0
            await subscription.start()
            await _eventually(lambda: joins)
            await subscription.close()
            await asyncio.sleep(0.05)

        assert subscription.closed
        assert len(joins) == 1


@pytest.mark.asyncio
async def test_unreachable_server_fails_to_start():
    subscription = _subscription("ws://127.0.0.1:1/socket", [])
    with pytest.raises(PlatformError, match="connection failed"):
        await subscription.start()
