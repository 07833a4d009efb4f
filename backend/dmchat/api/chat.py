"""Chat websocket: drives a ChatClient for one connected browser session.

Client frames: ``open``, ``send``, ``send_file``, ``search``, ``direct``,
``refresh``. Server frames: ``channels`` and ``messages`` snapshots whenever
the store changes, plus ``selected``, ``search_results`` and ``error``.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from dmchat.api.deps import platform_provider
from dmchat.core.session import SessionContext
from dmchat.models.chat import OutgoingFile
from dmchat.services.client import ChatClient
from dmchat.services.platform.base import BasePlatform, PlatformError
from dmchat.services.sync.store import CHANNELS, MESSAGES

router = APIRouter()
logger = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4401


@router.websocket("/ws")
async def chat_websocket(
    websocket: WebSocket,
    token: str = "",
    platform: BasePlatform = Depends(platform_provider),
):
    await websocket.accept()

    try:
        identity = await platform.resolve_identity(token)
    except PlatformError as e:
        logger.error(f"Session lookup failed: {e}")
        identity = None
    if identity is None:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    session = SessionContext()
    session.populate(identity)
    outbox: asyncio.Queue = asyncio.Queue()

    async def notify(detail: str) -> None:
        outbox.put_nowait({"type": "error", "detail": detail})

    client = ChatClient(platform.bind(token), session, notify=notify)
    unsubscribe = client.store.subscribe(outbox.put_nowait)
    writer = asyncio.create_task(_write_frames(websocket, client, outbox))

    try:
        await client.start()
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                outbox.put_nowait({"type": "error", "detail": "Frames must be JSON objects"})
                continue
            if not isinstance(frame, dict):
                outbox.put_nowait({"type": "error", "detail": "Frames must be JSON objects"})
                continue
            await _dispatch(client, frame, outbox)

    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        await client.close()
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        session.clear()


async def _dispatch(client: ChatClient, frame: dict[str, Any], outbox: asyncio.Queue) -> None:
    kind = frame.get("type")

    if kind == "open":
        channel_id = frame.get("channel_id")
        if channel_id is not None and not isinstance(channel_id, str):
            outbox.put_nowait({"type": "error", "detail": "channel_id must be a string"})
            return
        if await client.open_channel(channel_id):
            outbox.put_nowait({"type": "selected", "channel_id": client.store.channel_id})

    elif kind == "send":
        await client.send_text(str(frame.get("content", "")))

    elif kind == "send_file":
        data = frame.get("data", "")
        if not isinstance(data, str):
            outbox.put_nowait({"type": "error", "detail": "Attachment data is not valid base64"})
            return
        try:
            decoded = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            outbox.put_nowait({"type": "error", "detail": "Attachment data is not valid base64"})
            return
        try:
            file = OutgoingFile(
                filename=str(frame.get("filename") or "file"), data=decoded, mime_type=frame.get("mime_type")
            )
        except ValidationError as e:
            outbox.put_nowait({"type": "error", "detail": f"Invalid attachment: {e.errors()[0]['msg']}"})
            return
        await client.send_file(file)

    elif kind == "search":
        query = str(frame.get("query", ""))
        results = await client.search(query)
        outbox.put_nowait({
            "type": "search_results",
            "query": query,
            "results": [a.model_dump(mode="json") for a in results],
        })

    elif kind == "direct":
        try:
            other = await client.platform.get_profile(str(frame.get("account_id", "")))
        except PlatformError as e:
            outbox.put_nowait({"type": "error", "detail": f"Failed to look up account: {e}"})
            return
        if other is None or other.id == client.session.account_id:
            outbox.put_nowait({"type": "error", "detail": "Account not found"})
            return
        channel = await client.open_direct_channel(other)
        if channel is not None:
            outbox.put_nowait({"type": "selected", "channel_id": channel.id})

    elif kind == "refresh":
        await client.refresh_channels()

    else:
        outbox.put_nowait({"type": "error", "detail": f"Unknown frame type: {kind!r}"})


async def _write_frames(websocket: WebSocket, client: ChatClient, outbox: asyncio.Queue) -> None:
    """Serialise store snapshots and other frames onto the socket, in order."""
    while True:
        item = await outbox.get()
        if item == MESSAGES:
            frame = {
                "type": "messages",
                "channel_id": client.store.channel_id,
                "messages": [m.model_dump(mode="json") for m in client.store.messages],
            }
        elif item == CHANNELS:
            frame = {"type": "channels", "channels": [c.model_dump(mode="json") for c in client.store.channels]}
        else:
            frame = item

        try:
            await websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Chat socket closed while writing: {e}")
            return
