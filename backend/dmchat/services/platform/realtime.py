"""Realtime change feed over the hosted platform's Phoenix websocket protocol."""

import asyncio
import itertools
import logging
from typing import Any, Optional

import aiohttp

from dmchat.services.platform.base import PlatformError, RowHandler, Subscription

logger = logging.getLogger(__name__)


class RealtimeSubscription(Subscription):
    """One websocket joined to one topic, listening for INSERTs on one table filter.

    A dropped socket or a rejected join is retried with exponential backoff.
    After ``max_reconnects`` consecutive failures the subscription gives up and
    reports itself closed.
    """

    def __init__(
        self,
        socket_url: str,
        topic: str,
        table: str,
        row_filter: str,
        on_event: RowHandler,
        access_token: Optional[str] = None,
        heartbeat: float = 25.0,
        backoff: float = 1.0,
        max_backoff: float = 30.0,
        max_reconnects: int = 5,
    ):
        self.socket_url = socket_url
        self.topic = f"realtime:{topic}"
        self.table = table
        self.row_filter = row_filter
        self.on_event = on_event
        self.access_token = access_token
        self.heartbeat = heartbeat
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.max_reconnects = max_reconnects
        self._refs = itertools.count(1)
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._runner: Optional[asyncio.Task] = None
        self._joined = False
        self._rejected = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def joined(self) -> bool:
        return self._joined and not self._closed

    def join_frame(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "config": {
                "postgres_changes": [
                    {"event": "INSERT", "schema": "public", "table": self.table, "filter": self.row_filter}
                ]
            }
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        return {"topic": self.topic, "event": "phx_join", "payload": payload, "ref": str(next(self._refs))}

    async def start(self) -> None:
        await self._connect()
        self._runner = asyncio.create_task(self._run())

    async def _connect(self) -> None:
        self._joined = False
        self._rejected = False
        self._http = aiohttp.ClientSession()
        try:
            self._ws = await self._http.ws_connect(self.socket_url)
            await self._ws.send_json(self.join_frame())
        except (aiohttp.ClientError, OSError) as e:
            await self._disconnect()
            raise PlatformError(f"Realtime connection failed for {self.topic}: {e}") from e
        logger.debug(f"Joining {self.topic}")

    async def _disconnect(self) -> None:
        ws, self._ws = self._ws, None
        http, self._http = self._http, None
        if ws is not None and not ws.closed:
            await ws.close()
        if http is not None:
            await http.close()

    async def handle_frame(self, frame: dict[str, Any]) -> None:
        if frame.get("topic") != self.topic:
            return

        event = frame.get("event")
        payload = frame.get("payload") or {}
        if event == "phx_reply":
            if payload.get("status") == "ok":
                self._joined = True
            elif payload.get("status") == "error":
                logger.error(f"Realtime join rejected for {self.topic}: {payload.get('response')}")
                self._rejected = True
        elif event == "phx_error":
            logger.error(f"Realtime channel error on {self.topic}: {payload}")
            self._rejected = True
        elif event == "postgres_changes":
            data = payload.get("data") or {}
            if data.get("type") == "INSERT" and data.get("record"):
                await self.on_event(data["record"])

    async def _run(self) -> None:
        failures = 0
        while not self._closed:
            if self._ws is None:
                try:
                    await self._connect()
                except PlatformError as e:
                    logger.warning(str(e))
                    failures += 1
                    if not await self._wait_before_retry(failures):
                        return
                    continue

            await self._pump(self._ws)
            await self._disconnect()
            if self._closed:
                return

            failures = 0 if self._joined and not self._rejected else failures + 1
            if not await self._wait_before_retry(max(failures, 1)):
                return

    async def _wait_before_retry(self, failures: int) -> bool:
        if failures > self.max_reconnects:
            logger.error(f"Realtime feed {self.topic} lost after {failures - 1} reconnect attempts")
            self._closed = True
            return False
        delay = min(self.max_backoff, self.backoff * 2 ** (failures - 1))
        logger.warning(f"Realtime feed {self.topic} dropped, reconnecting in {delay:.1f}s")
        await asyncio.sleep(delay)
        return not self._closed

    async def _pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
        try:
            await self._read_loop(ws)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not self._closed and not self._rejected:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    await self.handle_frame(msg.json())
                except Exception:
                    logger.exception(f"Realtime handler on {self.topic} failed")
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.ERROR,
            ):
                if not self._closed:
                    logger.warning(f"Realtime socket for {self.topic} closed by server")
                return

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.heartbeat)
            try:
                await ws.send_json(
                    {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}
                )
            except (aiohttp.ClientError, ConnectionResetError) as e:
                logger.debug(f"Heartbeat for {self.topic} failed: {e}")
                return

    async def close(self) -> None:
        self._closed = True

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception(f"Realtime task for {self.topic} ended with an error")

        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.send_json(
                    {"topic": self.topic, "event": "phx_leave", "payload": {}, "ref": str(next(self._refs))}
                )
            except (aiohttp.ClientError, ConnectionResetError) as e:
                logger.debug(f"Could not send leave for {self.topic}: {e}")
        await self._disconnect()
        logger.debug(f"Left {self.topic}")
