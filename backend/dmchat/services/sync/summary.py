"""Keeps each channel's last-message summary in step with the message stream."""

import asyncio
import logging
from datetime import datetime

from dmchat.services.platform.base import BasePlatform, PlatformError
from dmchat.services.sync.store import ConversationStore

logger = logging.getLogger(__name__)


class ChannelSummaryUpdater:
    def __init__(self, platform: BasePlatform, store: ConversationStore):
        self.platform = platform
        self.store = store
        self._pending: set[asyncio.Task] = set()

    def on_channel_advanced(self, channel_id: str, text: str, timestamp: datetime, persist: bool = True) -> None:
        """Apply the summary locally now; write it to the platform in the background."""
        applied = self.store.upsert_channel_summary(channel_id, text, timestamp)
        if not applied:
            logger.debug(f"Ignoring older summary for channel {channel_id}")
            return

        if persist:
            task = asyncio.create_task(self._persist(channel_id, text, timestamp))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _persist(self, channel_id: str, text: str, timestamp: datetime) -> None:
        try:
            await self.platform.update_channel_summary(channel_id, text, timestamp)
        except PlatformError as e:
            # Local summary stays; the next full channel reload reconciles it
            logger.error(f"Error updating channel {channel_id} last message: {e}")

    async def drain(self) -> None:
        """Wait for in-flight summary writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self.drain()
