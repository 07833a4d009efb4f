"""Per-session chat client wiring the store, send pipeline, live ingest and channel directory."""

import logging
from typing import Optional

from dmchat.core.session import SessionContext
from dmchat.models.chat import Account, Channel, OutgoingFile
from dmchat.services.channels import ChannelDirectory
from dmchat.services.notify import Notify, log_notification
from dmchat.services.platform.base import BasePlatform, PlatformError
from dmchat.services.sync.ingest import LiveIngest
from dmchat.services.sync.send import SendPipeline
from dmchat.services.sync.store import ConversationStore, merge_message
from dmchat.services.sync.summary import ChannelSummaryUpdater

logger = logging.getLogger(__name__)


class ChatClient:
    def __init__(self, platform: BasePlatform, session: SessionContext, notify: Notify = log_notification):
        self.platform = platform
        self.session = session
        self.notify = notify
        self.store = ConversationStore()
        self.summaries = ChannelSummaryUpdater(platform, self.store)
        self.pipeline = SendPipeline(platform, self.store, session, self.summaries, notify)
        self.ingest = LiveIngest(platform, self.store, session, self.summaries)
        self.directory = ChannelDirectory(platform, self.store, session, notify)

    async def start(self) -> None:
        await self.directory.load_channels()
        await self.directory.watch_memberships()

    async def refresh_channels(self) -> list[Channel]:
        return await self.directory.load_channels()

    async def is_member(self, channel_id: str) -> bool:
        if self.store.get_channel(channel_id) is not None:
            return True
        account_id = self.session.account_id
        if not account_id:
            return False
        try:
            return channel_id in await self.platform.list_memberships_for_account(account_id)
        except PlatformError as e:
            logger.error(f"Error checking membership of channel {channel_id}: {e}")
            return False

    async def open_channel(self, channel_id: Optional[str]) -> bool:
        """Switch the open channel: reset messages, reload history, re-attach the live feed.

        Only channels the signed-in account belongs to can be opened. Anything
        else leaves no channel selected and returns False.
        """
        await self.ingest.detach()
        if channel_id and not await self.is_member(channel_id):
            logger.warning(f"Account {self.session.account_id} is not a member of channel {channel_id}")
            self.store.select_channel(None)
            await self.notify("Channel not found")
            return False

        self.store.select_channel(channel_id)
        if not channel_id:
            return True

        # Attach before loading so rows inserted during the load are not missed;
        # the merge rules absorb any overlap with the loaded history
        await self.ingest.attach(channel_id)
        try:
            messages = await self.platform.list_messages(channel_id)
        except PlatformError as e:
            logger.error(f"Error fetching messages for channel {channel_id}: {e}")
            messages = []

        if self.store.channel_id != channel_id:
            return False
        loaded_client_ids = {m.client_id for m in messages if m.client_id}
        for message in self.store.messages:
            if message.id not in loaded_client_ids:
                messages, _ = merge_message(messages, message)
        self.store.replace_messages(channel_id, messages)
        return True

    async def send_text(self, text: str) -> None:
        await self.pipeline.send_text(text)

    async def send_file(self, file: OutgoingFile) -> None:
        await self.pipeline.send_file(file)

    async def search(self, query: str) -> list[Account]:
        return await self.directory.search_accounts(query)

    async def open_direct_channel(self, other: Account) -> Optional[Channel]:
        channel = await self.directory.open_direct_channel(other)
        if channel is not None:
            await self.open_channel(channel.id)
        return channel

    async def close(self) -> None:
        await self.ingest.detach()
        await self.directory.close()
        await self.summaries.close()
        self.store.select_channel(None)
