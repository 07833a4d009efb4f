"""Live ingest: merge pushed message rows for the open channel into the store exactly once.

One subscription exists at a time, scoped to a single channel id. Attaching
to a new channel closes the previous subscription first, and rows that arrive
for a channel no longer attached are dropped.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from dmchat.core.session import SessionContext
from dmchat.models.chat import Account, Message, message_from_row
from dmchat.services.platform.base import BasePlatform, PlatformError, Subscription
from dmchat.services.sync.store import ConversationStore, MergeOutcome
from dmchat.services.sync.summary import ChannelSummaryUpdater

logger = logging.getLogger(__name__)


class LiveIngest:
    def __init__(
        self,
        platform: BasePlatform,
        store: ConversationStore,
        session: SessionContext,
        summaries: ChannelSummaryUpdater,
    ):
        self.platform = platform
        self.store = store
        self.session = session
        self.summaries = summaries
        self.channel_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._profiles: dict[str, Account] = {}

    async def attach(self, channel_id: str) -> None:
        await self.detach()
        self.channel_id = channel_id

        async def on_event(row: dict[str, Any]) -> None:
            if self.channel_id != channel_id:
                return
            await self.on_notified(row)

        try:
            subscription = await self.platform.subscribe_to_inserts(channel_id, on_event)
        except PlatformError as e:
            logger.error(f"Could not subscribe to channel {channel_id}: {e}")
            return

        if self.channel_id != channel_id:
            # Switched away while the subscription was being set up
            await subscription.close()
            return
        self._subscription = subscription

    async def detach(self) -> None:
        subscription, self._subscription = self._subscription, None
        self.channel_id = None
        if subscription is not None:
            await subscription.close()

    @property
    def attached(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    async def _sender_profile(self, sender_id: str) -> Optional[Account]:
        account = self.session.account
        if account is not None and account.id == sender_id:
            return account
        if sender_id in self._profiles:
            return self._profiles[sender_id]

        profile = await self.platform.get_profile(sender_id)
        if profile is not None:
            self._profiles[sender_id] = profile
        return profile

    async def on_notified(self, row: dict[str, Any]) -> MergeOutcome:
        try:
            message = message_from_row(row)
        except (KeyError, ValidationError) as e:
            logger.error(f"Malformed message notification {row!r}: {e}")
            return MergeOutcome.IGNORED

        if message.sender_profile is None:
            try:
                profile = await self._sender_profile(message.sender_id)
            except PlatformError as e:
                logger.error(f"Error fetching sender profile for message {message.id}: {e}")
                return MergeOutcome.IGNORED
            if profile is None:
                logger.error(f"No profile for sender {message.sender_id}; dropping message {message.id}")
                return MergeOutcome.IGNORED
            message = message.model_copy(update={"sender_profile": profile})

        return self.merge(message)

    def merge(self, message: Message) -> MergeOutcome:
        outcome = self.store.merge_incoming(message)
        if outcome in (MergeOutcome.PROMOTED, MergeOutcome.APPENDED):
            newest = self.store.newest_message()
            if newest is not None and newest.id == message.id:
                # The authoring client owns the backend summary write
                self.summaries.on_channel_advanced(
                    message.channel_id, message.content.summary_text(), message.created_at, persist=False
                )
        return outcome
