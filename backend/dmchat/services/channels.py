"""Channel list loading, direct-channel lookup/creation and account search."""

import logging
from typing import Any, Optional

from dmchat.core.config import settings
from dmchat.core.session import SessionContext
from dmchat.models.chat import Account, Channel, Membership
from dmchat.services.notify import Notify, log_notification
from dmchat.services.platform.base import BasePlatform, PlatformError, Subscription
from dmchat.services.sync.store import ConversationStore

logger = logging.getLogger(__name__)


class ChannelCreationError(Exception):
    pass


class ChannelDirectory:
    def __init__(
        self,
        platform: BasePlatform,
        store: ConversationStore,
        session: SessionContext,
        notify: Notify = log_notification,
    ):
        self.platform = platform
        self.store = store
        self.session = session
        self.notify = notify
        self._membership_watch: Optional[Subscription] = None

    async def fetch_channels(self) -> list[Channel]:
        """Channels of the signed-in account. Background load: failures degrade to []."""
        account_id = self.session.account_id
        if not account_id:
            return []

        try:
            channel_ids = await self.platform.list_memberships_for_account(account_id)
            if not channel_ids:
                return []
            return await self.platform.list_channels_with_members(channel_ids)
        except PlatformError as e:
            logger.error(f"Error fetching channels for account {account_id}: {e}")
            return []

    async def load_channels(self) -> list[Channel]:
        channels = await self.fetch_channels()
        self.store.replace_channels(channels)
        return channels

    def find_direct_channel(self, other_id: str) -> Optional[Channel]:
        account_id = self.session.account_id
        if not account_id:
            return None
        return next((c for c in self.store.channels if c.is_direct_between(account_id, other_id)), None)

    async def open_direct_channel(self, other: Account) -> Optional[Channel]:
        """Existing direct channel with ``other``, or a newly created one.

        Returns None (after notifying the user) when creation fails.
        """
        account = self.session.account
        if account is None:
            logger.debug("Current account not loaded yet, cannot open channel")
            return None

        existing = self.find_direct_channel(other.id)
        if existing:
            logger.debug(f"Existing channel found: {existing.id}")
            return existing

        try:
            channel = await self.create_direct_channel(account, other)
        except ChannelCreationError as e:
            await self.notify(str(e))
            return None

        self.store.add_channel(channel)
        return channel

    async def create_direct_channel(self, account: Account, other: Account) -> Channel:
        try:
            created = await self.platform.create_channel()
        except PlatformError as e:
            logger.error(f"Error creating new channel entry: {e}")
            raise ChannelCreationError(f"Failed to create new channel: {e}") from e

        try:
            await self.platform.add_memberships(created.id, [account.id, other.id])
        except PlatformError as e:
            logger.error(f"Error adding members to new channel {created.id}: {e}")
            await self._compensate(created.id)
            raise ChannelCreationError(f"Failed to add members to channel: {e}") from e

        logger.info(f"Created direct channel {created.id} for {account.id} and {other.id}")
        return created.model_copy(
            update={"members": [Membership(user_id=account.id, profile=account), Membership(user_id=other.id, profile=other)]}
        )

    async def _compensate(self, channel_id: str) -> None:
        """Delete the orphaned channel. Deletion is idempotent, so it is safe to repeat."""
        attempts = max(1, settings.compensation_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self.platform.delete_channel(channel_id)
                return
            except PlatformError as e:
                logger.warning(f"Cleanup of channel {channel_id} failed (attempt {attempt}/{attempts}): {e}")
        logger.error(f"Channel {channel_id} left orphaned after {attempts} cleanup attempts")

    async def search_accounts(self, query: str) -> list[Account]:
        account_id = self.session.account_id
        if not query or not query.strip() or not account_id:
            return []

        try:
            results = await self.platform.search_accounts_by_name(
                query.strip(), exclude_account_id=account_id, limit=settings.search_limit
            )
        except PlatformError as e:
            logger.error(f"Error searching accounts: {e}")
            await self.notify(f"Search failed: {e}")
            return []

        return [a for a in results if a.id != account_id]

    # --- Membership watch ---

    async def watch_memberships(self) -> None:
        account_id = self.session.account_id
        if not account_id or self._membership_watch is not None:
            return

        async def on_event(row: dict[str, Any]) -> None:
            logger.debug(f"Added to channel {row.get('channel_id')}, reloading channel list")
            await self.load_channels()

        try:
            self._membership_watch = await self.platform.subscribe_to_memberships(account_id, on_event)
        except PlatformError as e:
            logger.error(f"Could not watch memberships for {account_id}: {e}")

    async def close(self) -> None:
        watch, self._membership_watch = self._membership_watch, None
        if watch is not None:
            await watch.close()
