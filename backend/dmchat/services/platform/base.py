"""Abstract backing platform interface. All platforms must implement this.

The platform supplies the database, object storage, identity lookup and the
insert change feed. Every method is a suspension point; failures surface as
``PlatformError``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from dmchat.models.chat import Account, Channel, Identity, InsertAck, Message, MessageContent

RowHandler = Callable[[dict[str, Any]], Awaitable[None]]


class PlatformError(Exception):
    pass


class UploadError(PlatformError):
    pass


class Subscription(ABC):
    """Handle for a live feed. Closing is idempotent."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class BasePlatform(ABC):
    def bind(self, access_token: str) -> "BasePlatform":
        """Return a platform acting on behalf of the given session token."""
        return self

    @abstractmethod
    async def resolve_identity(self, access_token: str) -> Optional[Identity]:
        """Look up the session behind an access token. None if it is not valid."""
        ...

    # --- Queries ---

    @abstractmethod
    async def list_memberships_for_account(self, account_id: str) -> list[str]:
        """Channel ids the account is a member of."""
        ...

    @abstractmethod
    async def list_channels_with_members(self, channel_ids: list[str]) -> list[Channel]:
        """Channels ordered by last message time descending, channels without messages last."""
        ...

    @abstractmethod
    async def list_messages(self, channel_id: str) -> list[Message]:
        """Messages of a channel ordered by creation time ascending."""
        ...

    @abstractmethod
    async def get_profile(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def search_accounts_by_name(
        self, query: str, exclude_account_id: str, limit: int = 20
    ) -> list[Account]:
        ...

    # --- Commands ---

    @abstractmethod
    async def insert_message(
        self, channel_id: str, sender_id: str, content: MessageContent, client_id: Optional[str] = None
    ) -> InsertAck:
        ...

    @abstractmethod
    async def update_channel_summary(
        self, channel_id: str, last_message_text: str, last_message_at: datetime
    ) -> None:
        ...

    @abstractmethod
    async def create_channel(self) -> Channel:
        ...

    @abstractmethod
    async def add_memberships(self, channel_id: str, account_ids: list[str]) -> None:
        ...

    @abstractmethod
    async def delete_channel(self, channel_id: str) -> None:
        """Delete a channel and its memberships. Deleting a missing channel succeeds."""
        ...

    @abstractmethod
    async def upload_file(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store bytes under ``path`` and return a publicly resolvable URL."""
        ...

    # --- Live feeds ---

    @abstractmethod
    async def subscribe_to_inserts(self, channel_id: str, on_event: RowHandler) -> Subscription:
        """Deliver raw inserted message rows for one channel. Profiles are not joined."""
        ...

    @abstractmethod
    async def subscribe_to_memberships(self, account_id: str, on_event: RowHandler) -> Subscription:
        """Deliver raw membership rows inserted for the account."""
        ...
