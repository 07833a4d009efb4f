"""Conversation store: the open channel's ordered messages and the account's channel list.

Every mutation is a pure function of (current list, incoming fact) applied in
one synchronous step, so completions interleaving on the event loop cannot
lose updates. The store only ever holds messages of the open channel; facts
about any other channel are ignored.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from dmchat.models.chat import Channel, Message, as_utc

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]

MESSAGES = "messages"
CHANNELS = "channels"


class MergeOutcome(str, Enum):
    DUPLICATE = "duplicate"
    PROMOTED = "promoted"
    APPENDED = "appended"
    IGNORED = "ignored"


# --- Pure list transitions ---

def order_messages(messages: list[Message]) -> list[Message]:
    # sorted() is stable, so ties keep arrival order
    return sorted(messages, key=lambda m: m.created_at)


def order_channels(channels: list[Channel]) -> list[Channel]:
    """Most recent activity first, channels without messages last."""
    return sorted(
        channels,
        key=lambda c: (c.last_message_at is None, -c.last_message_at.timestamp() if c.last_message_at else 0.0),
    )


def same_minute(a: datetime, b: datetime) -> bool:
    a, b = as_utc(a), as_utc(b)
    return a.replace(second=0, microsecond=0) == b.replace(second=0, microsecond=0)


def find_provisional_match(messages: list[Message], incoming: Message) -> Optional[int]:
    """Index of the provisional entry that stands for ``incoming``, if any.

    Rows carrying a client id match exactly on it. Rows without one fall back
    to same sender, same content and same UTC minute, earliest candidate first.
    """
    if incoming.client_id:
        for i, message in enumerate(messages):
            if message.is_provisional and message.id == incoming.client_id:
                return i
        return None

    for i, message in enumerate(messages):
        if (
            message.is_provisional
            and message.sender_id == incoming.sender_id
            and message.content == incoming.content
            and same_minute(message.created_at, incoming.created_at)
        ):
            return i
    return None


def promote_entry(
    messages: list[Message], provisional_id: str, server_id: str, server_created_at: datetime
) -> Optional[list[Message]]:
    """Promote in place. None when there is nothing to promote."""
    index = next((i for i, m in enumerate(messages) if m.id == provisional_id), None)
    if index is None:
        return None

    if any(m.id == server_id for m in messages):
        # The authoritative row already arrived as its own entry
        return [m for m in messages if m.id != provisional_id]

    updated = list(messages)
    updated[index] = messages[index].model_copy(
        update={"id": server_id, "created_at": as_utc(server_created_at), "client_id": provisional_id}
    )
    return order_messages(updated)


def merge_message(messages: list[Message], incoming: Message) -> tuple[list[Message], MergeOutcome]:
    if any(m.id == incoming.id for m in messages):
        return messages, MergeOutcome.DUPLICATE

    index = find_provisional_match(messages, incoming)
    if index is not None:
        existing = messages[index]
        updated = list(messages)
        updated[index] = existing.model_copy(
            update={
                "id": incoming.id,
                "created_at": incoming.created_at,
                "client_id": existing.id,
                "sender_profile": incoming.sender_profile or existing.sender_profile,
            }
        )
        return order_messages(updated), MergeOutcome.PROMOTED

    return order_messages([*messages, incoming]), MergeOutcome.APPENDED


def apply_channel_summary(
    channels: list[Channel], channel_id: str, text: str, at: datetime
) -> Optional[list[Channel]]:
    """New ordered list with the summary applied; None if it would move the summary backwards."""
    at = as_utc(at)
    current = next((c for c in channels if c.id == channel_id), None)
    if current is None:
        updated = [*channels, Channel(id=channel_id, created_at=at, last_message_text=text, last_message_at=at)]
        return order_channels(updated)

    if current.last_message_at is not None and current.last_message_at > at:
        return None

    replaced = current.model_copy(update={"last_message_text": text, "last_message_at": at})
    return order_channels([replaced if c.id == channel_id else c for c in channels])


# --- Store ---

class ConversationStore:
    def __init__(self) -> None:
        self.channel_id: Optional[str] = None
        self._messages: list[Message] = []
        self._channels: list[Channel] = []
        self._listeners: list[Listener] = []

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, topic: str) -> None:
        for listener in list(self._listeners):
            listener(topic)

    def _set_messages(self, messages: list[Message]) -> None:
        self._messages = messages
        self._emit(MESSAGES)

    def _set_channels(self, channels: list[Channel]) -> None:
        self._channels = channels
        self._emit(CHANNELS)

    # --- Messages ---

    def select_channel(self, channel_id: Optional[str]) -> None:
        self.channel_id = channel_id
        self._set_messages([])

    def replace_messages(self, channel_id: str, messages: list[Message]) -> bool:
        if channel_id != self.channel_id:
            logger.debug(f"Dropping stale reload for channel {channel_id}")
            return False
        self._set_messages(order_messages([m for m in messages if m.channel_id == channel_id]))
        return True

    def append_provisional(self, message: Message) -> bool:
        if message.channel_id != self.channel_id:
            return False
        self._set_messages(order_messages([*self._messages, message]))
        return True

    def promote(self, provisional_id: str, server_id: str, server_created_at: datetime) -> bool:
        updated = promote_entry(self._messages, provisional_id, server_id, server_created_at)
        if updated is None:
            return False
        self._set_messages(updated)
        return True

    def withdraw(self, provisional_id: str) -> bool:
        remaining = [m for m in self._messages if m.id != provisional_id]
        if len(remaining) == len(self._messages):
            return False
        self._set_messages(remaining)
        return True

    def merge_incoming(self, message: Message) -> MergeOutcome:
        if message.channel_id != self.channel_id:
            return MergeOutcome.IGNORED
        updated, outcome = merge_message(self._messages, message)
        if outcome is not MergeOutcome.DUPLICATE:
            self._set_messages(updated)
        return outcome

    def newest_message(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def find_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    # --- Channels ---

    def replace_channels(self, channels: list[Channel]) -> None:
        self._set_channels(order_channels(channels))

    def add_channel(self, channel: Channel) -> None:
        others = [c for c in self._channels if c.id != channel.id]
        self._set_channels(order_channels([*others, channel]))

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        return next((c for c in self._channels if c.id == channel_id), None)

    def upsert_channel_summary(self, channel_id: str, last_message_text: str, last_message_at: datetime) -> bool:
        updated = apply_channel_summary(self._channels, channel_id, last_message_text, last_message_at)
        if updated is None:
            return False
        self._set_channels(updated)
        return True
