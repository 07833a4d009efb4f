"""Send pipeline: optimistic entry, persist, then promote or withdraw.

The caller gets nothing back; progress is visible only through the store.
A failed upload aborts before any provisional entry exists. A failed insert
withdraws the provisional entry. Nothing is retried.
"""

import logging
from typing import Optional, Union
from uuid import uuid4

from dmchat.core.sandbox import sanitize_filename
from dmchat.core.session import SessionContext
from dmchat.models.chat import (
    AttachmentContent,
    Message,
    OutgoingFile,
    TextContent,
    new_provisional_id,
    utcnow,
)
from dmchat.services.notify import Notify, log_notification
from dmchat.services.platform.base import BasePlatform, PlatformError
from dmchat.services.sync.store import ConversationStore
from dmchat.services.sync.summary import ChannelSummaryUpdater

logger = logging.getLogger(__name__)

ContentSource = Union[str, OutgoingFile]


def attachment_path(channel_id: str, filename: str) -> str:
    """Collision-resistant object path for an uploaded attachment."""
    return f"{channel_id}/{uuid4().hex}-{sanitize_filename(filename)}"


class SendPipeline:
    def __init__(
        self,
        platform: BasePlatform,
        store: ConversationStore,
        session: SessionContext,
        summaries: ChannelSummaryUpdater,
        notify: Notify = log_notification,
    ):
        self.platform = platform
        self.store = store
        self.session = session
        self.summaries = summaries
        self.notify = notify

    async def send(self, source: ContentSource, channel_id: Optional[str], sender_id: Optional[str]) -> None:
        if not channel_id or not sender_id:
            logger.debug("Cannot send message: no channel or no sender")
            return

        if isinstance(source, OutgoingFile):
            if not source.data:
                return
            content = await self._upload(source, channel_id)
            if content is None:
                return
        else:
            if not source or not source.strip():
                return
            content = TextContent(value=source.strip())

        provisional_id = new_provisional_id()
        self.store.append_provisional(
            Message(
                id=provisional_id,
                channel_id=channel_id,
                sender_id=sender_id,
                content=content,
                created_at=utcnow(),
                sender_profile=self.session.account if self.session.account_id == sender_id else None,
            )
        )

        try:
            ack = await self.platform.insert_message(channel_id, sender_id, content, client_id=provisional_id)
        except PlatformError as e:
            logger.error(f"Error inserting message into channel {channel_id}: {e}")
            self.store.withdraw(provisional_id)
            await self.notify(f"Failed to send message: {e}")
            return

        self.store.promote(provisional_id, ack.id, ack.created_at)
        self.summaries.on_channel_advanced(channel_id, content.summary_text(), ack.created_at)

    async def _upload(self, source: OutgoingFile, channel_id: str) -> Optional[AttachmentContent]:
        path = attachment_path(channel_id, source.filename)
        try:
            url = await self.platform.upload_file(path, source.data, source.mime_type)
        except PlatformError as e:
            logger.error(f"Upload of {source.filename} failed: {e}")
            await self.notify(f"Failed to upload {source.filename}: {e}")
            return None
        return AttachmentContent(url=url, mime_hint=source.mime_type)

    async def send_text(self, text: str, channel_id: Optional[str] = None) -> None:
        await self.send(text, channel_id or self.store.channel_id, self.session.account_id)

    async def send_file(self, file: OutgoingFile, channel_id: Optional[str] = None) -> None:
        await self.send(file, channel_id or self.store.channel_id, self.session.account_id)
