"""Local development platform: SQLite via sqlmodel, files on disk, in-process change feed.

Stands in for the hosted backend during development and tests. Inserted rows
are published to subscribers as raw dicts shaped like the hosted feed's
payloads, and delivery happens in a separate task, never inline with the
insert that caused it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import nulls_last
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from dmchat.core.database import engine as default_engine
from dmchat.core.sandbox import StorageError, resolve_storage_path, uploads_root
from dmchat.models.chat import (
    Account,
    Channel,
    Identity,
    InsertAck,
    Membership,
    Message,
    MessageContent,
    UNKNOWN_DISPLAY_NAME,
    as_utc,
    content_to_row,
    message_from_row,
)
from dmchat.models.tables import ChannelMember, ChannelRecord, MessageRecord, Profile
from dmchat.services.platform.base import BasePlatform, PlatformError, RowHandler, Subscription, UploadError

logger = logging.getLogger(__name__)


def _profile_to_account(profile: Profile) -> Account:
    return Account(
        id=profile.id,
        display_name=profile.full_name or UNKNOWN_DISPLAY_NAME,
        avatar_url=profile.avatar_url,
    )


def _message_row(record: MessageRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "channel_id": record.channel_id,
        "sender_id": record.sender_id,
        "content": record.content,
        "kind": record.kind,
        "mime_hint": record.mime_hint,
        "client_id": record.client_id,
        "created_at": as_utc(record.created_at).isoformat(),
    }


class _LocalSubscription(Subscription):
    def __init__(self, platform: "LocalPlatform", topic: str, on_event: RowHandler):
        self._platform = platform
        self.topic = topic
        self.on_event = on_event
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._platform._unsubscribe(self)


class LocalPlatform(BasePlatform):
    def __init__(self, engine=None, storage_root: Path | None = None, public_base_url: str = "/api/files/raw"):
        self._engine = engine or default_engine
        self._storage_root = storage_root
        self._public_base_url = public_base_url.rstrip("/")
        self._subscribers: dict[str, list[_LocalSubscription]] = {}
        self._tasks: set[asyncio.Task] = set()

    # --- Change feed ---

    def _unsubscribe(self, subscription: _LocalSubscription) -> None:
        subscribers = self._subscribers.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.topic, None)

    def _subscribe(self, topic: str, on_event: RowHandler) -> Subscription:
        subscription = _LocalSubscription(self, topic, on_event)
        self._subscribers.setdefault(topic, []).append(subscription)
        logger.debug(f"Subscribed to {topic}")
        return subscription

    def _publish(self, topic: str, row: dict[str, Any]) -> None:
        for subscription in list(self._subscribers.get(topic, [])):
            task = asyncio.create_task(self._deliver(subscription, row))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, subscription: _LocalSubscription, row: dict[str, Any]) -> None:
        if subscription.closed:
            return
        try:
            await subscription.on_event(row)
        except Exception:
            logger.exception(f"Subscriber on {subscription.topic} failed")

    async def subscribe_to_inserts(self, channel_id: str, on_event: RowHandler) -> Subscription:
        return self._subscribe(f"messages:{channel_id}", on_event)

    async def subscribe_to_memberships(self, account_id: str, on_event: RowHandler) -> Subscription:
        return self._subscribe(f"channel_members:{account_id}", on_event)

    # --- Identity ---

    async def resolve_identity(self, access_token: str) -> Optional[Identity]:
        if not access_token:
            return None
        with Session(self._engine) as session:
            profile = session.exec(select(Profile).where(Profile.access_token == access_token)).first()
            if not profile:
                return None
            return Identity(
                account_id=profile.id,
                email=profile.email,
                display_name=profile.full_name,
                avatar_url=profile.avatar_url,
            )

    # --- Queries ---

    async def list_memberships_for_account(self, account_id: str) -> list[str]:
        try:
            with Session(self._engine) as session:
                rows = session.exec(
                    select(ChannelMember.channel_id).where(ChannelMember.user_id == account_id)
                ).all()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to list memberships: {e}") from e
        return list(rows)

    async def list_channels_with_members(self, channel_ids: list[str]) -> list[Channel]:
        if not channel_ids:
            return []
        try:
            with Session(self._engine) as session:
                records = session.exec(
                    select(ChannelRecord)
                    .where(col(ChannelRecord.id).in_(channel_ids))
                    .order_by(nulls_last(col(ChannelRecord.last_message_at).desc()))
                ).all()
                members = session.exec(
                    select(ChannelMember, Profile)
                    .join(Profile, col(Profile.id) == ChannelMember.user_id, isouter=True)
                    .where(col(ChannelMember.channel_id).in_(channel_ids))
                ).all()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to list channels: {e}") from e

        by_channel: dict[str, list[Membership]] = {}
        for member, profile in members:
            by_channel.setdefault(member.channel_id, []).append(
                Membership(user_id=member.user_id, profile=_profile_to_account(profile) if profile else None)
            )

        return [
            Channel(
                id=record.id,
                created_at=record.created_at,
                last_message_text=record.last_message,
                last_message_at=record.last_message_at,
                members=by_channel.get(record.id, []),
            )
            for record in records
        ]

    async def list_messages(self, channel_id: str) -> list[Message]:
        try:
            with Session(self._engine) as session:
                rows = session.exec(
                    select(MessageRecord, Profile)
                    .join(Profile, col(Profile.id) == MessageRecord.sender_id, isouter=True)
                    .where(MessageRecord.channel_id == channel_id)
                    .order_by(col(MessageRecord.created_at))
                ).all()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to list messages for channel {channel_id}: {e}") from e
        return [
            message_from_row(_message_row(record), _profile_to_account(profile) if profile else None)
            for record, profile in rows
        ]

    async def get_profile(self, account_id: str) -> Optional[Account]:
        try:
            with Session(self._engine) as session:
                profile = session.get(Profile, account_id)
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to fetch profile {account_id}: {e}") from e
        return _profile_to_account(profile) if profile else None

    async def search_accounts_by_name(
        self, query: str, exclude_account_id: str, limit: int = 20
    ) -> list[Account]:
        try:
            with Session(self._engine) as session:
                profiles = session.exec(
                    select(Profile)
                    .where(col(Profile.full_name).ilike(f"%{query}%"))
                    .where(Profile.id != exclude_account_id)
                    .limit(limit)
                ).all()
        except SQLAlchemyError as e:
            raise PlatformError(f"Account search failed: {e}") from e
        return [_profile_to_account(p) for p in profiles]

    # --- Commands ---

    async def insert_message(
        self, channel_id: str, sender_id: str, content: MessageContent, client_id: Optional[str] = None
    ) -> InsertAck:
        try:
            with Session(self._engine) as session:
                if not session.get(ChannelRecord, channel_id):
                    raise PlatformError(f"Channel {channel_id} does not exist")
                record = MessageRecord(
                    channel_id=channel_id,
                    sender_id=sender_id,
                    client_id=client_id,
                    **content_to_row(content),
                )
                session.add(record)
                session.commit()
                session.refresh(record)
                row = _message_row(record)
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to insert message: {e}") from e

        self._publish(f"messages:{channel_id}", row)
        return InsertAck(id=row["id"], created_at=row["created_at"], client_id=client_id)

    async def update_channel_summary(
        self, channel_id: str, last_message_text: str, last_message_at: datetime
    ) -> None:
        try:
            with Session(self._engine) as session:
                record = session.get(ChannelRecord, channel_id)
                if not record:
                    raise PlatformError(f"Channel {channel_id} does not exist")
                record.last_message = last_message_text
                record.last_message_at = as_utc(last_message_at)
                session.add(record)
                session.commit()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to update channel {channel_id}: {e}") from e

    async def create_channel(self) -> Channel:
        try:
            with Session(self._engine) as session:
                record = ChannelRecord(created_at=datetime.now(timezone.utc))
                session.add(record)
                session.commit()
                session.refresh(record)
                return Channel(id=record.id, created_at=record.created_at)
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to create channel: {e}") from e

    async def add_memberships(self, channel_id: str, account_ids: list[str]) -> None:
        try:
            with Session(self._engine) as session:
                if not session.get(ChannelRecord, channel_id):
                    raise PlatformError(f"Channel {channel_id} does not exist")
                for account_id in account_ids:
                    if not session.get(Profile, account_id):
                        raise PlatformError(f"Account {account_id} does not exist")
                    session.add(ChannelMember(channel_id=channel_id, user_id=account_id))
                session.commit()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to add members to channel {channel_id}: {e}") from e

        for account_id in account_ids:
            self._publish(f"channel_members:{account_id}", {"channel_id": channel_id, "user_id": account_id})

    async def delete_channel(self, channel_id: str) -> None:
        try:
            with Session(self._engine) as session:
                for message in session.exec(select(MessageRecord).where(MessageRecord.channel_id == channel_id)).all():
                    session.delete(message)
                for member in session.exec(select(ChannelMember).where(ChannelMember.channel_id == channel_id)).all():
                    session.delete(member)
                record = session.get(ChannelRecord, channel_id)
                if record:
                    session.delete(record)
                session.commit()
        except SQLAlchemyError as e:
            raise PlatformError(f"Failed to delete channel {channel_id}: {e}") from e

    async def upload_file(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        try:
            target = resolve_storage_path(path, self._storage_root or uploads_root())
        except StorageError as e:
            raise UploadError(str(e)) from e

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise UploadError(f"Failed to store {path}: {e}") from e

        logger.debug(f"Stored {len(data)} bytes at {path}")
        return f"{self._public_base_url}/{path}"
