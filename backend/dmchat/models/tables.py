"""Tables backing the local development platform."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel


def _uuid() -> str:
    return str(uuid4())


class Profile(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    full_name: Optional[str] = Field(default=None, index=True)
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    # Local sessions authenticate with this token instead of an OAuth provider
    access_token: Optional[str] = Field(default=None, index=True)


class ChannelRecord(SQLModel, table=True):
    __tablename__ = "channels"

    id: str = Field(default_factory=_uuid, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None


class ChannelMember(SQLModel, table=True):
    __tablename__ = "channel_members"

    channel_id: str = Field(foreign_key="channels.id", primary_key=True)
    user_id: str = Field(foreign_key="profile.id", primary_key=True)


class MessageRecord(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(default_factory=_uuid, primary_key=True)
    channel_id: str = Field(foreign_key="channels.id", index=True)
    sender_id: str = Field(foreign_key="profile.id")
    content: str
    kind: str = Field(default="text")  # text | attachment
    mime_hint: Optional[str] = None
    client_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
