"""Domain models for accounts, channels and messages.

These are the values the sync core passes around. They are frozen: every
state transition produces a new instance via ``model_copy`` so that store
mutations stay pure functions of (current list, incoming fact).

Message content is an explicit tagged variant. Rows written before the tag
existed carry only a string; ``classify_legacy_content`` turns those into a
variant once, on read, so nothing downstream has to inspect strings.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROVISIONAL_PREFIX = "local-"
UNKNOWN_DISPLAY_NAME = "Unknown"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_provisional_id() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid4().hex}"


def is_provisional_id(message_id: str) -> bool:
    return message_id.startswith(PROVISIONAL_PREFIX)


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = UNKNOWN_DISPLAY_NAME
    avatar_url: Optional[str] = None


class Identity(BaseModel):
    """What the session provider yields once a user is authenticated."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_account(self) -> Account:
        return Account(
            id=self.account_id,
            display_name=self.display_name or UNKNOWN_DISPLAY_NAME,
            avatar_url=self.avatar_url,
        )


class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str

    def summary_text(self) -> str:
        return self.value


class AttachmentContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["attachment"] = "attachment"
    url: str
    mime_hint: Optional[str] = None

    def summary_text(self) -> str:
        return self.url


MessageContent = Annotated[Union[TextContent, AttachmentContent], Field(discriminator="kind")]


def classify_legacy_content(raw: str) -> TextContent | AttachmentContent:
    """Best-effort tag for untagged rows: an http(s) URL ending in an image extension."""
    parsed = urlparse(raw.strip())
    if parsed.scheme in ("http", "https") and parsed.netloc:
        path = parsed.path.lower()
        if path.endswith(IMAGE_EXTENSIONS):
            ext = path.rsplit(".", 1)[-1]
            hint = "image/svg+xml" if ext == "svg" else f"image/{'jpeg' if ext == 'jpg' else ext}"
            return AttachmentContent(url=raw.strip(), mime_hint=hint)
    return TextContent(value=raw)


class Membership(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    profile: Optional[Account] = None


class Channel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    last_message_text: Optional[str] = None
    last_message_at: Optional[datetime] = None
    members: list[Membership] = Field(default_factory=list)

    @field_validator("created_at", "last_message_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def member_ids(self) -> set[str]:
        return {m.user_id for m in self.members}

    def is_direct_between(self, account_id: str, other_id: str) -> bool:
        ids = [m.user_id for m in self.members if m.user_id]
        return len(ids) == 2 and set(ids) == {account_id, other_id}


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    channel_id: str
    sender_id: str
    content: MessageContent
    created_at: datetime
    sender_profile: Optional[Account] = None
    client_id: Optional[str] = None

    @field_validator("created_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_provisional(self) -> bool:
        return is_provisional_id(self.id)


class InsertAck(BaseModel):
    """What the platform hands back for a persisted message."""

    id: str
    created_at: datetime
    client_id: Optional[str] = None

    @field_validator("created_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class OutgoingFile(BaseModel):
    filename: str
    data: bytes
    mime_type: Optional[str] = None


# --- Row mapping (platform payloads -> domain models) ---

def account_from_profile_row(row: dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        display_name=row.get("full_name") or UNKNOWN_DISPLAY_NAME,
        avatar_url=row.get("avatar_url") or None,
    )


def content_from_row(row: dict[str, Any]) -> TextContent | AttachmentContent:
    kind = row.get("kind")
    raw = row.get("content") or ""
    if kind == "attachment":
        return AttachmentContent(url=raw, mime_hint=row.get("mime_hint"))
    if kind == "text":
        return TextContent(value=raw)
    return classify_legacy_content(raw)


def content_to_row(content: TextContent | AttachmentContent) -> dict[str, Any]:
    if isinstance(content, AttachmentContent):
        return {"content": content.url, "kind": "attachment", "mime_hint": content.mime_hint}
    return {"content": content.value, "kind": "text", "mime_hint": None}


def message_from_row(row: dict[str, Any], profile: Optional[Account] = None) -> Message:
    embedded = row.get("profiles")
    if profile is None and embedded:
        profile = account_from_profile_row(embedded)
    return Message(
        id=str(row["id"]),
        channel_id=str(row["channel_id"]),
        sender_id=str(row["sender_id"]),
        content=content_from_row(row),
        created_at=row["created_at"],
        sender_profile=profile,
        client_id=row.get("client_id"),
    )


def channel_from_row(row: dict[str, Any]) -> Channel:
    members = [
        Membership(
            user_id=str(member["user_id"]),
            profile=account_from_profile_row(member["profiles"]) if member.get("profiles") else None,
        )
        for member in row.get("members") or []
    ]
    return Channel(
        id=str(row["id"]),
        created_at=row["created_at"],
        last_message_text=row.get("last_message"),
        last_message_at=row.get("last_message_at"),
        members=members,
    )
