"""REST API for the signed-in account's channels and their history."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from dmchat.api.deps import current_session, session_platform
from dmchat.core.session import SessionContext
from dmchat.services.channels import ChannelCreationError, ChannelDirectory
from dmchat.services.platform.base import BasePlatform, PlatformError
from dmchat.services.sync.store import ConversationStore

router = APIRouter()
logger = logging.getLogger(__name__)


class DirectChannelRequest(BaseModel):
    account_id: str


@router.get("/")
async def list_channels(
    session: SessionContext = Depends(current_session),
    platform: BasePlatform = Depends(session_platform),
):
    directory = ChannelDirectory(platform, ConversationStore(), session)
    channels = await directory.fetch_channels()
    return [c.model_dump(mode="json") for c in channels]


@router.post("/direct")
async def open_direct_channel(
    body: DirectChannelRequest,
    session: SessionContext = Depends(current_session),
    platform: BasePlatform = Depends(session_platform),
):
    if body.account_id == session.account_id:
        raise HTTPException(status_code=400, detail="Cannot open a direct channel with yourself")

    try:
        other = await platform.get_profile(body.account_id)
    except PlatformError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if other is None:
        raise HTTPException(status_code=404, detail="Account not found")

    store = ConversationStore()
    directory = ChannelDirectory(platform, store, session)
    store.replace_channels(await directory.fetch_channels())

    existing = directory.find_direct_channel(other.id)
    if existing:
        return {"created": False, "channel": existing.model_dump(mode="json")}

    try:
        channel = await directory.create_direct_channel(session.require_account(), other)
    except ChannelCreationError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"created": True, "channel": channel.model_dump(mode="json")}


@router.get("/{channel_id}/messages")
async def list_messages(
    channel_id: str,
    session: SessionContext = Depends(current_session),
    platform: BasePlatform = Depends(session_platform),
):
    try:
        member_of = await platform.list_memberships_for_account(session.account_id)
    except PlatformError as e:
        logger.error(f"Error fetching memberships for {session.account_id}: {e}")
        raise HTTPException(status_code=502, detail="Could not verify channel membership")

    if channel_id not in member_of:
        logger.debug(f"Account {session.account_id} is not a member of channel {channel_id}")
        raise HTTPException(status_code=404, detail="Channel not found")

    try:
        messages = await platform.list_messages(channel_id)
    except PlatformError as e:
        logger.error(f"Error fetching messages for channel {channel_id}: {e}")
        messages = []
    return [m.model_dump(mode="json") for m in messages]
