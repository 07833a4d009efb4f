from fastapi import APIRouter, Depends, HTTPException

from dmchat.api.deps import current_session, session_platform
from dmchat.core.session import SessionContext
from dmchat.services.channels import ChannelDirectory
from dmchat.services.platform.base import BasePlatform
from dmchat.services.sync.store import ConversationStore

router = APIRouter()


@router.get("/search")
async def search_users(
    q: str = "",
    session: SessionContext = Depends(current_session),
    platform: BasePlatform = Depends(session_platform),
):
    failures: list[str] = []

    async def collect(detail: str) -> None:
        failures.append(detail)

    directory = ChannelDirectory(platform, ConversationStore(), session, notify=collect)
    results = await directory.search_accounts(q)
    if failures:
        raise HTTPException(status_code=502, detail=failures[0])
    return [a.model_dump(mode="json") for a in results]
