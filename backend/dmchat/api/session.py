from fastapi import APIRouter, Depends

from dmchat.api.deps import current_session
from dmchat.core.session import SessionContext

router = APIRouter()


@router.get("/")
async def get_session_identity(session: SessionContext = Depends(current_session)):
    identity = session.identity
    return {
        "account_id": identity.account_id,
        "email": identity.email,
        "display_name": session.account.display_name,
        "avatar_url": identity.avatar_url,
    }
