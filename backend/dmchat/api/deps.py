"""Request dependencies: the backing platform and the caller's session."""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from dmchat.core.session import SessionContext
from dmchat.services.platform import get_platform
from dmchat.services.platform.base import BasePlatform, PlatformError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def platform_provider() -> BasePlatform:
    return get_platform()


def access_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return authorization[7:].strip()


async def current_session(
    token: str = Depends(access_token),
    platform: BasePlatform = Depends(platform_provider),
) -> SessionContext:
    try:
        identity = await platform.resolve_identity(token)
    except PlatformError as e:
        logger.error(f"Session lookup failed: {e}")
        raise HTTPException(status_code=503, detail="Identity provider unavailable")

    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    session = SessionContext()
    session.populate(identity)
    return session


def session_platform(
    token: str = Depends(access_token),
    platform: BasePlatform = Depends(platform_provider),
) -> BasePlatform:
    return platform.bind(token)
