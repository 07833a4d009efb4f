"""User-facing failure notifications."""

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Notify = Callable[[str], Awaitable[None]]


async def log_notification(detail: str) -> None:
    """Default sink when no client is attached to show the notification."""
    logger.warning(f"Unsurfaced notification: {detail}")
