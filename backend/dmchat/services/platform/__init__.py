"""Backing platform factory."""

from dmchat.core.config import settings
from dmchat.services.platform.base import BasePlatform


def get_platform() -> BasePlatform:
    """Factory function that returns the configured backing platform."""
    if settings.platform == "local":
        from dmchat.services.platform.local import LocalPlatform
        return LocalPlatform()
    elif settings.platform == "supabase":
        from dmchat.services.platform.supabase import SupabasePlatform
        return SupabasePlatform()
    else:
        raise ValueError(f"Unknown platform: {settings.platform}")
