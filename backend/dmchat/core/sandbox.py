"""Sandboxed attachment storage - keeps uploaded files inside the uploads directory."""

import re
from pathlib import Path

from dmchat.core.config import settings

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class StorageError(Exception):
    pass


def uploads_root() -> Path:
    return (settings.data_dir / "uploads").resolve()


def resolve_storage_path(object_path: str, root: Path | None = None) -> Path:
    """Resolve an object path within the uploads root. Raises StorageError if it escapes."""
    base = (root or uploads_root()).resolve()
    resolved = (base / object_path).resolve()

    if resolved == base or not resolved.is_relative_to(base):
        raise StorageError(f"Object path '{object_path}' escapes the storage root")

    return resolved


def sanitize_filename(filename: str) -> str:
    """Reduce a user supplied filename to a single safe path segment."""
    name = Path(filename).name
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    return cleaned or "file"
