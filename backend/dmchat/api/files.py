from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from dmchat.core.sandbox import StorageError, resolve_storage_path

router = APIRouter()


@router.get("/raw/{object_path:path}")
async def read_attachment(object_path: str):
    """Serve attachments stored by the local platform."""
    try:
        file_path = resolve_storage_path(object_path)
    except StorageError as e:
        raise HTTPException(status_code=403, detail=str(e))

    if not file_path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    if not file_path.is_file():
        raise HTTPException(status_code=400, detail="Path is not a file")

    return FileResponse(file_path)
