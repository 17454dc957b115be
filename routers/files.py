import mimetypes

from fastapi import APIRouter, Depends, Response

from services.exceptions import NotFound
from services.storage import LocalStorage, StorageBackend
from utils.dependencies import get_storage

router = APIRouter()


@router.get("/{token}")
async def download_file(token: str, storage: StorageBackend = Depends(get_storage)):
    """Serve a locally stored object behind a signed, expiring link."""
    if not isinstance(storage, LocalStorage):
        raise NotFound("Not found")

    path = storage.verify_signed_token(token)
    content = await storage.download(path)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)
