import asyncio
from typing import List

from fastapi import APIRouter, Depends, File, Request, UploadFile

from chatproxy.config import Settings
from chatproxy.core.errors import UploadRejected
from chatproxy.core.metrics import record_upload
from chatproxy.dependencies import get_settings, get_upload_store
from chatproxy.models.schemas import UploadResponse
from chatproxy.services.upload_store import IncomingFile, UploadStore

router = APIRouter()

_READ_CHUNK = 64 * 1024


async def _read_limited(upload: UploadFile, limit: int) -> bytes:
    """Read at most ``limit`` + 1 bytes so oversize files fail without buffering them whole."""
    data = bytearray()
    while len(data) <= limit:
        chunk = await upload.read(_READ_CHUNK)
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


@router.post("", response_model=UploadResponse, summary="Upload images")
async def upload_images(
    request: Request,
    images: List[UploadFile] = File(..., description="Image files (form field 'images')"),
    store: UploadStore = Depends(get_upload_store),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    """
    Store up to 10 images (5MB each, ``image/*`` only) and return their public URLs.

    The whole batch is rejected if any file breaks a limit.
    """
    if len(images) > store.max_files:
        record_upload(accepted=False)
        raise UploadRejected(f"Too many files: at most {store.max_files} images per upload")

    incoming = [
        IncomingFile(
            filename=upload.filename or "",
            content_type=upload.content_type or "",
            data=await _read_limited(upload, store.max_file_size),
        )
        for upload in images
    ]

    try:
        names = await asyncio.to_thread(store.save, incoming)
    except UploadRejected:
        record_upload(accepted=False)
        raise

    record_upload(accepted=True, files=len(names))
    base_url = settings.upload.public_base_url or str(request.base_url)
    return UploadResponse(urls=[store.public_url(name, base_url) for name in names])
