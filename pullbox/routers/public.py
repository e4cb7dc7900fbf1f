"""
Public router for anonymous uploaders (no owner session).
"""
import logging
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import get_settings
from pullbox.database import get_db
from pullbox.dependencies.auth import get_http_client, verify_upload_gate
from pullbox.middlewares.rate_limit_middleware import get_rate_limit_decorator, record_allowed
from pullbox.schemas.collection import PublicCollectionResponse
from pullbox.schemas.upload import UploadBatchResponse
from pullbox.services.collection import CollectionService
from pullbox.services.collection_events import CollectionEventBus, get_event_bus
from pullbox.services.link_allocator import build_share_url, extract_link_code
from pullbox.services.upload_gateway import IncomingFile, PublicUploadGateway

logger = logging.getLogger("pullbox.public")
router = APIRouter(prefix="/public", tags=["Public"])

settings = get_settings()

# 코드 추측(enumeration)과 업로드 폭주 방지
public_rate_limit = get_rate_limit_decorator(f"{settings.rate_limit_public_per_minute}/minute")


@router.get(
    "/boxes/{code}",
    response_model=PublicCollectionResponse,
    summary="Resolve a share link",
)
@public_rate_limit
async def get_public_box(
    code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> PublicCollectionResponse:
    """
    Landing data for the uploader page.

    - 400: malformed code
    - 404: unknown code
    - 410: expired collection
    """
    record_allowed(request)
    link_code = extract_link_code(code)
    collection = await CollectionService(db).resolve_public(link_code)

    return PublicCollectionResponse(
        name=collection.name,
        link_code=collection.link_code,
        expires_at=collection.expires_at,
        item_count=collection.item_count,
        share_url=build_share_url(collection.link_code),
    )


async def _read_upload(upload: UploadFile, upload_key: Optional[str]) -> IncomingFile:
    # 제한 + 1 바이트까지만 읽음 (초과 여부는 gateway에서 판정)
    content = await upload.read(settings.max_upload_file_size + 1)
    return IncomingFile(
        filename=upload.filename or "upload",
        content_type=upload.content_type or "application/octet-stream",
        content=content,
        upload_key=upload_key or None,
    )


@router.post(
    "/upload",
    response_model=UploadBatchResponse,
    summary="Upload photos through a share link",
    dependencies=[Depends(verify_upload_gate)],
)
@public_rate_limit
async def public_upload(
    request: Request,
    code: Optional[str] = Form(None),
    link_code: Optional[str] = Form(None, alias="linkCode"),
    link: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    file: Optional[UploadFile] = File(None),
    upload_keys: Optional[List[str]] = Form(None),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    event_bus: CollectionEventBus = Depends(get_event_bus),
) -> UploadBatchResponse:
    """
    Upload one or more images into the collection behind a link code.

    - **code** (or linkCode / link): bare code or full share URL
    - **files** / **file**: image files
    - **upload_keys**: optional idempotency keys, matched to files by position

    Returns per-file results. 200 if at least one file landed; 502 if all failed.
    """
    record_allowed(request)

    uploads: List[UploadFile] = list(files or [])
    if file is not None:
        uploads.append(file)
    keys = list(upload_keys or [])

    incoming = [
        await _read_upload(upload, keys[i] if i < len(keys) else None)
        for i, upload in enumerate(uploads)
    ]

    gateway = PublicUploadGateway(db, http_client, event_bus)
    return await gateway.upload(code or link_code or link, incoming)
