"""
Collections router for owner collection management and live dashboard sync.
"""
from typing import AsyncIterator, Awaitable, Callable, List

import httpx
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pullbox.config import Settings, get_settings
from pullbox.database import get_db, get_session_factory
from pullbox.dependencies.auth import get_current_owner, get_http_client
from pullbox.schemas.collection import CollectionCreate, CollectionResponse, DriveFileResponse
from pullbox.schemas.credential import OwnerIdentity
from pullbox.services.collection import CollectionService
from pullbox.services.collection_events import (
    SSE_KEEPALIVE,
    CollectionEventBus,
    SubscriptionLagged,
    format_sse,
    get_event_bus,
)
from pullbox.services.drive_client import build_owner_drive
from pullbox.utils.logger import log_info, log_warning

router = APIRouter(prefix="/collections", tags=["Collections"])


@router.post(
    "",
    response_model=CollectionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a collection",
)
async def create_collection(
    data: CollectionCreate,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    event_bus: CollectionEventBus = Depends(get_event_bus),
) -> CollectionResponse:
    """
    Create a Drive folder and a collection with a fresh share link.

    - **name**: Collection (and folder) name
    """
    drive = await build_owner_drive(db, http_client, owner.id)
    service = CollectionService(db, event_bus)
    collection = await service.create_collection(owner.id, data, drive)
    return service.to_response(collection)


@router.get(
    "",
    response_model=List[CollectionResponse],
    summary="List my collections",
)
async def list_collections(
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
) -> List[CollectionResponse]:
    """Get the owner's collections, newest first."""
    service = CollectionService(db)
    collections = await service.get_owner_collections(owner.id, skip=skip, limit=limit)
    return [service.to_response(c) for c in collections]


async def collection_event_stream(
    owner_id: str,
    event_bus: CollectionEventBus,
    session_factory: async_sessionmaker[AsyncSession],
    is_disconnected: Callable[[], Awaitable[bool]],
    settings: Settings,
) -> AsyncIterator[str]:
    """
    SSE body: one snapshot, then change events, with keepalive comments.

    Subscribes before taking the snapshot so nothing published in between is
    missed (the consumer may see it twice).
    """
    async with event_bus.subscribe(owner_id) as subscription:
        # 연결 동안 세션을 잡고 있지 않도록 snapshot 조회용 세션만 짧게 사용
        async with session_factory() as db:
            service = CollectionService(db, settings=settings)
            collections = await service.get_owner_collections(owner_id)
            snapshot = event_bus.snapshot(owner_id, [service.to_response(c) for c in collections])
        yield format_sse(snapshot)

        while not await is_disconnected():
            try:
                event = await subscription.next_event(settings.event_keepalive_seconds)
            except SubscriptionLagged:
                log_warning("Event stream closed (lagged)", event="sync", owner_id=owner_id)
                yield "event: lagged\ndata: {}\n\n"
                return
            yield SSE_KEEPALIVE if event is None else format_sse(event)


@router.get(
    "/events",
    summary="Live collection changes (Server-Sent Events)",
)
async def collection_events(
    request: Request,
    owner: OwnerIdentity = Depends(get_current_owner),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    event_bus: CollectionEventBus = Depends(get_event_bus),
) -> StreamingResponse:
    """
    Dashboard change feed.

    Every connection starts with a ``snapshot`` event holding the full list;
    clients re-fetch by reconnecting (also after a ``lagged`` event).
    """
    log_info("Event stream opened", event="sync", owner_id=owner.id)
    return StreamingResponse(
        collection_event_stream(
            owner.id,
            event_bus,
            session_factory,
            request.is_disconnected,
            get_settings(),
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get(
    "/{collection_id}",
    response_model=CollectionResponse,
    summary="Get collection details",
)
async def get_collection(
    collection_id: str,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
) -> CollectionResponse:
    service = CollectionService(db)
    collection = await service.get_owner_collection(collection_id, owner.id)
    return service.to_response(collection)


@router.delete(
    "/{collection_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a collection",
)
async def delete_collection(
    collection_id: str,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    event_bus: CollectionEventBus = Depends(get_event_bus),
) -> Response:
    """
    Delete the collection; its share link stops resolving immediately.
    The Drive folder and its files are kept.
    """
    await CollectionService(db, event_bus).delete_collection(collection_id, owner.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{collection_id}/files",
    response_model=List[DriveFileResponse],
    summary="List files in a collection",
)
async def list_collection_files(
    collection_id: str,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> List[DriveFileResponse]:
    """Files in the collection's Drive folder, newest first."""
    collection = await CollectionService(db).get_owner_collection(collection_id, owner.id)
    drive = await build_owner_drive(db, http_client, owner.id)
    return await drive.list_files(collection.drive_folder_id)


@router.get(
    "/{collection_id}/files/{file_id}/content",
    summary="Download a file",
)
async def download_collection_file(
    collection_id: str,
    file_id: str,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    """Proxy the file content from Drive."""
    await CollectionService(db).get_owner_collection(collection_id, owner.id)
    drive = await build_owner_drive(db, http_client, owner.id)
    content, content_type = await drive.download_file(file_id)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "private, max-age=300"},
    )


@router.delete(
    "/{collection_id}/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a file",
)
async def delete_collection_file(
    collection_id: str,
    file_id: str,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    """
    Delete a file from Drive. ``item_count`` counts uploads and is not
    decremented.
    """
    await CollectionService(db).get_owner_collection(collection_id, owner.id)
    drive = await build_owner_drive(db, http_client, owner.id)
    await drive.delete_file(file_id)
    log_info(
        "Collection file deleted",
        event="collection",
        owner_id=owner.id,
        collection_id=collection_id,
        file_id=file_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
