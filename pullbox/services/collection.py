"""
Collection service for owner collection management and public code resolution.
"""
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import Settings, get_settings
from pullbox.errors import Expired, NotFound
from pullbox.models.collection import Collection
from pullbox.schemas.collection import CollectionCreate, CollectionResponse
from pullbox.schemas.events import CollectionEventType
from pullbox.services.collection_events import CollectionEventBus
from pullbox.services.drive_client import DriveService
from pullbox.services.link_allocator import LinkAllocator, build_share_url
from pullbox.utils.clock import Clock, utcnow
from pullbox.utils.logger import log_info, log_warning
from pullbox.utils.prometheus_metrics import share_link_access_total


class CollectionService:
    """
    Service for handling collection operations.
    Owners create, list and delete; anonymous callers only resolve codes.
    """

    def __init__(
        self,
        db: AsyncSession,
        event_bus: Optional[CollectionEventBus] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.event_bus = event_bus
        self.settings = settings or get_settings()
        self.clock = clock

    def to_response(self, collection: Collection) -> CollectionResponse:
        response = CollectionResponse.model_validate(collection)
        response.share_url = build_share_url(collection.link_code, self.settings)
        return response

    # ============== Owner operations ==============

    async def create_collection(
        self,
        owner_id: str,
        data: CollectionCreate,
        drive: DriveService,
        allocator: Optional[LinkAllocator] = None,
    ) -> Collection:
        """
        Create the Drive folder, then the collection row with a fresh code.

        Args:
            owner_id: Owner (session subject)
            data: Collection creation data
            drive: Drive operations for the owner
            allocator: Optional allocator (injected in tests)

        Returns:
            Created Collection model
        """
        folder_id = await drive.create_folder(data.name)

        allocator = allocator or LinkAllocator(self.db, self.settings, clock=self.clock)
        collection = await allocator.allocate(owner_id, data.name, folder_id)

        log_info(
            "Collection created",
            event="collection",
            owner_id=owner_id,
            collection_id=collection.id,
        )
        self._publish(CollectionEventType.CREATED, collection)
        return collection

    async def get_owner_collections(
        self,
        owner_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Collection]:
        """Get an owner's collections, newest first."""
        result = await self.db.execute(
            select(Collection)
            .where(Collection.owner_id == owner_id)
            .order_by(Collection.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_owner_collection(self, collection_id: str, owner_id: str) -> Collection:
        """
        Get one of the owner's collections.

        Raises:
            NotFound: if it does not exist or belongs to someone else
        """
        result = await self.db.execute(
            select(Collection)
            .where(Collection.id == collection_id)
            .where(Collection.owner_id == owner_id)
        )
        collection = result.scalar_one_or_none()
        if collection is None:
            raise NotFound("Collection not found", collection_id=collection_id)
        return collection

    async def delete_collection(self, collection_id: str, owner_id: str) -> None:
        """Delete the collection row. The Drive folder is left in place."""
        collection = await self.get_owner_collection(collection_id, owner_id)
        await self.db.delete(collection)
        await self.db.commit()

        log_info("Collection deleted", event="collection", owner_id=owner_id, collection_id=collection_id)
        if self.event_bus is not None:
            self.event_bus.publish(CollectionEventType.DELETED, owner_id, collection_id=collection_id)

    # ============== Public resolution ==============

    async def get_by_code(self, code: str) -> Optional[Collection]:
        result = await self.db.execute(
            select(Collection).where(Collection.link_code == code)
        )
        return result.scalar_one_or_none()

    async def resolve_public(self, code: str) -> Collection:
        """
        Resolve a public link code to a live collection.

        Raises:
            NotFound: unknown code
            Expired: ``expires_at`` at or before now
        """
        collection = await self.get_by_code(code)
        if collection is None:
            share_link_access_total.labels(code_status="invalid", result="denied").inc()
            log_warning("Unknown link code", event="link", code=code)
            raise NotFound(code=code)

        if collection.is_expired(self.clock()):
            share_link_access_total.labels(code_status="expired", result="denied").inc()
            log_warning("Expired link code", event="link", code=code, collection_id=collection.id)
            raise Expired(code=code)

        share_link_access_total.labels(code_status="valid", result="success").inc()
        return collection

    # ============== Counter ==============

    async def increment_item_count(self, collection_id: str, amount: int) -> None:
        """Atomic ``item_count = item_count + amount``; caller commits."""
        await self.db.execute(
            update(Collection)
            .where(Collection.id == collection_id)
            .values(item_count=Collection.item_count + amount)
            .execution_options(synchronize_session=False)
        )

    async def reload(self, collection: Collection) -> Collection:
        await self.db.refresh(collection)
        return collection

    def publish_updated(self, collection: Collection) -> None:
        self._publish(CollectionEventType.UPDATED, collection)

    def _publish(self, event_type: CollectionEventType, collection: Collection) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            event_type,
            collection.owner_id,
            collection=self.to_response(collection),
        )
