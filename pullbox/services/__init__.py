"""
Services package.
Contains business logic and external service integrations.
"""
from pullbox.services.token_store import TokenStore
from pullbox.services.token_refresher import TokenRefresher, RefreshedToken
from pullbox.services.drive_client import AuthorizedClient, DriveService, OwnerSession
from pullbox.services.link_allocator import LinkAllocator, build_share_url, extract_link_code
from pullbox.services.collection_events import CollectionEventBus, get_event_bus
from pullbox.services.collection import CollectionService
from pullbox.services.upload_gateway import PublicUploadGateway, IncomingFile

__all__ = [
    "TokenStore",
    "TokenRefresher",
    "RefreshedToken",
    "AuthorizedClient",
    "DriveService",
    "OwnerSession",
    "LinkAllocator",
    "build_share_url",
    "extract_link_code",
    "CollectionEventBus",
    "get_event_bus",
    "CollectionService",
    "PublicUploadGateway",
    "IncomingFile",
]
