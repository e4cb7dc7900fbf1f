"""
Pydantic schemas package.
All schemas are exported here for easy import.
"""
from pullbox.schemas.credential import (
    CredentialRecord,
    ProviderTokenPersist,
    ProviderTokenPersistResponse,
    AccessTokenResponse,
    OwnerProfileResponse,
    OwnerIdentity,
)
from pullbox.schemas.collection import (
    CollectionCreate,
    CollectionResponse,
    PublicCollectionResponse,
    DriveFileResponse,
)
from pullbox.schemas.upload import (
    UploadStatus,
    FileUploadResult,
    UploadBatchResponse,
)
from pullbox.schemas.events import (
    CollectionEventType,
    CollectionEvent,
)

__all__ = [
    # Credential schemas
    "CredentialRecord",
    "ProviderTokenPersist",
    "ProviderTokenPersistResponse",
    "AccessTokenResponse",
    "OwnerProfileResponse",
    "OwnerIdentity",
    # Collection schemas
    "CollectionCreate",
    "CollectionResponse",
    "PublicCollectionResponse",
    "DriveFileResponse",
    # Upload schemas
    "UploadStatus",
    "FileUploadResult",
    "UploadBatchResponse",
    # Event schemas
    "CollectionEventType",
    "CollectionEvent",
]
