"""
Typed dashboard sync events.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from pullbox.schemas.collection import CollectionResponse


class CollectionEventType(str, Enum):
    """Change event kinds. ``snapshot`` opens every stream (full re-fetch)."""
    SNAPSHOT = "snapshot"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class CollectionEvent(BaseModel):
    """
    One change notification for an owner's dashboards.

    Delivery is at-least-once; consumers may see the same ``sequence`` twice
    and should treat events as idempotent upserts/deletes keyed by
    ``collection_id``.
    """

    type: CollectionEventType
    owner_id: str
    sequence: int
    collection_id: Optional[str] = None
    collection: Optional[CollectionResponse] = None
    collections: Optional[List[CollectionResponse]] = None
