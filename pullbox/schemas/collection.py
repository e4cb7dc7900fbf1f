"""
Collection related Pydantic schemas for request/response validation.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator


class CollectionCreate(BaseModel):
    """Schema for creating a collection."""

    name: str = Field(..., min_length=1, max_length=255)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class CollectionResponse(BaseModel):
    """Schema for an owner's collection."""

    id: str
    owner_id: str
    name: str
    drive_folder_id: str
    link_code: str
    created_at: datetime
    expires_at: datetime
    item_count: int
    share_url: str = ""

    model_config = ConfigDict(from_attributes=True)


class PublicCollectionResponse(BaseModel):
    """
    Schema for the uploader landing page (public access).
    Owner and folder identifiers are not exposed.
    """

    name: str
    link_code: str
    expires_at: datetime
    item_count: int
    share_url: str


class DriveFileResponse(BaseModel):
    """A file inside a collection's Drive folder."""

    id: str
    name: str
    mime_type: Optional[str] = None
    thumbnail_link: Optional[str] = None
    web_content_link: Optional[str] = None
    size: Optional[int] = None
    created_time: Optional[datetime] = None
    upload_key: Optional[str] = None
