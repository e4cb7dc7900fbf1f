"""
Public upload schemas.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class UploadStatus(str, Enum):
    """Per-file outcome within one upload request."""
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


class FileUploadResult(BaseModel):
    """Result for one submitted file, in submission order."""

    filename: str
    status: UploadStatus
    upload_key: str
    file_id: Optional[str] = None
    error: Optional[str] = None


class UploadBatchResponse(BaseModel):
    """Response for a public upload batch."""

    collection_id: str
    item_count: Optional[int] = None
    uploaded: int
    failed: int
    files: List[FileUploadResult] = []
