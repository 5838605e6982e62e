"""Audio upload request and response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..middleware import validation
from ..core.exceptions import ValidationError


class InitializeUploadRequest(BaseModel):
    """Request to start an upload."""

    workspace_id: str = Field(..., min_length=1, description="Workspace that owns the upload")
    filename: str = Field(..., min_length=1, max_length=255, description="Original filename")
    file_size: int = Field(..., gt=0, description="File size in bytes")
    mime_type: str = Field(..., description="MIME type of the file")
    direct: bool = Field(
        default=False,
        description="Return presigned part URLs so the client uploads parts straight to storage",
    )

    @field_validator("file_size")
    @classmethod
    def validate_file_size(cls, v: int) -> int:
        try:
            return validation.validate_file_size(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v: str) -> str:
        try:
            return validation.validate_mime_type(v)
        except ValidationError as e:
            raise ValueError(e.message) from e


class PartUrl(BaseModel):
    """Presigned URL for one part."""

    part_number: int = Field(..., description="Part number (1-indexed)")
    upload_url: str = Field(..., description="Presigned URL for uploading this part")


class InitializeUploadResponse(BaseModel):
    """Response from starting an upload."""

    upload_id: str
    multipart: bool
    chunk_size: int = Field(..., description="Bytes per chunk for multipart uploads")
    total_chunks: int = Field(..., description="Chunks to send; 1 for single-shot uploads")
    upload_urls: List[PartUrl] = Field(default_factory=list)
    expires_in: Optional[int] = Field(None, description="URL expiration time in seconds")


class ChunkUploadResponse(BaseModel):
    """Stored part of a multipart upload."""

    upload_id: str
    part_number: int
    etag: str
    size: int


class PresignedUrlsRequest(BaseModel):
    """Request presigned URLs for client-direct part uploads."""

    part_count: int = Field(..., ge=1, description="Number of parts the client will upload")


class PresignedUrlsResponse(BaseModel):
    """Presigned part URLs in part-number order."""

    upload_id: str
    urls: List[PartUrl]
    expires_in: int


class RegisterPartRequest(BaseModel):
    """Report of a part the client uploaded to a presigned URL."""

    part_number: int = Field(..., ge=1, description="Part number (1-indexed)")
    etag: str = Field(..., min_length=1, description="ETag returned by storage for the part")
    size: int = Field(..., gt=0, description="Part size in bytes")
    checksum: str = Field(..., min_length=64, max_length=64, description="Hex SHA-256 of the part")


class UploadResponse(BaseModel):
    """Upload record with its current status and progress."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    workspace_id: str
    original_file_name: str
    file_size: int
    mime_type: str
    storage_path: Optional[str] = None
    storage_provider: str
    upload_status: str = Field(..., description="pending, uploading, completed, failed")
    upload_progress: int = Field(..., description="Upload progress percentage (0-100)")
    failed_reason: Optional[str] = Field(default=None, description="Error message if upload failed")
    storage_url: Optional[str] = None
    cdn_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("upload_metadata", "metadata")
    )
    multipart_active: bool = False
    parts_received: int = 0
    created_at: datetime
    updated_at: datetime


class ErrorResponse(BaseModel):
    """Body returned for upload coordination errors."""

    detail: str
    error: str
    upload_id: Optional[str] = None
