from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class TransferStatus(str, Enum):
    """Stored lifecycle status. EXPIRED is only ever derived at read time."""
    PENDING = "pending"
    UPLOADING = "uploading"
    READY = "ready"
    EXPIRED = "expired"


class TransferMode(str, Enum):
    """How the sender delivers content."""
    ARCHIVE = "archive"
    MULTI_FILE = "multi-file"


class TransferRecord(BaseModel):
    """A row of the transfers table."""
    id: str
    mode: TransferMode = TransferMode.ARCHIVE
    status: TransferStatus = TransferStatus.PENDING
    filename: str
    total_size: int
    uploaded_size: int = 0
    chunks_total: int
    chunks_completed: int = 0
    created_at: datetime
    expires_at: datetime
    download_count: int = 0

    model_config = {"from_attributes": True}

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    @property
    def progress(self) -> int:
        if self.chunks_total <= 0:
            return 0
        return round(self.chunks_completed / self.chunks_total * 100)


class TransferFileRecord(BaseModel):
    """A file uploaded individually into a multi-file transfer."""
    id: int
    transfer_id: str
    stored_name: str
    original_name: str
    size: int
    path: str
    content_type: str | None = None
    thumbnail_path: str | None = None

    model_config = {"from_attributes": True}


class UsageStats(BaseModel):
    """The single aggregate stats row."""
    total_transfers: int = 0
    total_bytes: int = 0
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Wire models (camelCase on the wire, as the browser client expects)
# ---------------------------------------------------------------------------


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitRequest(WireModel):
    """Body of POST /api/transfer/init."""
    filename: str | None = None
    total_size: int | None = Field(default=None, alias="totalSize")
    chunks_total: int | None = Field(default=None, alias="chunksTotal")
    expiration_days: int | None = Field(default=None, alias="expirationDays")
    mode: TransferMode = TransferMode.ARCHIVE
    file_list: list[str] | None = Field(default=None, alias="fileList")


class InitResponse(WireModel):
    transfer_id: str = Field(alias="transferId")
    upload_url: str = Field(alias="uploadUrl")
    share_url: str = Field(alias="shareUrl")
    expires_at: datetime = Field(alias="expiresAt")


class ChunkAck(WireModel):
    success: bool = True
    chunk_index: int = Field(alias="chunkIndex")
    chunks_completed: int = Field(alias="chunksCompleted")


class FileAck(WireModel):
    success: bool = True
    file_id: int = Field(alias="fileId")
    filename: str
    size: int


class CompleteResponse(WireModel):
    success: bool = True
    status: TransferStatus
    download_url: str = Field(alias="downloadUrl")


class DeleteResponse(WireModel):
    success: bool = True


class TransferFileView(WireModel):
    """Listing entry for a file in a ready multi-file transfer."""
    id: int
    filename: str
    size: int
    mime_type: str | None = Field(default=None, alias="mimeType")
    thumbnail_path: str | None = Field(default=None, alias="thumbnailPath")


class TransferView(BaseModel):
    """Response of GET /api/transfer/{id}. Keeps the snake_case column names."""
    id: str
    mode: TransferMode
    status: TransferStatus
    filename: str
    total_size: int
    uploaded_size: int
    chunks_total: int
    chunks_completed: int
    created_at: datetime
    expires_at: datetime
    download_count: int
    progress: int
    files: list[TransferFileView] | None = None
    error: str | None = None


class StatsResponse(WireModel):
    total_transfers: int = Field(alias="totalTransfers")
    total_bytes: int = Field(alias="totalBytes")
    total_gb: str = Field(alias="totalGB")
    active_transfers: int = Field(alias="activeTransfers")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    version: str
    timestamp: datetime


class ProgressEvent(WireModel):
    """Message pushed to live progress subscribers."""
    type: Literal["progress", "complete", "error"]
    transfer_id: str = Field(alias="transferId")
    progress: int | None = None
    uploaded_size: int | None = Field(default=None, alias="uploadedSize")
    total_size: int | None = Field(default=None, alias="totalSize")
    chunks_completed: int | None = Field(default=None, alias="chunksCompleted")
    chunks_total: int | None = Field(default=None, alias="chunksTotal")
    status: TransferStatus | None = None
    error: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
