# sentinel/schemas/sync.py
from enum import Enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from sentinel.errors import SyncErrorKind
from sentinel.schemas.event import StorageStats
from sentinel.utils.clock import utcnow


class SyncItemKind(str, Enum):
    EVENT = "event"
    SETTINGS = "settings"
    BLOB = "blob"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"

    @property
    def prefix(self) -> str:
        return "images/" if self is MediaKind.IMAGE else "videos/"

    @property
    def extension(self) -> str:
        return ".jpg" if self is MediaKind.IMAGE else ".mp4"

    @property
    def content_type(self) -> str:
        return "image/jpeg" if self is MediaKind.IMAGE else "video/mp4"


class QueueEntry(BaseModel):
    id: str
    event_id: str
    kind: SyncItemKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True


class UploadResult(BaseModel):
    success: bool
    object_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[SyncErrorKind] = None
    failed_media: list[MediaKind] = Field(default_factory=list)


class SyncStatus(BaseModel):
    is_online: bool
    is_syncing: bool
    last_sync_time: Optional[datetime] = None
    pending_items: int = 0
    synced: int = 0               # items synced by this pass
    failed: int = 0               # items that failed terminally in this pass
    total_synced: int = 0         # since process start
    errors: list[str] = Field(default_factory=list)


class SyncProgress(BaseModel):
    total: int
    completed: int
    current: Optional[str] = None
    percentage: int


class ConnectionReport(BaseModel):
    ok: bool
    error_kind: Optional[SyncErrorKind] = None
    detail: str


class DownloadReport(BaseModel):
    events: int = 0
    settings_updated: bool = False
    conflicts: int = 0


class CleanupReport(BaseModel):
    local_deleted: int = 0
    remote_deleted: int = 0


class RemoteObject(BaseModel):
    name: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None


class RemoteStorageInfo(BaseModel):
    total_objects: int
    estimated_size: int
    events: int
    images: int
    videos: int


class StorageOverview(BaseModel):
    local: StorageStats
    remote: Optional[RemoteStorageInfo] = None


class NetworkStateIn(BaseModel):
    online: bool


class CleanupRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1)
