# sentinel/schemas/event.py
from enum import Enum
from datetime import datetime
from typing import Optional

from pydantic import Base64Bytes, BaseModel, Field, field_validator

from sentinel.utils.clock import as_naive_utc, utcnow

PERSON_CLASS = "person"


class EventKind(str, Enum):
    DETECTION = "detection"
    MOTION = "motion"
    ALERT = "alert"
    MANUAL = "manual"


class Detection(BaseModel):
    bbox: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0, 0.0])  # x, y, width, height
    class_name: str
    score: float = Field(ge=0.0, le=1.0)


class EventMetadata(BaseModel):
    device_id: str
    camera_id: str
    location: Optional[str] = None
    duration: Optional[float] = None   # seconds, for clips


class EventDraft(BaseModel):
    """What the detection producer hands to EventStore.save_event()."""
    timestamp: datetime = Field(default_factory=utcnow)
    kind: EventKind
    detections: list[Detection] = Field(default_factory=list)
    confidence: float = 0.0
    # Media never goes into JSON dumps; it travels as separate remote objects.
    image: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    video: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    metadata: EventMetadata

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)

    @property
    def has_person(self) -> bool:
        return any(d.class_name == PERSON_CLASS for d in self.detections)


class EventOut(EventDraft):
    id: str
    synced: bool = False
    sync_attempts: int = 0
    last_sync_attempt: Optional[datetime] = None

    @field_validator("last_sync_attempt")
    @classmethod
    def _naive_utc_attempt(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)

    def remote_document(self) -> dict:
        """JSON body stored under events/<id>.json."""
        doc = self.model_dump(mode="json")
        doc["has_image"] = self.image is not None
        doc["has_video"] = self.video is not None
        return doc


class EventCreate(BaseModel):
    """HTTP producer body. Media arrives base64-encoded."""
    timestamp: Optional[datetime] = None
    kind: EventKind
    detections: list[Detection] = Field(default_factory=list)
    confidence: float = 0.0
    image_base64: Optional[Base64Bytes] = None
    video_base64: Optional[Base64Bytes] = None
    metadata: EventMetadata

    def to_draft(self) -> EventDraft:
        data = dict(
            kind=self.kind,
            detections=self.detections,
            confidence=self.confidence,
            image=self.image_base64,
            video=self.video_base64,
            metadata=self.metadata,
        )
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return EventDraft(**data)


class EventFilter(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1)
    since: Optional[datetime] = None
    kind: Optional[EventKind] = None
    only_unsynced: bool = False

    @field_validator("since")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class StorageStats(BaseModel):
    total_events: int
    unsynced_events: int
    storage_used_bytes: int
    queue_length: int
