# sentinel/schemas/correlation.py
from enum import Enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from sentinel.schemas.event import EventCreate, EventOut
from sentinel.utils.clock import as_naive_utc


class DeviceClass(str, Enum):
    RASPBERRY_PI = "raspberry-pi"
    MOBILE_IOS = "mobile-ios"
    MOBILE_ANDROID = "mobile-android"
    DESKTOP_MAC = "desktop-mac"
    DESKTOP_WINDOWS = "desktop-windows"
    IP_CAMERA = "ip-camera"
    NEST_CAMERA = "nest-camera"
    BLINK_CAMERA = "blink-camera"


class AlertLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChainType(str, Enum):
    MOTION_SEQUENCE = "motion-sequence"
    PERSON_TRACKING = "person-tracking"
    AREA_COVERAGE = "area-coverage"


class SourceDevice(BaseModel):
    id: str
    name: str
    device_class: DeviceClass = DeviceClass.IP_CAMERA
    location: str


class EventChain(BaseModel):
    previous_event: Optional[str] = None
    next_event: Optional[str] = None
    chain_type: ChainType


class MultiDeviceEvent(EventOut):
    source_device: SourceDevice
    correlation_id: Optional[str] = None
    event_chain: Optional[EventChain] = None


class AggregateFilter(BaseModel):
    device_ids: Optional[list[str]] = None
    locations: Optional[list[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    object_classes: Optional[list[str]] = None
    alert_level: Optional[AlertLevel] = None
    limit: Optional[int] = Field(default=None, ge=1)

    @field_validator("start", "end")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class DetectionStat(BaseModel):
    object: str
    count: int
    confidence: float


class DeviceEventSummary(BaseModel):
    device_id: str
    device_name: str
    events_today: int
    last_event_time: Optional[datetime]
    alert_level: AlertLevel
    top_detections: list[DetectionStat]


class LocationEventSummary(BaseModel):
    location_name: str
    devices: int
    events_today: int
    alert_level: AlertLevel
    last_activity: Optional[datetime]
    active_detections: int


class IngestRequest(BaseModel):
    event: EventCreate
    source_device: SourceDevice
