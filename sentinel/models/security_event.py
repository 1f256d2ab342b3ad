# sentinel/models/security_event.py
"""
Local event table.
Every detection, motion, alert or manual capture lands here first, before
any network call. The sync subsystem is the only writer of the synced,
sync_attempts and last_sync_attempt columns.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, LargeBinary, String
from sentinel.database import Base


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(String(64), primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    kind = Column(String(20), nullable=False, index=True)
    detections = Column(JSON, nullable=False, default=list)
    confidence = Column(Float, nullable=False, default=0.0)
    image_data = Column(LargeBinary)
    video_data = Column(LargeBinary)
    device_id = Column(String(100), nullable=False)
    camera_id = Column(String(100), nullable=False)
    location = Column(String(200))
    duration = Column(Float)
    synced = Column(Boolean, nullable=False, default=False, index=True)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_sync_attempt = Column(DateTime)

    def __repr__(self):
        return f"<SecurityEvent {self.id} kind={self.kind} synced={self.synced}>"
