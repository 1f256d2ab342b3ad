# sentinel/models/app_settings.py
"""
Singleton settings row (id is always 'app_settings').
Conflicting writes are resolved last-writer-wins on last_modified.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sentinel.database import Base

SETTINGS_ID = "app_settings"


class AppSettings(Base):
    __tablename__ = "app_settings"

    id = Column(String(20), primary_key=True, default=SETTINGS_ID)
    alert_threshold = Column(Float, nullable=False)
    recording_enabled = Column(Boolean, nullable=False, default=True)
    cloud_sync = Column(Boolean, nullable=False, default=False)
    sync_only_on_wifi = Column(Boolean, nullable=False, default=False)
    max_local_storage_mb = Column(Integer, nullable=False)
    retention_days = Column(Integer, nullable=False)
    remote_account = Column(String(200))
    remote_container = Column(String(200))
    remote_access_token = Column(Text)
    last_modified = Column(DateTime, nullable=False)
    synced = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<AppSettings cloud_sync={self.cloud_sync} modified={self.last_modified}>"
