# sentinel/schemas/settings.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from sentinel.config import settings as app_config
from sentinel.utils.clock import as_naive_utc


class RemoteCredentials(BaseModel):
    account_name: str = Field(min_length=1)
    container_name: str = Field(min_length=1)
    access_token: str = ""

    @field_validator("access_token")
    @classmethod
    def _strip_question_mark(cls, v: str) -> str:
        # Tokens are pasted straight from the portal and used verbatim otherwise
        return v[1:] if v.startswith("?") else v


class SettingsIn(BaseModel):
    alert_threshold: float = Field(default_factory=lambda: app_config.DEFAULT_ALERT_THRESHOLD, ge=0.0, le=1.0)
    recording_enabled: bool = True
    cloud_sync: bool = False
    sync_only_on_wifi: bool = False
    max_local_storage_mb: int = Field(default_factory=lambda: app_config.DEFAULT_MAX_LOCAL_STORAGE_MB, ge=1)
    retention_days: int = Field(default_factory=lambda: app_config.DEFAULT_RETENTION_DAYS, ge=1)
    remote: Optional[RemoteCredentials] = None


class SettingsOut(SettingsIn):
    last_modified: datetime
    synced: bool = False

    @field_validator("last_modified")
    @classmethod
    def _naive_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)

    def redacted(self) -> "SettingsOut":
        """Copy safe to hand to the UI: the access token is masked."""
        if self.remote is None or not self.remote.access_token:
            return self
        remote = self.remote.model_copy(update={"access_token": "***"})
        return self.model_copy(update={"remote": remote})
