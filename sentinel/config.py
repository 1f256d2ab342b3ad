# sentinel/config.py
"""
Application configuration using Pydantic-Settings.
All settings can be overridden via environment variables or .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Database ──────────────────────────────────────────────────────────
    # Local-first store. SQLite keeps the device usable with no network at all.
    DATABASE_URL: str = "sqlite:///./sentinel.db"

    # ── Network ───────────────────────────────────────────────────────────
    BACKEND_IP: str = "127.0.0.1"
    BACKEND_PORT: int = 8080

    # ── Security ──────────────────────────────────────────────────────────
    API_KEY: Optional[str] = None   # Set in .env to enable auth on API endpoints

    # ── Device identity ───────────────────────────────────────────────────
    DEVICE_ID: str = "device-local"

    # ── Remote object store ───────────────────────────────────────────────
    REMOTE_BASE_URL_TEMPLATE: str = "https://{account}.blob.core.windows.net/{container}"
    REMOTE_TIMEOUT_SECONDS: float = 15.0

    # ── Sync queue ────────────────────────────────────────────────────────
    SYNC_INTERVAL_SECONDS: float = 30.0
    SYNC_BATCH_SIZE: int = 50
    MAX_SYNC_RETRIES: int = 3
    SYNC_ITEM_DELAY_MS: int = 100
    ONLINE_SETTLE_SECONDS: float = 1.0
    RESYNC_ON_STARTUP: bool = True

    # ── Settings record defaults (used until the UI saves its own) ───────
    DEFAULT_ALERT_THRESHOLD: float = 0.5
    DEFAULT_MAX_LOCAL_STORAGE_MB: int = 1024
    DEFAULT_RETENTION_DAYS: int = 30

    # ── Correlation ───────────────────────────────────────────────────────
    CORRELATION_RECENT_WINDOW_MINUTES: int = 60
    CORRELATION_SEQUENCE_WINDOW_SECONDS: int = 60
    CORRELATION_HISTORY_HOURS: int = 24

    # ── Logging ───────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None   # Defaults to <repo>/logs

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
