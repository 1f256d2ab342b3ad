# Sentinel: database models
# Import all models here for SQLAlchemy discovery

from sentinel.models.security_event import SecurityEvent     # noqa
from sentinel.models.app_settings import AppSettings         # noqa
from sentinel.models.sync_queue_item import SyncQueueItem    # noqa
