# sentinel/errors.py
"""
Error taxonomy shared by the store, the sync queue and the reconciler.

Storage errors are fatal for the calling operation. Remote errors carry a
SyncErrorKind so the sync queue and the UI can tell auth problems from a
missing container or a flaky network.
"""

from enum import Enum
from typing import Optional


class SyncErrorKind(str, Enum):
    AUTH = "auth"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    HTTP = "http"
    CONFIG = "config"


class SentinelError(Exception):
    """Base class for every error raised by the sentinel package."""


class StorageError(SentinelError):
    """The local durable store rejected a read or write."""


class QuotaError(StorageError):
    """Local storage is at capacity even after purging synced events."""


class ConflictError(SentinelError):
    """An incoming record duplicates one already stored locally."""


class RemoteError(SentinelError):
    kind: SyncErrorKind = SyncErrorKind.HTTP

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(RemoteError):
    """Connectivity failure or timeout. Retried up to the attempt cap."""
    kind = SyncErrorKind.NETWORK


class AuthError(RemoteError):
    """Credential rejected by the remote store (HTTP 401/403)."""
    kind = SyncErrorKind.AUTH


class NotFoundError(RemoteError):
    """
    Missing container/object on the remote, or an unknown local id.
    Treated as a configuration error, not a transient one.
    """
    kind = SyncErrorKind.NOT_FOUND


class RemoteHTTPError(RemoteError):
    kind = SyncErrorKind.HTTP


class RemoteNotConfiguredError(RemoteError):
    kind = SyncErrorKind.CONFIG
