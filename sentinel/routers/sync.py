# sentinel/routers/sync.py
"""
Sync control surface: status, manual drain, download/merge, retention
cleanup, remote configuration and network transitions.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from sentinel.dependencies import get_store, get_sync_queue
from sentinel.schemas.settings import RemoteCredentials
from sentinel.schemas.sync import (
    CleanupReport, CleanupRequest, ConnectionReport, DownloadReport, NetworkStateIn,
    QueueEntry, StorageOverview, SyncStatus,
)
from sentinel.services.event_store import EventStore
from sentinel.services.sync_queue import SyncQueue

router = APIRouter()


@router.get("/sync/status", response_model=SyncStatus, summary="Sync status snapshot")
async def sync_status(queue: SyncQueue = Depends(get_sync_queue)):
    return queue.get_sync_status()


@router.get("/sync/queue", response_model=list[QueueEntry], summary="Pending sync items, next first")
async def pending_items(limit: int = 50, store: EventStore = Depends(get_store)):
    return await store.get_sync_queue(limit)


@router.post("/sync/now", response_model=SyncStatus, summary="Run one sync pass now")
async def sync_now(queue: SyncQueue = Depends(get_sync_queue)):
    return await queue.sync_now()


@router.post("/sync/download", response_model=DownloadReport, summary="Pull settings and newer events")
async def download(queue: SyncQueue = Depends(get_sync_queue)):
    return await queue.download_from_cloud()


@router.post("/sync/cleanup", response_model=CleanupReport, summary="Purge synced events past retention")
async def cleanup(body: Optional[CleanupRequest] = None, queue: SyncQueue = Depends(get_sync_queue)):
    return await queue.cleanup(body.days if body else None)


@router.post("/sync/configure", response_model=ConnectionReport, summary="Set remote container credentials")
async def configure(credentials: RemoteCredentials, queue: SyncQueue = Depends(get_sync_queue)):
    """Credentials are only stored when the connection test passes; check `ok`."""
    return await queue.configure_remote(credentials)


@router.post("/sync/test-connection", response_model=ConnectionReport, summary="Probe the configured container")
async def test_connection(queue: SyncQueue = Depends(get_sync_queue)):
    return await queue.test_connection()


@router.put("/sync/network", response_model=SyncStatus, summary="Report a network transition")
async def set_network(body: NetworkStateIn, queue: SyncQueue = Depends(get_sync_queue)):
    queue.set_online(body.online)
    return queue.get_sync_status()


@router.get("/sync/storage", response_model=StorageOverview, summary="Local and remote storage usage")
async def storage(queue: SyncQueue = Depends(get_sync_queue)):
    return await queue.get_storage_overview()
