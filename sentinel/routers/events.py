# sentinel/routers/events.py
"""
Local event log.
POST /events            — producer entry point (detections, motion, alerts, manual).
GET  /events            — newest-first listing with optional filters.
GET  /events/stats      — local storage usage and queue depth.
GET  /events/{id}       — single event (media is never returned over JSON).
POST /events/{id}/synced — operator override: mark an event as uploaded.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from sentinel.dependencies import get_correlation, get_store
from sentinel.errors import NotFoundError
from sentinel.schemas.correlation import SourceDevice
from sentinel.schemas.event import EventCreate, EventFilter, EventKind, EventOut, StorageStats
from sentinel.services.correlation_engine import CorrelationEngine
from sentinel.services.event_store import EventStore
from sentinel.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)

UNASSIGNED_LOCATION = "unassigned"


@router.post("/events", response_model=EventOut, status_code=201, summary="Record a security event")
async def create_event(
    body: EventCreate,
    store: EventStore = Depends(get_store),
    correlation: CorrelationEngine = Depends(get_correlation),
):
    """
    Persists the event locally first. Cloud upload happens later from the
    sync queue; this call never touches the network.
    """
    event = await store.save_event(body.to_draft())

    # Local events feed the dashboard as this device's stream
    await correlation.ingest_event(event, SourceDevice(
        id=event.metadata.device_id,
        name=event.metadata.camera_id,
        location=event.metadata.location or UNASSIGNED_LOCATION,
    ))
    return event


@router.get("/events", response_model=list[EventOut], summary="List local events")
async def list_events(
    limit: int = 50,
    since: Optional[datetime] = None,
    kind: Optional[EventKind] = None,
    only_unsynced: bool = False,
    store: EventStore = Depends(get_store),
):
    return await store.get_events(EventFilter(limit=limit, since=since, kind=kind, only_unsynced=only_unsynced))


@router.get("/events/stats", response_model=StorageStats, summary="Local storage statistics")
async def storage_stats(store: EventStore = Depends(get_store)):
    return await store.get_storage_stats()


@router.get("/events/{event_id}", response_model=EventOut, summary="Get one event")
async def get_event(event_id: str, store: EventStore = Depends(get_store)):
    event = await store.get_event(event_id, include_media=False)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    return event


@router.post("/events/{event_id}/synced", summary="Mark an event as synced")
async def mark_synced(event_id: str, store: EventStore = Depends(get_store)):
    await store.mark_event_synced(event_id)
    logger.info(f"✅ Event {event_id} marked synced by operator")
    return {"status": "ok", "event_id": event_id}
