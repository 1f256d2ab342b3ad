# sentinel/routers/dashboard.py
"""
Multi-device dashboard. Read-only views over the correlation engine plus an
ingest endpoint for events produced on other devices.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from sentinel.dependencies import get_correlation
from sentinel.errors import NotFoundError
from sentinel.schemas.correlation import (
    AggregateFilter, AlertLevel, DeviceEventSummary, IngestRequest,
    LocationEventSummary, MultiDeviceEvent,
)
from sentinel.schemas.event import EventOut
from sentinel.services.correlation_engine import CorrelationEngine
from sentinel.services.event_store import new_event_id

router = APIRouter()


@router.get("/dashboard/events", response_model=list[MultiDeviceEvent], summary="Events across all devices")
def aggregated_events(
    device_id: Optional[list[str]] = Query(None),
    location: Optional[list[str]] = Query(None),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    object_class: Optional[list[str]] = Query(None),
    alert_level: Optional[AlertLevel] = None,
    limit: Optional[int] = Query(None, ge=1),
    correlation: CorrelationEngine = Depends(get_correlation),
):
    """Repeat a list parameter to match any of several values, e.g. ?device_id=a&device_id=b."""
    return correlation.get_aggregated_events(AggregateFilter(
        device_ids=device_id,
        locations=location,
        start=start,
        end=end,
        object_classes=object_class,
        alert_level=alert_level,
        limit=limit,
    ))


@router.get("/dashboard/devices", response_model=list[DeviceEventSummary], summary="Per-device summaries")
def device_summaries(correlation: CorrelationEngine = Depends(get_correlation)):
    return correlation.get_device_event_summaries()


@router.get("/dashboard/locations", response_model=list[LocationEventSummary], summary="Per-location summaries")
def location_summaries(correlation: CorrelationEngine = Depends(get_correlation)):
    return correlation.get_location_event_summaries()


@router.get("/dashboard/correlations/{correlation_id}", response_model=list[MultiDeviceEvent],
            summary="Events linked under one correlation id")
def correlated_events(correlation_id: str, correlation: CorrelationEngine = Depends(get_correlation)):
    events = correlation.get_correlation(correlation_id)
    if not events:
        raise NotFoundError(f"Correlation {correlation_id} not found")
    return events


@router.post("/dashboard/ingest", response_model=MultiDeviceEvent, status_code=201,
             summary="Ingest an event from another device")
async def ingest(body: IngestRequest, correlation: CorrelationEngine = Depends(get_correlation)):
    """Remote-device events are correlated in memory only; they are not written to the local store."""
    draft = body.event.to_draft()
    event = EventOut(
        **draft.model_dump(include={"timestamp", "kind", "detections", "confidence", "metadata"}),
        id=new_event_id(),
    )
    return await correlation.ingest_event(event, body.source_device)
