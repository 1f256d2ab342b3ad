# sentinel/dependencies.py
"""
Service wiring. One instance of each service is built at startup, parked on
app.state and handed to routers through FastAPI dependencies.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from sentinel.database import SessionLocal
from sentinel.services.correlation_engine import CorrelationEngine
from sentinel.services.event_store import EventStore
from sentinel.services.remote_reconciler import RemoteReconciler
from sentinel.services.sync_queue import SyncQueue


@dataclass
class Services:
    store: EventStore
    reconciler: RemoteReconciler
    sync_queue: SyncQueue
    correlation: CorrelationEngine


def build_services(session_factory=SessionLocal,
                   transport: Optional[httpx.AsyncBaseTransport] = None,
                   **sync_options) -> Services:
    store = EventStore(session_factory)
    reconciler = RemoteReconciler(transport=transport)
    return Services(
        store=store,
        reconciler=reconciler,
        sync_queue=SyncQueue(store, reconciler, **sync_options),
        correlation=CorrelationEngine(),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(request: Request) -> EventStore:
    return request.app.state.services.store


def get_sync_queue(request: Request) -> SyncQueue:
    return request.app.state.services.sync_queue


def get_correlation(request: Request) -> CorrelationEngine:
    return request.app.state.services.correlation
