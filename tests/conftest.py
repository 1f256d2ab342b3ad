# tests/conftest.py
"""Shared fixtures: in-memory database, store, and a fake remote object store."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from email.utils import format_datetime
from datetime import timezone
from typing import Callable, Optional
from xml.sax.saxutils import escape

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sentinel.database import create_tables
from sentinel.schemas.event import Detection, EventDraft, EventKind, EventMetadata
from sentinel.schemas.settings import RemoteCredentials, SettingsIn
from sentinel.services.event_store import EventStore
from sentinel.services.remote_reconciler import RemoteReconciler
from sentinel.utils.clock import utcnow

TEST_URL_TEMPLATE = "https://{account}.blob.test/{container}"


class FakeObjectStore:
    """
    In-memory stand-in for a blob container, served through httpx.MockTransport.
    Objects live in `objects` as name -> (bytes, last_modified).
    """

    def __init__(self, container: str = "events"):
        self.container = container
        self.objects: dict[str, tuple[bytes, object]] = {}
        self.requests: list[httpx.Request] = []
        self.offline = False
        self.fail_status: Optional[int] = None
        self.fail_when: Optional[Callable[[httpx.Request], bool]] = None
        self.page_size = 1000

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def put(self, name: str, data: bytes, last_modified=None):
        self.objects[name] = (data, last_modified or utcnow())

    def names(self, prefix: str = "") -> list[str]:
        return sorted(n for n in self.objects if n.startswith(prefix))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)
        if self.fail_status is not None and (self.fail_when is None or self.fail_when(request)):
            return httpx.Response(self.fail_status, text="injected failure")

        path = request.url.path.lstrip("/")
        if not path.startswith(self.container):
            return httpx.Response(404, text="ContainerNotFound")
        name = path[len(self.container):].lstrip("/")
        params = request.url.params

        if request.method == "GET" and params.get("comp") == "list":
            return self._listing(params.get("prefix", ""), params.get("marker"))
        if request.method == "PUT":
            self.put(name, request.content)
            return httpx.Response(201)
        if request.method == "GET":
            if name not in self.objects:
                return httpx.Response(404, text="BlobNotFound")
            return httpx.Response(200, content=self.objects[name][0])
        if request.method == "DELETE":
            if self.objects.pop(name, None) is None:
                return httpx.Response(404, text="BlobNotFound")
            return httpx.Response(202)
        return httpx.Response(405)

    def _listing(self, prefix: str, marker: Optional[str]) -> httpx.Response:
        names = self.names(prefix)
        start = int(marker) if marker else 0
        page = names[start:start + self.page_size]
        next_marker = str(start + self.page_size) if start + self.page_size < len(names) else ""

        blobs = []
        for name in page:
            data, modified = self.objects[name]
            blobs.append(
                f"<Blob><Name>{escape(name)}</Name><Properties>"
                f"<Last-Modified>{format_datetime(modified.replace(tzinfo=timezone.utc), usegmt=True)}</Last-Modified>"
                f"<Content-Length>{len(data)}</Content-Length></Properties></Blob>"
            )
        body = (
            '<?xml version="1.0" encoding="utf-8"?>'
            f'<EnumerationResults ContainerName="{self.container}"><Blobs>{"".join(blobs)}</Blobs>'
            f"<NextMarker>{next_marker}</NextMarker></EnumerationResults>"
        )
        return httpx.Response(200, content=body.encode(), headers={"Content-Type": "application/xml"})


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def remote_store():
    return FakeObjectStore()


@pytest.fixture
def credentials(remote_store):
    return RemoteCredentials(account_name="acct", container_name=remote_store.container,
                             access_token="sv=2024&sig=abc")


@pytest.fixture
def reconciler(remote_store, credentials):
    r = RemoteReconciler(base_url_template=TEST_URL_TEMPLATE, timeout=2, transport=remote_store.transport)
    r.configure(credentials)
    return r


def make_draft(kind=EventKind.DETECTION, classes=("person",), timestamp=None,
               image=None, video=None, device="dev-1", camera="cam-1", location="entrance"):
    data = dict(
        kind=kind,
        detections=[Detection(class_name=c, score=0.9) for c in classes],
        confidence=0.9 if classes else 0.0,
        image=image,
        video=video,
        metadata=EventMetadata(device_id=device, camera_id=camera, location=location),
    )
    if timestamp is not None:
        data["timestamp"] = timestamp
    return EventDraft(**data)


def sync_settings(credentials=None, **overrides) -> SettingsIn:
    return SettingsIn(cloud_sync=True, remote=credentials, **overrides)


@pytest.fixture
def draft_factory():
    return make_draft


@pytest.fixture
def cloud_settings(credentials):
    return sync_settings(credentials)
