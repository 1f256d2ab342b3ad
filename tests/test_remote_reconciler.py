# tests/test_remote_reconciler.py
"""Unit tests for the remote object-store reconciler, against an in-memory container."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json
import pytest
from datetime import timedelta
from sentinel.errors import (
    AuthError, NetworkError, NotFoundError, RemoteHTTPError, RemoteNotConfiguredError, SyncErrorKind,
)
from sentinel.schemas.event import EventOut
from sentinel.schemas.settings import RemoteCredentials, SettingsOut
from sentinel.schemas.sync import MediaKind
from sentinel.services.remote_reconciler import (
    PROBE_OBJECT, SETTINGS_OBJECT, RemoteReconciler, event_id_from_object, event_object_name,
    media_object_name,
)
from sentinel.utils.clock import utcnow
from conftest import TEST_URL_TEMPLATE, make_draft


def make_event(event_id="evt_1", image=None, video=None, **draft_kwargs) -> EventOut:
    draft = make_draft(**draft_kwargs)
    return EventOut(
        id=event_id,
        image=image,
        video=video,
        **draft.model_dump(include={"timestamp", "kind", "detections", "confidence", "metadata"}),
    )


class TestObjectNames:
    def test_layout(self):
        assert event_object_name("evt_1") == "events/evt_1.json"
        assert media_object_name("evt_1", MediaKind.IMAGE) == "images/evt_1.jpg"
        assert media_object_name("evt_1", MediaKind.VIDEO) == "videos/evt_1.mp4"
        assert event_id_from_object("events/evt_1.json") == "evt_1"


class TestConfiguration:
    def test_unconfigured(self):
        r = RemoteReconciler(base_url_template=TEST_URL_TEMPLATE)
        assert r.is_configured() is False

    def test_configure_requires_token(self):
        r = RemoteReconciler(base_url_template=TEST_URL_TEMPLATE)
        with pytest.raises(RemoteNotConfiguredError):
            r.configure(RemoteCredentials(account_name="a", container_name="c", access_token=""))

    def test_leading_question_mark_stripped(self, reconciler):
        creds = RemoteCredentials(account_name="acct", container_name="events", access_token="?sv=1&sig=x")
        assert creds.access_token == "sv=1&sig=x"
        reconciler.configure(creds)
        assert reconciler.base_url == "https://acct.blob.test/events"

    @pytest.mark.asyncio
    async def test_upload_when_unconfigured_reports_config_error(self):
        r = RemoteReconciler(base_url_template=TEST_URL_TEMPLATE)
        result = await r.upload_event(make_event())
        assert result.success is False
        assert result.error_kind == SyncErrorKind.CONFIG


class TestUploads:
    @pytest.mark.asyncio
    async def test_event_with_media(self, reconciler, remote_store):
        result = await reconciler.upload_event(make_event(image=b"jpeg", video=b"mp4"))

        assert result.success is True
        assert result.failed_media == []
        assert result.object_url == "https://acct.blob.test/events/events/evt_1.json"
        assert remote_store.names() == ["events/evt_1.json", "images/evt_1.jpg", "videos/evt_1.mp4"]

        doc = json.loads(remote_store.objects["events/evt_1.json"][0])
        assert doc["id"] == "evt_1"
        assert doc["has_image"] is True
        assert doc["has_video"] is True
        assert "image" not in doc

    @pytest.mark.asyncio
    async def test_put_sends_block_blob_header(self, reconciler, remote_store):
        await reconciler.upload_event(make_event())
        put = remote_store.requests[-1]
        assert put.method == "PUT"
        assert put.headers["x-ms-blob-type"] == "BlockBlob"
        assert put.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_media_failure_does_not_fail_event(self, reconciler, remote_store):
        remote_store.fail_status = 500
        remote_store.fail_when = lambda req: req.url.path.endswith(".jpg")

        result = await reconciler.upload_event(make_event(image=b"jpeg"))

        assert result.success is True
        assert result.failed_media == [MediaKind.IMAGE]
        assert remote_store.names() == ["events/evt_1.json"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kind", [
        (401, SyncErrorKind.AUTH),
        (403, SyncErrorKind.AUTH),
        (404, SyncErrorKind.NOT_FOUND),
        (500, SyncErrorKind.HTTP),
    ])
    async def test_status_classification(self, reconciler, remote_store, status, kind):
        remote_store.fail_status = status
        result = await reconciler.upload_event(make_event())
        assert result.success is False
        assert result.error_kind == kind

    @pytest.mark.asyncio
    async def test_network_failure(self, reconciler, remote_store):
        remote_store.offline = True
        result = await reconciler.upload_event(make_event())
        assert result.success is False
        assert result.error_kind == SyncErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_settings_upload_excludes_token(self, reconciler, remote_store, credentials):
        s = SettingsOut(cloud_sync=True, remote=credentials, last_modified=utcnow())
        result = await reconciler.upload_settings(s)

        assert result.success is True
        doc = json.loads(remote_store.objects[SETTINGS_OBJECT][0])
        assert doc["remote"]["account_name"] == "acct"
        assert "access_token" not in doc["remote"]


class TestDownloads:
    @pytest.mark.asyncio
    async def test_download_events_with_media(self, reconciler):
        await reconciler.upload_event(make_event("evt_a", image=b"jpeg"))
        await reconciler.upload_event(make_event("evt_b"))

        events = {e.id: e for e in await reconciler.download_events()}

        assert set(events) == {"evt_a", "evt_b"}
        assert events["evt_a"].image == b"jpeg"
        assert events["evt_a"].video is None
        assert events["evt_b"].image is None

    @pytest.mark.asyncio
    async def test_media_siblings_skipped_when_absent(self, reconciler, remote_store):
        await reconciler.upload_event(make_event("evt_a"))
        before = len(remote_store.requests)

        await reconciler.download_events()

        fetched = [r.url.path for r in remote_store.requests[before:]]
        assert not any(p.endswith(".jpg") or p.endswith(".mp4") for p in fetched)

    @pytest.mark.asyncio
    async def test_since_filter(self, reconciler):
        now = utcnow()
        await reconciler.upload_event(make_event("evt_old", timestamp=now - timedelta(hours=2)))
        await reconciler.upload_event(make_event("evt_new", timestamp=now))

        events = await reconciler.download_events(since=now - timedelta(hours=1))
        assert [e.id for e in events] == ["evt_new"]

    @pytest.mark.asyncio
    async def test_broken_object_skipped(self, reconciler, remote_store):
        await reconciler.upload_event(make_event("evt_ok"))
        remote_store.put("events/evt_bad.json", b"{not json")

        events = await reconciler.download_events()
        assert [e.id for e in events] == ["evt_ok"]

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(self, reconciler, remote_store):
        remote_store.fail_status = 403
        with pytest.raises(AuthError):
            await reconciler.download_events()

    @pytest.mark.asyncio
    async def test_listing_follows_markers(self, reconciler, remote_store):
        remote_store.page_size = 2
        for i in range(5):
            remote_store.put(f"events/evt_{i}.json", b"{}")

        objects = await reconciler.list_objects("events/")
        assert len(objects) == 5

    @pytest.mark.asyncio
    async def test_unreadable_listing(self, reconciler, remote_store):
        remote_store.fail_status = 200
        with pytest.raises(RemoteHTTPError):
            await reconciler.list_objects("events/")

    @pytest.mark.asyncio
    async def test_settings_missing_returns_none(self, reconciler):
        assert await reconciler.download_settings() is None

    @pytest.mark.asyncio
    async def test_settings_round_trip(self, reconciler, credentials):
        s = SettingsOut(alert_threshold=0.7, remote=credentials, last_modified=utcnow())
        await reconciler.upload_settings(s)

        downloaded = await reconciler.download_settings()
        assert downloaded.alert_threshold == 0.7
        assert downloaded.last_modified == s.last_modified
        assert downloaded.remote.access_token == ""


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_cleanup_older_than(self, reconciler, remote_store):
        old = utcnow() - timedelta(days=45)
        remote_store.put("events/evt_old.json", b"{}", last_modified=old)
        remote_store.put("images/evt_old.jpg", b"jpeg", last_modified=old)
        remote_store.put("events/evt_new.json", b"{}")

        deleted = await reconciler.cleanup_older_than(30)

        assert deleted == 1
        assert remote_store.names() == ["events/evt_new.json"]

    @pytest.mark.asyncio
    async def test_storage_info(self, reconciler):
        await reconciler.upload_event(make_event("evt_a", image=b"1234"))
        await reconciler.upload_event(make_event("evt_b"))

        info = await reconciler.get_storage_info()
        assert info.events == 2
        assert info.images == 1
        assert info.videos == 0
        assert info.total_objects == 3
        assert info.estimated_size > 4


class TestConnection:
    @pytest.mark.asyncio
    async def test_success_leaves_no_probe(self, reconciler, remote_store):
        report = await reconciler.test_connection()
        assert report.ok is True
        assert PROBE_OBJECT not in remote_store.objects

    @pytest.mark.asyncio
    async def test_auth_failure(self, reconciler, remote_store):
        remote_store.fail_status = 403
        report = await reconciler.test_connection()
        assert report.ok is False
        assert report.error_kind == SyncErrorKind.AUTH
        assert "permissions" in report.detail

    @pytest.mark.asyncio
    async def test_missing_container(self, remote_store):
        r = RemoteReconciler(base_url_template=TEST_URL_TEMPLATE, transport=remote_store.transport)
        r.configure(RemoteCredentials(account_name="acct", container_name="nope", access_token="sig=1"))
        report = await r.test_connection()
        assert report.ok is False
        assert report.error_kind == SyncErrorKind.NOT_FOUND
        assert "nope" in report.detail

    @pytest.mark.asyncio
    async def test_network_failure(self, reconciler, remote_store):
        remote_store.offline = True
        report = await reconciler.test_connection()
        assert report.error_kind == SyncErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_write_failure_after_listing(self, reconciler, remote_store):
        remote_store.fail_status = 403
        remote_store.fail_when = lambda req: req.method == "PUT"
        report = await reconciler.test_connection()
        assert report.ok is False
        assert "writing failed" in report.detail


class TestErrorTypes:
    def test_kinds(self):
        assert NetworkError("x").kind == SyncErrorKind.NETWORK
        assert AuthError("x", 401).kind == SyncErrorKind.AUTH
        assert NotFoundError("x").status_code is None
