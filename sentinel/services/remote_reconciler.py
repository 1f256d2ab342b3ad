# sentinel/services/remote_reconciler.py
"""
Remote reconciler — maps sync work onto a token-authenticated object store.

Object layout inside the container:
    events/<event id>.json        event metadata (no media)
    images/<event id>.jpg         still image, optional
    videos/<event id>.mp4         clip, optional
    settings/app_settings.json    settings snapshot
    test/connection_test.json     throwaway probe written by test_connection()

The access token is appended verbatim as the query string of every request.
There is no mid-flight cancellation; the client timeout is the only way a
call is cut short, and a timeout surfaces as NetworkError.
"""

import json
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

import httpx

from sentinel.config import settings
from sentinel.errors import (
    AuthError, NetworkError, NotFoundError, RemoteError, RemoteHTTPError,
    RemoteNotConfiguredError, SyncErrorKind,
)
from sentinel.schemas.event import EventOut
from sentinel.schemas.settings import RemoteCredentials, SettingsOut
from sentinel.schemas.sync import (
    ConnectionReport, MediaKind, RemoteObject, RemoteStorageInfo, UploadResult,
)
from sentinel.utils.clock import utcnow
from sentinel.utils.logger import get_logger
from sentinel.utils.xml_parser import parse_blob_listing

logger = get_logger(__name__)

EVENTS_PREFIX = "events/"
SETTINGS_OBJECT = "settings/app_settings.json"
PROBE_OBJECT = "test/connection_test.json"


def event_object_name(event_id: str) -> str:
    return f"{EVENTS_PREFIX}{event_id}.json"


def media_object_name(event_id: str, media: MediaKind) -> str:
    return f"{media.prefix}{event_id}{media.extension}"


def event_id_from_object(name: str) -> str:
    return name[len(EVENTS_PREFIX):].removesuffix(".json")


def _json_bytes(data: dict) -> bytes:
    return json.dumps(data, indent=2).encode("utf-8")


def _failure(e: RemoteError) -> UploadResult:
    return UploadResult(success=False, error=str(e), error_kind=e.kind)


class RemoteReconciler:
    def __init__(
        self,
        base_url_template: str = settings.REMOTE_BASE_URL_TEMPLATE,
        timeout: float = settings.REMOTE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url_template = base_url_template
        self._timeout = timeout
        self._transport = transport
        self._credentials: Optional[RemoteCredentials] = None
        self._base_url = ""

    # ── Configuration ─────────────────────────────────────────────────────

    def configure(self, credentials: RemoteCredentials) -> None:
        if not credentials.access_token:
            raise RemoteNotConfiguredError("An access token is required to reach the remote store")
        self._credentials = credentials
        self._base_url = self._base_url_template.format(
            account=credentials.account_name,
            container=credentials.container_name,
        ).rstrip("/")
        logger.info(f"☁️ [REMOTE] Configured for {self._base_url}")

    def is_configured(self) -> bool:
        return self._credentials is not None and bool(self._credentials.access_token)

    @property
    def base_url(self) -> str:
        return self._base_url

    # ── Uploads ───────────────────────────────────────────────────────────

    async def upload_event(self, event: EventOut) -> UploadResult:
        """
        Write events/<id>.json, then each media payload as its own object.
        Media failures do not fail the metadata upload; they are listed in
        failed_media so the caller can queue them separately.
        """
        if not self.is_configured():
            return _failure(RemoteNotConfiguredError("Remote store not configured"))

        try:
            url = await self._put(event_object_name(event.id), _json_bytes(event.remote_document()),
                                  "application/json")
        except RemoteError as e:
            logger.error(f"❌ [REMOTE] Upload failed for event {event.id}: {e}")
            return _failure(e)

        failed_media: list[MediaKind] = []
        for media, data in ((MediaKind.IMAGE, event.image), (MediaKind.VIDEO, event.video)):
            if data is None:
                continue
            result = await self.upload_media(event.id, media, data)
            if not result.success:
                failed_media.append(media)

        return UploadResult(success=True, object_url=url, failed_media=failed_media)

    async def upload_media(self, event_id: str, media: MediaKind, data: bytes) -> UploadResult:
        if not self.is_configured():
            return _failure(RemoteNotConfiguredError("Remote store not configured"))
        try:
            url = await self._put(media_object_name(event_id, media), data, media.content_type)
        except RemoteError as e:
            logger.warning(f"⚠️ [REMOTE] {media.value} upload failed for {event_id}: {e}")
            return _failure(e)
        return UploadResult(success=True, object_url=url)

    async def upload_settings(self, app_settings: SettingsOut) -> UploadResult:
        if not self.is_configured():
            return _failure(RemoteNotConfiguredError("Remote store not configured"))
        body = app_settings.model_dump(mode="json", exclude={"remote": {"access_token"}})
        try:
            url = await self._put(SETTINGS_OBJECT, _json_bytes(body), "application/json")
        except RemoteError as e:
            logger.error(f"❌ [REMOTE] Settings upload failed: {e}")
            return _failure(e)
        return UploadResult(success=True, object_url=url)

    # ── Downloads ─────────────────────────────────────────────────────────

    async def download_events(self, since: Optional[datetime] = None) -> list[EventOut]:
        """
        Fetch every remote event (optionally only those at/after `since`) with
        whatever media siblings exist. A listing failure propagates; a broken
        individual object is logged and skipped.
        """
        self._require_configured()
        events: list[EventOut] = []

        for obj in await self.list_objects(EVENTS_PREFIX):
            if not obj.name.endswith(".json"):
                continue
            try:
                doc = json.loads(await self._get(obj.name))
                event = EventOut.model_validate(doc)
            except (RemoteError, ValueError) as e:
                logger.warning(f"⚠️ [REMOTE] Skipping {obj.name}: {e}")
                continue

            if since is not None and event.timestamp < since:
                continue

            media = {}
            for kind in MediaKind:
                if doc.get(f"has_{kind.value}") is False:
                    continue
                media[kind.value] = await self._get_optional(media_object_name(event.id, kind))
            events.append(event.model_copy(update=media))

        logger.info(f"☁️ [REMOTE] Downloaded {len(events)} events")
        return events

    async def download_settings(self) -> Optional[SettingsOut]:
        """Remote settings snapshot, or None when none has been uploaded yet."""
        self._require_configured()
        try:
            raw = await self._get(SETTINGS_OBJECT)
        except NotFoundError:
            logger.info("☁️ [REMOTE] No settings stored remotely")
            return None
        return SettingsOut.model_validate(json.loads(raw))

    # ── Maintenance ───────────────────────────────────────────────────────

    async def cleanup_older_than(self, days: int) -> int:
        """Delete remote events (and their media) last modified before the cutoff."""
        self._require_configured()
        cutoff = utcnow() - timedelta(days=days)
        deleted = 0

        for obj in await self.list_objects(EVENTS_PREFIX):
            if obj.last_modified is None or obj.last_modified >= cutoff:
                continue
            event_id = event_id_from_object(obj.name)
            try:
                await self._delete(obj.name)
            except RemoteError as e:
                logger.warning(f"⚠️ [REMOTE] Failed to delete {obj.name}: {e}")
                continue
            for kind in MediaKind:
                try:
                    await self._delete(media_object_name(event_id, kind))
                except RemoteError as e:
                    logger.warning(f"⚠️ [REMOTE] Failed to delete {kind.value} of {event_id}: {e}")
            deleted += 1

        logger.info(f"🧹 [REMOTE] Cleaned up {deleted} old events")
        return deleted

    async def test_connection(self) -> ConnectionReport:
        """List the container, then write and delete a probe object."""
        if not self.is_configured():
            return ConnectionReport(ok=False, error_kind=SyncErrorKind.CONFIG,
                                    detail="Remote store not configured")

        container = self._credentials.container_name
        try:
            await self._request("GET", self._listing_url("test/"))
        except AuthError as e:
            return ConnectionReport(ok=False, error_kind=e.kind, detail=(
                "Access denied: check the access token grants read, write, delete "
                "and list permissions and has not expired."))
        except NotFoundError as e:
            return ConnectionReport(ok=False, error_kind=e.kind, detail=(
                f"Container '{container}' not found: create it or fix the account "
                "and container names."))
        except NetworkError as e:
            return ConnectionReport(ok=False, error_kind=e.kind, detail=(
                f"Network error reaching {self._base_url}: check connectivity, DNS "
                f"and the storage account's CORS rules ({e})."))
        except RemoteError as e:
            return ConnectionReport(ok=False, error_kind=e.kind, detail=str(e))

        probe = {"test": True, "timestamp": utcnow().isoformat(), "message": "Connection test"}
        try:
            await self._put(PROBE_OBJECT, _json_bytes(probe), "application/json")
        except RemoteError as e:
            return ConnectionReport(ok=False, error_kind=e.kind,
                                    detail=f"Listing works but writing failed: {e}")

        try:
            await self._delete(PROBE_OBJECT)
        except RemoteError as e:
            logger.warning(f"⚠️ [REMOTE] Could not remove probe object: {e}")

        logger.info("☁️ [REMOTE] Connection test successful")
        return ConnectionReport(ok=True, detail="Connection OK: list, write and delete succeeded")

    async def get_storage_info(self) -> RemoteStorageInfo:
        self._require_configured()
        events = await self.list_objects(EVENTS_PREFIX)
        images = await self.list_objects(MediaKind.IMAGE.prefix)
        videos = await self.list_objects(MediaKind.VIDEO.prefix)
        everything = events + images + videos
        return RemoteStorageInfo(
            total_objects=len(everything),
            estimated_size=sum(o.size or 0 for o in everything),
            events=len(events),
            images=len(images),
            videos=len(videos),
        )

    async def list_objects(self, prefix: str = "") -> list[RemoteObject]:
        """All objects under `prefix`, following continuation markers."""
        objects: list[RemoteObject] = []
        marker = None
        while True:
            response = await self._request("GET", self._listing_url(prefix, marker))
            try:
                page, marker = parse_blob_listing(response.content)
            except ValueError as e:
                raise RemoteHTTPError(f"Unreadable listing for '{prefix}': {e}",
                                      response.status_code) from e
            objects.extend(page)
            if not marker:
                return objects

    # ── HTTP plumbing ─────────────────────────────────────────────────────

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise RemoteNotConfiguredError("Remote store not configured")

    def _object_url(self, name: str) -> str:
        return f"{self._base_url}/{name}?{self._credentials.access_token}"

    def _listing_url(self, prefix: str, marker: Optional[str] = None) -> str:
        url = f"{self._base_url}?restype=container&comp=list&prefix={quote(prefix)}"
        if marker:
            url += f"&marker={quote(marker)}"
        return f"{url}&{self._credentials.access_token}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(self, method: str, url: str, allow_404: bool = False, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} failed: {e}") from e
        except httpx.InvalidURL as e:
            raise RemoteNotConfiguredError(f"Invalid remote URL: {e}") from e

        if response.is_success or (allow_404 and response.status_code == 404):
            return response
        self._raise_for_status(response)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status in (401, 403):
            raise AuthError("Access denied. Check the access token permissions and expiration.", status)
        if status == 404:
            raise NotFoundError("Container or object not found. Check the account and container names.", status)
        raise RemoteHTTPError(f"HTTP {status}: {response.text[:200]}", status)

    async def _put(self, name: str, content: bytes, content_type: str) -> str:
        await self._request(
            "PUT",
            self._object_url(name),
            content=content,
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
        )
        logger.debug(f"[REMOTE] PUT {name} ({len(content)} bytes)")
        return f"{self._base_url}/{name}"

    async def _get(self, name: str) -> bytes:
        response = await self._request("GET", self._object_url(name))
        return response.content

    async def _get_optional(self, name: str) -> Optional[bytes]:
        try:
            return await self._get(name)
        except NotFoundError:
            return None
        except RemoteError as e:
            logger.warning(f"⚠️ [REMOTE] Could not fetch {name}: {e}")
            return None

    async def _delete(self, name: str) -> None:
        # Deleting something already gone is fine
        await self._request("DELETE", self._object_url(name), allow_404=True)
