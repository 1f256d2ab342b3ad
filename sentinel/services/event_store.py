# sentinel/services/event_store.py
"""
Local-first durable store for events, the settings singleton and the sync queue.

One EventStore is built at startup and handed to the sync queue and the
routers. Each public operation is its own short session/transaction. Persisting
an event and enqueueing its sync item are two writes; requeue_unsynced
repairs events left without a queue item.
"""

import uuid
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import defer

from sentinel.config import settings as app_config
from sentinel.database import SessionLocal
from sentinel.errors import ConflictError, NotFoundError, QuotaError, StorageError
from sentinel.models.app_settings import AppSettings, SETTINGS_ID
from sentinel.models.security_event import SecurityEvent
from sentinel.models.sync_queue_item import SyncQueueItem
from sentinel.schemas.event import (
    EventDraft, EventFilter, EventKind, EventMetadata, EventOut, StorageStats,
)
from sentinel.schemas.settings import RemoteCredentials, SettingsIn, SettingsOut
from sentinel.schemas.sync import QueueEntry, SyncItemKind
from sentinel.utils.clock import utcnow
from sentinel.utils.logger import get_logger

logger = get_logger(__name__)

SETTINGS_QUEUE_ID = "sync_settings"
SETTINGS_PRIORITY = 5
DEFAULT_QUEUE_LIMIT = 10
DUPLICATE_WINDOW = timedelta(seconds=1)
# Rough per-row cost of the JSON columns and indexes, on top of media bytes
RECORD_OVERHEAD_BYTES = 512


def new_event_id() -> str:
    return f"evt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


def event_queue_id(event_id: str) -> str:
    return f"sync_{event_id}"


def event_priority(event: EventDraft) -> int:
    """Higher number = more urgent."""
    match event.kind:
        case EventKind.ALERT:
            return 5
        case EventKind.DETECTION:
            return 4 if event.has_person else 3
        case EventKind.MOTION:
            return 2
        case EventKind.MANUAL:
            return 1


def _to_event(row: SecurityEvent, include_media: bool = True) -> EventOut:
    return EventOut(
        id=row.id,
        timestamp=row.timestamp,
        kind=EventKind(row.kind),
        detections=row.detections or [],
        confidence=row.confidence,
        image=row.image_data if include_media else None,
        video=row.video_data if include_media else None,
        metadata=EventMetadata(
            device_id=row.device_id,
            camera_id=row.camera_id,
            location=row.location,
            duration=row.duration,
        ),
        synced=row.synced,
        sync_attempts=row.sync_attempts,
        last_sync_attempt=row.last_sync_attempt,
    )


def _to_row(event: EventOut) -> SecurityEvent:
    return SecurityEvent(
        id=event.id,
        timestamp=event.timestamp,
        kind=event.kind.value,
        detections=[d.model_dump() for d in event.detections],
        confidence=event.confidence,
        image_data=event.image,
        video_data=event.video,
        device_id=event.metadata.device_id,
        camera_id=event.metadata.camera_id,
        location=event.metadata.location,
        duration=event.metadata.duration,
        synced=event.synced,
        sync_attempts=event.sync_attempts,
        last_sync_attempt=event.last_sync_attempt,
    )


def _to_settings(row: AppSettings) -> SettingsOut:
    remote = None
    if row.remote_account and row.remote_container:
        remote = RemoteCredentials(
            account_name=row.remote_account,
            container_name=row.remote_container,
            access_token=row.remote_access_token or "",
        )
    return SettingsOut(
        alert_threshold=row.alert_threshold,
        recording_enabled=row.recording_enabled,
        cloud_sync=row.cloud_sync,
        sync_only_on_wifi=row.sync_only_on_wifi,
        max_local_storage_mb=row.max_local_storage_mb,
        retention_days=row.retention_days,
        remote=remote,
        last_modified=row.last_modified,
        synced=row.synced,
    )


def _settings_row(s: SettingsOut) -> AppSettings:
    return AppSettings(
        id=SETTINGS_ID,
        alert_threshold=s.alert_threshold,
        recording_enabled=s.recording_enabled,
        cloud_sync=s.cloud_sync,
        sync_only_on_wifi=s.sync_only_on_wifi,
        max_local_storage_mb=s.max_local_storage_mb,
        retention_days=s.retention_days,
        remote_account=s.remote.account_name if s.remote else None,
        remote_container=s.remote.container_name if s.remote else None,
        remote_access_token=s.remote.access_token if s.remote else None,
        last_modified=s.last_modified,
        synced=s.synced,
    )


def _same_snapshot(row: SyncQueueItem, item: QueueEntry) -> bool:
    return row.created_at == item.created_at and row.payload == item.payload


def _media_deferred(query):
    return query.options(defer(SecurityEvent.image_data), defer(SecurityEvent.video_data))


class EventStore:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, action: str):
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[STORE] {action} failed: {e}")
            raise StorageError(f"{action} failed: {e}") from e
        finally:
            db.close()

    # ── Events ────────────────────────────────────────────────────────────

    async def save_event(self, draft: EventDraft) -> EventOut:
        """
        Persist a freshly captured event and, when cloud sync is on, enqueue it.
        Raises StorageError (QuotaError when the local cap is exhausted).
        """
        current = await self.get_settings()
        await self._ensure_capacity(current, draft)

        event = EventOut(
            **draft.model_dump(include={"timestamp", "kind", "detections", "confidence", "metadata"}),
            image=draft.image,
            video=draft.video,
            id=new_event_id(),
            synced=False,
            sync_attempts=0,
        )
        with self._session("save event") as db:
            db.add(_to_row(event))
            db.commit()

        if current is not None and current.cloud_sync:
            await self.add_to_sync_queue(QueueEntry(
                id=event_queue_id(event.id),
                event_id=event.id,
                kind=SyncItemKind.EVENT,
                payload=event.remote_document(),
                priority=event_priority(event),
            ))

        logger.info(f"📁 [STORE] Event saved locally: {event.id} kind={event.kind.value}")
        return event

    async def get_event(self, event_id: str, include_media: bool = True) -> Optional[EventOut]:
        with self._session("get event") as db:
            q = db.query(SecurityEvent).filter(SecurityEvent.id == event_id)
            if not include_media:
                q = _media_deferred(q)
            row = q.first()
            return _to_event(row, include_media) if row else None

    async def get_events(self, filters: Optional[EventFilter] = None,
                         include_media: bool = False) -> list[EventOut]:
        """Newest first. Filtering and the limit run in SQL against the timestamp index."""
        filters = filters or EventFilter()
        with self._session("list events") as db:
            q = db.query(SecurityEvent)
            if not include_media:
                q = _media_deferred(q)
            if filters.since is not None:
                q = q.filter(SecurityEvent.timestamp >= filters.since)
            if filters.kind is not None:
                q = q.filter(SecurityEvent.kind == filters.kind.value)
            if filters.only_unsynced:
                q = q.filter(SecurityEvent.synced.is_(False))
            q = q.order_by(SecurityEvent.timestamp.desc(), SecurityEvent.id.desc())
            if filters.limit:
                q = q.limit(filters.limit)
            return [_to_event(row, include_media) for row in q.all()]

    async def mark_event_synced(self, event_id: str) -> None:
        """Idempotent. Raises NotFoundError for unknown ids."""
        with self._session("mark event synced") as db:
            row = db.get(SecurityEvent, event_id)
            if row is None:
                raise NotFoundError(f"Event {event_id} not found")
            if row.synced:
                return
            row.synced = True
            row.last_sync_attempt = utcnow()
            db.commit()

    async def record_sync_attempt(self, event_id: str) -> None:
        """Bump sync_attempts after a failed upload. Unknown ids are ignored."""
        with self._session("record sync attempt") as db:
            row = db.get(SecurityEvent, event_id)
            if row is None:
                return
            row.sync_attempts = (row.sync_attempts or 0) + 1
            row.last_sync_attempt = utcnow()
            db.commit()

    async def cleanup_old_events(self, days: int) -> int:
        """Delete synced events older than `days`. Unsynced events are never removed."""
        cutoff = utcnow() - timedelta(days=days)
        with self._session("cleanup old events") as db:
            deleted = (
                db.query(SecurityEvent)
                .filter(SecurityEvent.synced.is_(True), SecurityEvent.timestamp < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.info(f"🧹 [STORE] Cleaned up {deleted} old events (older than {days} days)")
        return deleted

    async def get_storage_stats(self) -> StorageStats:
        with self._session("storage stats") as db:
            total = db.query(func.count(SecurityEvent.id)).scalar() or 0
            unsynced = (
                db.query(func.count(SecurityEvent.id))
                .filter(SecurityEvent.synced.is_(False))
                .scalar() or 0
            )
            queue_length = db.query(func.count(SyncQueueItem.id)).scalar() or 0
            used = self._estimate_bytes(db)
        return StorageStats(
            total_events=total,
            unsynced_events=unsynced,
            storage_used_bytes=used,
            queue_length=queue_length,
        )

    # ── Download-side merge ───────────────────────────────────────────────

    async def find_duplicate(self, timestamp: datetime, detection_count: int) -> Optional[EventOut]:
        """A local event within 1s of `timestamp` with the same number of detections."""
        with self._session("find duplicate") as db:
            return self._find_duplicate(db, timestamp, detection_count)

    async def import_remote_event(self, event: EventOut) -> EventOut:
        """
        Insert an event downloaded from the remote store as already synced.
        Raises ConflictError when the id exists or a duplicate is found.
        Never enqueues: the remote already has it.
        """
        imported = event.model_copy(update={"synced": True, "last_sync_attempt": utcnow()})
        with self._session("import remote event") as db:
            if db.get(SecurityEvent, event.id) is not None:
                raise ConflictError(f"Event {event.id} already stored locally")
            dup = self._find_duplicate(db, event.timestamp, len(event.detections))
            if dup is not None:
                raise ConflictError(f"Event {event.id} duplicates local event {dup.id}")
            db.add(_to_row(imported))
            db.commit()
        return imported

    async def requeue_unsynced(self, include_failed: bool = False) -> int:
        """
        Recovery sweep for events persisted without a queue item (crash between
        the two writes). Events that already exhausted their retries are left
        alone unless include_failed is set.
        """
        current = await self.get_settings()
        if current is None or not current.cloud_sync:
            return 0

        with self._session("requeue unsynced") as db:
            queued = select(SyncQueueItem.event_id)
            q = db.query(SecurityEvent).filter(
                SecurityEvent.synced.is_(False),
                SecurityEvent.id.not_in(queued),
            )
            if not include_failed:
                q = q.filter(SecurityEvent.sync_attempts == 0)
            orphans = [_to_event(row) for row in q.all()]

        for event in orphans:
            await self.add_to_sync_queue(QueueEntry(
                id=event_queue_id(event.id),
                event_id=event.id,
                kind=SyncItemKind.EVENT,
                payload=event.remote_document(),
                priority=event_priority(event),
            ))
        if orphans:
            logger.warning(f"🔁 [STORE] Re-queued {len(orphans)} unsynced events")
        return len(orphans)

    # ── Settings ──────────────────────────────────────────────────────────

    async def get_settings(self) -> Optional[SettingsOut]:
        with self._session("get settings") as db:
            row = db.get(AppSettings, SETTINGS_ID)
            return _to_settings(row) if row else None

    async def save_settings(self, new_settings: SettingsIn) -> SettingsOut:
        """
        Always stamps a fresh last_modified. Enqueues a settings upload when
        cloud sync is on. The access token never leaves the device.
        """
        saved = SettingsOut(
            **new_settings.model_dump(exclude={"last_modified", "synced"}),
            last_modified=utcnow(),
            synced=False,
        )
        self._write_settings(saved)

        if saved.cloud_sync:
            await self.add_to_sync_queue(QueueEntry(
                id=SETTINGS_QUEUE_ID,
                event_id=SETTINGS_ID,
                kind=SyncItemKind.SETTINGS,
                payload=saved.model_dump(mode="json", exclude={"remote": {"access_token"}}),
                priority=SETTINGS_PRIORITY,
            ))

        logger.info(f"⚙️ [STORE] Settings saved locally (cloud_sync={saved.cloud_sync})")
        return saved

    async def apply_remote_settings(self, incoming: SettingsOut) -> bool:
        """
        Last-writer-wins merge of a downloaded settings record. Local remote
        credentials are kept. Returns True when the local record was replaced.
        """
        local = await self.get_settings()
        if local is not None and incoming.last_modified <= local.last_modified:
            return False
        merged = incoming.model_copy(update={
            "remote": local.remote if local is not None else incoming.remote,
            "synced": True,
        })
        self._write_settings(merged)
        logger.info(f"⚙️ [STORE] Settings replaced by remote copy from {incoming.last_modified}")
        return True

    async def mark_settings_synced(self, last_modified: Optional[datetime] = None) -> bool:
        """
        Flag the settings record as uploaded. With `last_modified`, only the
        revision that was actually uploaded is flagged; a newer local save
        stays unsynced and returns False.
        """
        with self._session("mark settings synced") as db:
            row = db.get(AppSettings, SETTINGS_ID)
            if row is None:
                raise NotFoundError("Settings record not found")
            if last_modified is not None and row.last_modified != last_modified:
                logger.info("⚙️ [STORE] Settings changed since upload — left unsynced")
                return False
            row.synced = True
            db.commit()
            return True

    def _write_settings(self, s: SettingsOut) -> None:
        with self._session("save settings") as db:
            db.merge(_settings_row(s))
            db.commit()

    # ── Sync queue ────────────────────────────────────────────────────────

    async def add_to_sync_queue(self, item: QueueEntry) -> None:
        """Insert or overwrite by id."""
        with self._session("enqueue sync item") as db:
            db.merge(SyncQueueItem(
                id=item.id,
                event_id=item.event_id,
                kind=item.kind.value,
                payload=item.payload,
                priority=item.priority,
                attempts=item.attempts,
                last_attempt=item.last_attempt,
                error=item.error,
                created_at=item.created_at,
            ))
            db.commit()

    async def get_sync_queue(self, limit: int = DEFAULT_QUEUE_LIMIT) -> list[QueueEntry]:
        """Highest priority first; FIFO within a priority."""
        with self._session("read sync queue") as db:
            rows = (
                db.query(SyncQueueItem)
                .order_by(SyncQueueItem.priority.desc(), SyncQueueItem.created_at.asc())
                .limit(limit)
                .all()
            )
            return [QueueEntry.model_validate(row) for row in rows]

    async def remove_sync_queue_item(self, item_id: str, dispatched: Optional[QueueEntry] = None) -> bool:
        """
        Delete by id. With `dispatched`, the row is only deleted while it still
        holds that snapshot; a row re-queued under the same id in the meantime
        is kept and False is returned.
        """
        with self._session("remove sync item") as db:
            row = db.get(SyncQueueItem, item_id)
            if row is None:
                return False
            if dispatched is not None and not _same_snapshot(row, dispatched):
                logger.info(f"[STORE] Sync item {item_id} was replaced while in flight — keeping the newer one")
                return False
            db.delete(row)
            db.commit()
            return True

    async def record_sync_failure(self, item: QueueEntry, attempts: int, error: Optional[str]) -> bool:
        """
        Bump the retry bookkeeping on the row that was dispatched. The payload
        is never rewritten, so a newer snapshot queued meanwhile is untouched
        (False is returned and its attempts stay as they were).
        """
        with self._session("record sync failure") as db:
            row = db.get(SyncQueueItem, item.id)
            if row is None or not _same_snapshot(row, item):
                return False
            row.attempts = attempts
            row.last_attempt = utcnow()
            row.error = error
            db.commit()
            return True

    async def count_sync_queue(self) -> int:
        with self._session("count sync queue") as db:
            return db.query(func.count(SyncQueueItem.id)).scalar() or 0

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _ensure_capacity(self, current: Optional[SettingsOut], draft: EventDraft) -> None:
        cap_mb = current.max_local_storage_mb if current else app_config.DEFAULT_MAX_LOCAL_STORAGE_MB
        retention = current.retention_days if current else app_config.DEFAULT_RETENTION_DAYS
        cap = cap_mb * 1024 * 1024
        incoming = len(draft.image or b"") + len(draft.video or b"") + RECORD_OVERHEAD_BYTES

        with self._session("estimate storage") as db:
            used = self._estimate_bytes(db)
        if used + incoming <= cap:
            return

        logger.warning(
            f"⚠️ [STORE] Local storage at capacity ({used}/{cap} bytes) — purging synced events"
        )
        await self.cleanup_old_events(retention)
        with self._session("estimate storage") as db:
            used = self._estimate_bytes(db)
        if used + incoming > cap:
            raise QuotaError(f"Local storage full: {used} of {cap} bytes used")

    @staticmethod
    def _estimate_bytes(db) -> int:
        media, count = db.query(
            func.coalesce(func.sum(func.length(SecurityEvent.image_data)), 0)
            + func.coalesce(func.sum(func.length(SecurityEvent.video_data)), 0),
            func.count(SecurityEvent.id),
        ).one()
        return int(media or 0) + int(count or 0) * RECORD_OVERHEAD_BYTES

    @staticmethod
    def _find_duplicate(db, timestamp: datetime, detection_count: int) -> Optional[EventOut]:
        rows = (
            _media_deferred(db.query(SecurityEvent))
            .filter(
                SecurityEvent.timestamp >= timestamp - DUPLICATE_WINDOW,
                SecurityEvent.timestamp <= timestamp + DUPLICATE_WINDOW,
            )
            .all()
        )
        for row in rows:
            if len(row.detections or []) == detection_count:
                return _to_event(row, include_media=False)
        return None
