# sentinel/services/sync_queue.py
"""
Background sync queue — drains pending work against the remote reconciler.

At most one drain pass runs at a time: `_processing` is flipped before the
first await, so a second trigger (timer, manual or network transition) that
arrives mid-pass gets the current status back and does nothing.

Items are handled one by one, highest priority first, with a fixed pause
between them. A failed item is put back with attempts+1 until it reaches
MAX_SYNC_RETRIES, then it is dropped and reported as a terminal failure.
Any exception raised while handling an item counts as a failed attempt.
The event itself always stays in the local store.

Queue rows are only removed or updated while they still hold the snapshot
that was dispatched; a row re-queued under the same id mid-upload (settings
saved again) survives the pass untouched.
"""

import asyncio
from typing import Callable, Optional, Union

from sentinel.config import settings
from sentinel.errors import (
    ConflictError, NotFoundError, RemoteError, RemoteNotConfiguredError, StorageError,
)
from sentinel.schemas.event import EventFilter, EventOut
from sentinel.schemas.settings import RemoteCredentials, SettingsIn, SettingsOut
from sentinel.schemas.sync import (
    CleanupReport, ConnectionReport, DownloadReport, MediaKind, QueueEntry,
    StorageOverview, SyncItemKind, SyncProgress, SyncStatus, UploadResult,
)
from sentinel.services.event_store import EventStore
from sentinel.services.remote_reconciler import RemoteReconciler
from sentinel.utils.clock import utcnow
from sentinel.utils.logger import get_logger

logger = get_logger(__name__)

BLOB_PRIORITY = 1

SyncListener = Callable[[Union[SyncStatus, SyncProgress]], None]


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"❌ [SYNC] {task.get_name()} failed: {error}", exc_info=error)


class SyncQueue:
    def __init__(
        self,
        store: EventStore,
        reconciler: RemoteReconciler,
        *,
        interval_seconds: float = settings.SYNC_INTERVAL_SECONDS,
        batch_size: int = settings.SYNC_BATCH_SIZE,
        max_retries: int = settings.MAX_SYNC_RETRIES,
        item_delay_ms: int = settings.SYNC_ITEM_DELAY_MS,
        settle_seconds: float = settings.ONLINE_SETTLE_SECONDS,
        online: bool = True,
    ):
        self._store = store
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._item_delay = item_delay_ms / 1000
        self._settle = settle_seconds

        self._online = online
        self._processing = False
        self._timer: Optional[asyncio.Task] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._listeners: list[SyncListener] = []

        self._last_sync_time = None
        self._pending_items = 0
        self._total_synced = 0
        self._last_errors: list[str] = []

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def background_sync_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def get_sync_status(self, synced: int = 0, failed: int = 0,
                        errors: Optional[list[str]] = None) -> SyncStatus:
        return SyncStatus(
            is_online=self._online,
            is_syncing=self._processing,
            last_sync_time=self._last_sync_time,
            pending_items=self._pending_items,
            synced=synced,
            failed=failed,
            total_synced=self._total_synced,
            errors=list(self._last_errors if errors is None else errors),
        )

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Register for SyncStatus / SyncProgress updates. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, value: Union[SyncStatus, SyncProgress]) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(f"[SYNC] Listener {listener!r} raised: {e}", exc_info=True)

    # ── Startup / configuration ───────────────────────────────────────────

    async def initialize(self, resync_unsynced: bool = settings.RESYNC_ON_STARTUP) -> None:
        """Configure the remote from stored settings, run the recovery sweep, arm the timer."""
        current = await self._store.get_settings()
        if current is not None and current.remote is not None and current.remote.access_token:
            self._reconciler.configure(current.remote)

        if resync_unsynced:
            await self._store.requeue_unsynced()

        self._pending_items = await self._store.count_sync_queue()
        logger.info(f"🔄 [SYNC] Sync queue initialized ({self._pending_items} pending)")

        if self._online:
            self.start_background_sync()
            if current is not None and current.cloud_sync and self._reconciler.is_configured():
                self._schedule_pass(0)

    async def configure_remote(self, credentials: RemoteCredentials) -> ConnectionReport:
        """
        Point the reconciler at a container, verify it end to end and, on
        success, persist the credentials with cloud sync switched on.
        """
        self._reconciler.configure(credentials)
        report = await self._reconciler.test_connection()
        if not report.ok:
            logger.error(f"❌ [SYNC] Cloud sync configuration failed: {report.detail}")
            return report

        current = await self._store.get_settings()
        keep = current.model_dump(exclude={"last_modified", "synced", "remote", "cloud_sync"}) if current else {}
        await self._store.save_settings(SettingsIn(**keep, cloud_sync=True, remote=credentials))
        self.start_background_sync()
        logger.info("☁️ [SYNC] Cloud sync configured successfully")
        return report

    async def test_connection(self) -> ConnectionReport:
        return await self._reconciler.test_connection()

    def apply_settings(self, saved: SettingsOut) -> None:
        """
        Follow a settings save: stored credentials with a token (re)point the
        reconciler, and cloud sync switched on arms the timer.
        """
        if saved.remote is not None and saved.remote.access_token:
            self._reconciler.configure(saved.remote)
        if saved.cloud_sync and self._online and self._reconciler.is_configured():
            self.start_background_sync()

    # ── Draining ──────────────────────────────────────────────────────────

    async def sync_now(self) -> SyncStatus:
        logger.info("🔄 [SYNC] Manual sync triggered")
        return await self.process_sync_queue()

    async def process_sync_queue(self) -> SyncStatus:
        if self._processing:
            logger.info("[SYNC] Sync already in progress")
            return self.get_sync_status()
        if not self._online:
            logger.info("[SYNC] Offline — skipping sync")
            return self.get_sync_status()
        if not self._reconciler.is_configured():
            logger.info("[SYNC] Remote not configured — skipping sync")
            return self.get_sync_status()

        self._processing = True
        synced = 0
        failed = 0
        errors: list[str] = []
        try:
            items = await self._store.get_sync_queue(self._batch_size)
            if not items:
                logger.info("✅ [SYNC] No items to sync")
            else:
                logger.info(f"🔄 [SYNC] Processing {len(items)} sync items")
                self._notify(SyncProgress(total=len(items), completed=0, percentage=0))

            for i, item in enumerate(items):
                self._notify(SyncProgress(
                    total=len(items),
                    completed=i,
                    current=f"Syncing {item.kind.value}: {item.event_id}",
                    percentage=round(i / len(items) * 100),
                ))
                try:
                    outcome = await self._process_item(item)
                except Exception as e:
                    # Bookkeeping for this item failed; the rest of the batch still runs
                    outcome = f"Sync error for {item.kind.value}: {item.event_id} - {e}"
                    logger.error(f"❌ [SYNC] {outcome}", exc_info=True)

                if outcome is True:
                    synced += 1
                elif outcome is not None:
                    failed += 1
                    errors.append(outcome)

                if i < len(items) - 1:
                    await asyncio.sleep(self._item_delay)

            if items:
                self._notify(SyncProgress(total=len(items), completed=len(items), percentage=100))
                logger.info(f"🔄 [SYNC] Sync completed: {synced}/{len(items)} items")
            self._pending_items = await self._store.count_sync_queue()
        except StorageError as e:
            msg = f"Sync process failed: {e}"
            logger.error(f"❌ [SYNC] {msg}")
            errors.append(msg)
        finally:
            self._processing = False

        self._total_synced += synced
        self._last_sync_time = utcnow()
        self._last_errors = errors
        status = self.get_sync_status(synced=synced, failed=failed, errors=errors)
        self._notify(status)
        return status

    async def _process_item(self, item: QueueEntry):
        """
        Returns True when the item synced, an error string when it failed
        terminally, None when it was put back for another pass.
        """
        try:
            result = await self._dispatch(item)
            if result.success:
                await self._on_success(item, result)
                await self._store.remove_sync_queue_item(item.id, dispatched=item)
                logger.info(f"✅ [SYNC] Synced {item.kind.value}: {item.event_id}")
                return True
        except Exception as e:
            logger.error(f"❌ [SYNC] Sync error for {item.kind.value}: {item.event_id} - {e}", exc_info=True)
            result = UploadResult(
                success=False,
                error=str(e) or type(e).__name__,
                error_kind=e.kind if isinstance(e, RemoteError) else None,
            )
        return await self._record_failure(item, result)

    async def _record_failure(self, item: QueueEntry, result: UploadResult):
        attempts = item.attempts + 1
        if attempts >= self._max_retries:
            await self._store.remove_sync_queue_item(item.id, dispatched=item)
            outcome = (f"Failed to sync {item.kind.value}: {item.event_id} after "
                       f"{self._max_retries} attempts ({result.error_kind.value if result.error_kind else 'error'}: "
                       f"{result.error})")
            logger.error(f"❌ [SYNC] Giving up on {item.kind.value}: {item.event_id}")
        elif await self._store.record_sync_failure(item, attempts, result.error):
            outcome = None
            logger.warning(f"⚠️ [SYNC] Retry {attempts}/{self._max_retries} for {item.kind.value}: {item.event_id}")
        else:
            outcome = None
            logger.info(f"[SYNC] {item.kind.value} {item.event_id} was re-queued during the upload; retrying the newer copy")

        if item.kind is SyncItemKind.EVENT:
            await self._store.record_sync_attempt(item.event_id)
        return outcome

    async def _dispatch(self, item: QueueEntry) -> UploadResult:
        match item.kind:
            case SyncItemKind.EVENT:
                return await self._reconciler.upload_event(await self._event_for(item))
            case SyncItemKind.SETTINGS:
                return await self._reconciler.upload_settings(SettingsOut.model_validate(item.payload))
            case SyncItemKind.BLOB:
                media = MediaKind(item.payload["media"])
                event = await self._store.get_event(item.event_id)
                data = getattr(event, media.value) if event is not None else None
                if data is None:
                    return UploadResult(success=False, error=f"No local {media.value} for {item.event_id}",
                                        error_kind=NotFoundError.kind)
                return await self._reconciler.upload_media(item.event_id, media, data)

    async def _event_for(self, item: QueueEntry) -> EventOut:
        """The live local record (with media) when present, else the queued snapshot."""
        event = await self._store.get_event(item.event_id)
        return event if event is not None else EventOut.model_validate(item.payload)

    async def _on_success(self, item: QueueEntry, result: UploadResult) -> None:
        match item.kind:
            case SyncItemKind.EVENT:
                try:
                    await self._store.mark_event_synced(item.event_id)
                except NotFoundError:
                    logger.warning(f"[SYNC] Event {item.event_id} vanished before it could be marked synced")
                for media in result.failed_media:
                    await self._store.add_to_sync_queue(QueueEntry(
                        id=f"{item.id}_{media.value}",
                        event_id=item.event_id,
                        kind=SyncItemKind.BLOB,
                        payload={"event_id": item.event_id, "media": media.value},
                        priority=BLOB_PRIORITY,
                    ))
            case SyncItemKind.SETTINGS:
                # A save that landed mid-upload re-queued newer settings; those stay unsynced
                if await self._store.remove_sync_queue_item(item.id, dispatched=item):
                    uploaded = SettingsOut.model_validate(item.payload)
                    await self._store.mark_settings_synced(uploaded.last_modified)
            case SyncItemKind.BLOB:
                pass

    # ── Download / merge ──────────────────────────────────────────────────

    async def download_from_cloud(self) -> DownloadReport:
        """
        Pull settings (last-writer-wins) and any remote events newer than the
        newest local one. Incoming duplicates are discarded and counted.
        """
        if not self._reconciler.is_configured():
            raise RemoteNotConfiguredError("Cloud sync not configured")

        logger.info("☁️ [SYNC] Downloading data from cloud...")
        report = DownloadReport()

        remote_settings = await self._reconciler.download_settings()
        if remote_settings is not None:
            report.settings_updated = await self._store.apply_remote_settings(remote_settings)

        newest = await self._store.get_events(EventFilter(limit=1))
        since = newest[0].timestamp if newest else None

        for event in await self._reconciler.download_events(since):
            try:
                await self._store.import_remote_event(event)
            except ConflictError as e:
                logger.debug(f"[SYNC] Discarded duplicate: {e}")
                report.conflicts += 1
                continue
            report.events += 1

        logger.info(f"☁️ [SYNC] Downloaded {report.events} new events, {report.conflicts} conflicts resolved")
        return report

    # ── Maintenance ───────────────────────────────────────────────────────

    async def cleanup(self, retention_days: Optional[int] = None) -> CleanupReport:
        if retention_days is None:
            current = await self._store.get_settings()
            retention_days = current.retention_days if current else settings.DEFAULT_RETENTION_DAYS

        logger.info(f"🧹 [SYNC] Starting cleanup (older than {retention_days} days)")
        report = CleanupReport(local_deleted=await self._store.cleanup_old_events(retention_days))
        if self._reconciler.is_configured():
            report.remote_deleted = await self._reconciler.cleanup_older_than(retention_days)
        logger.info(f"🧹 [SYNC] Cleanup completed: {report.local_deleted} local, {report.remote_deleted} remote")
        return report

    async def get_storage_overview(self) -> StorageOverview:
        overview = StorageOverview(local=await self._store.get_storage_stats())
        if self._reconciler.is_configured():
            try:
                overview.remote = await self._reconciler.get_storage_info()
            except RemoteError as e:
                logger.warning(f"⚠️ [SYNC] Failed to get remote storage stats: {e}")
        return overview

    # ── Timer and network transitions ─────────────────────────────────────

    def start_background_sync(self) -> None:
        if self.background_sync_active:
            return
        logger.info("🔄 [SYNC] Starting background sync")
        self._timer = asyncio.create_task(self._run_timer(), name="sync-timer")

    def stop_background_sync(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        logger.info("⏹️ [SYNC] Background sync stopped")

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not (self._online and self._reconciler.is_configured()):
                continue
            try:
                await self.process_sync_queue()
            except Exception as e:
                logger.error(f"❌ [SYNC] Background sync pass failed: {e}", exc_info=True)

    def set_online(self, online: bool) -> None:
        """
        Network transition. Going online arms the timer and schedules one pass
        after a short settle delay; going offline disarms the timer. Calls
        already in flight are left to finish or fail on their own.
        """
        if online == self._online:
            return
        self._online = online
        logger.info(f"📶 [SYNC] Network status: {'online' if online else 'offline'}")

        if online:
            self.start_background_sync()
            self._schedule_pass(self._settle)
        else:
            self.stop_background_sync()
            if self._settle_task is not None:
                self._settle_task.cancel()
                self._settle_task = None

        self._notify(self.get_sync_status())

    def _schedule_pass(self, delay: float) -> None:
        async def _later():
            await asyncio.sleep(delay)
            await self.process_sync_queue()

        if self._settle_task is not None:
            self._settle_task.cancel()
        self._settle_task = asyncio.create_task(_later(), name="sync-settle")
        self._settle_task.add_done_callback(_log_task_failure)

    async def shutdown(self) -> None:
        self.stop_background_sync()
        if self._settle_task is not None:
            self._settle_task.cancel()
            self._settle_task = None
