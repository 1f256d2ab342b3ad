# sentinel/routers/settings.py
from fastapi import APIRouter, Depends

from sentinel.dependencies import get_store, get_sync_queue
from sentinel.errors import NotFoundError
from sentinel.schemas.settings import SettingsIn, SettingsOut
from sentinel.services.event_store import EventStore
from sentinel.services.sync_queue import SyncQueue

router = APIRouter()

REDACTED_TOKEN = "***"


@router.get("/settings", response_model=SettingsOut, summary="Current settings (token masked)")
async def read_settings(store: EventStore = Depends(get_store)):
    current = await store.get_settings()
    if current is None:
        raise NotFoundError("Settings have not been saved yet")
    return current.redacted()


@router.put("/settings", response_model=SettingsOut, summary="Save settings")
async def update_settings(
    body: SettingsIn,
    store: EventStore = Depends(get_store),
    sync_queue: SyncQueue = Depends(get_sync_queue),
):
    """
    Writes go through EventStore.save_settings so last_modified is stamped and,
    with cloud sync on, an upload is queued. A missing or masked token keeps
    the stored one. Saved credentials take effect for sync right away.
    """
    current = await store.get_settings()
    if current is not None and current.remote is not None:
        if body.remote is None:
            body = body.model_copy(update={"remote": current.remote})
        elif body.remote.access_token in ("", REDACTED_TOKEN):
            body = body.model_copy(update={
                "remote": body.remote.model_copy(update={"access_token": current.remote.access_token}),
            })
    saved = await store.save_settings(body)
    sync_queue.apply_settings(saved)
    return saved.redacted()
