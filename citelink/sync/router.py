"""Sync state routes, used by the sync transport to decide when to push."""

from fastapi import APIRouter, Depends

from citelink.models import SyncState
from citelink.sync.service import SyncTracker

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_sync_tracker() -> SyncTracker:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("SyncTracker not configured")


@router.get("")
async def get_sync_state(
    tracker: SyncTracker = Depends(get_sync_tracker),
) -> SyncState:
    return await tracker.get_state()


@router.post("/complete")
async def complete_sync(
    tracker: SyncTracker = Depends(get_sync_tracker),
) -> SyncState:
    await tracker.mark_synced()
    return await tracker.get_state()
