"""Dirty tracking for the cloud sync collaborator.

The sync transport itself (upload, download, merge policy) lives outside
this service. It reads ``SyncState`` to decide whether local data needs
pushing, and calls ``mark_synced`` after a successful round trip.
"""

import json
import logging

from citelink.db.connection import Database
from citelink.db.schema import UPSERT_DOCUMENT_SQL
from citelink.models import SyncState, utc_now_iso
from citelink.utils.json import parse_json_field

logger = logging.getLogger(__name__)

SYNC_STATE_KEY = "syncState"


class SyncTracker:
    """Persists whether local data changed since the last sync."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_state(self) -> SyncState:
        row = await self._db.fetchone(
            "SELECT value FROM documents WHERE key = ?", (SYNC_STATE_KEY,),
        )
        data = parse_json_field(row["value"]) if row else None
        return SyncState.model_validate(data) if data else SyncState()

    async def mark_as_modified(self) -> None:
        """Record a genuine (non UI-only) local change."""
        state = await self.get_state()
        state.dirty = True
        state.last_modified = utc_now_iso()
        await self._save(state)

    async def mark_synced(self) -> None:
        """Record a completed sync round trip."""
        state = await self.get_state()
        state.dirty = False
        state.last_sync_time = utc_now_iso()
        await self._save(state)
        logger.info("Sync completed at %s", state.last_sync_time)

    async def _save(self, state: SyncState) -> None:
        await self._db.execute(
            UPSERT_DOCUMENT_SQL,
            (SYNC_STATE_KEY, json.dumps(state.to_storage()), utc_now_iso()),
        )
