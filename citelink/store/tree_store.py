"""Tree store: the citation tree as a single versioned document in SQLite."""

import asyncio
import json
import logging

from pydantic import ValidationError

from citelink.db.connection import Database
from citelink.db.schema import UPSERT_DOCUMENT_SQL
from citelink.models import CitationTree, utc_now_iso
from citelink.store.protocols import SyncNotifierProtocol
from citelink.utils.json import parse_json_field, parse_json_int

logger = logging.getLogger(__name__)

TREE_KEY = "citationTree"
NODE_COUNTER_KEY = "nodeCounter"


class TreeStore:
    """Reads and writes the whole tree atomically. No business logic.

    Every saved document carries an integer version. A normal save only
    succeeds if the snapshot's version still matches storage; ``force``
    skips that check (last write wins) for external overwrites.
    """

    def __init__(
        self,
        db: Database,
        sync: SyncNotifierProtocol | None = None,
        *,
        tree_key: str = TREE_KEY,
    ) -> None:
        self._db = db
        self._sync = sync
        self._tree_key = tree_key
        self.lock = asyncio.Lock()

    async def load_tree(self) -> CitationTree:
        """Load the tree. A missing or undecodable document yields an empty tree."""
        row = await self._db.fetchone(
            "SELECT value, version FROM documents WHERE key = ?",
            (self._tree_key,),
        )
        if row is None:
            return CitationTree()

        version = row["version"]
        data = parse_json_field(row["value"])
        if data is None:
            logger.warning("Stored tree %r is not a JSON object, using empty tree", self._tree_key)
            return CitationTree(version=version)

        try:
            tree = CitationTree.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "Stored tree %r is malformed (%d errors), using empty tree",
                self._tree_key, e.error_count(),
            )
            return CitationTree(version=version)

        tree.version = version
        return tree

    async def save_tree(self, tree: CitationTree, *, force: bool = False) -> int:
        """Persist the tree, bump its version, and notify sync unless UI-only."""
        value = json.dumps(tree.to_storage())
        now = utc_now_iso()

        if force:
            async with self._db.transaction() as conn:
                await conn.execute(UPSERT_DOCUMENT_SQL, (self._tree_key, value, now))
                cursor = await conn.execute(
                    "SELECT version FROM documents WHERE key = ?", (self._tree_key,),
                )
                row = await cursor.fetchone()
            new_version = row["version"]
        elif tree.version == 0:
            cursor = await self._db.execute(
                "INSERT OR IGNORE INTO documents (key, value, version, updated_at) "
                "VALUES (?, ?, 1, ?)",
                (self._tree_key, value, now),
            )
            if cursor.rowcount == 0:
                raise StaleTreeError(tree.version, await self._current_version())
            new_version = 1
        else:
            cursor = await self._db.execute(
                "UPDATE documents SET value = ?, version = version + 1, updated_at = ? "
                "WHERE key = ? AND version = ?",
                (value, now, self._tree_key, tree.version),
            )
            if cursor.rowcount == 0:
                raise StaleTreeError(tree.version, await self._current_version())
            new_version = tree.version + 1

        tree.version = new_version
        if self._sync is not None and not tree.ui_only_change:
            await self._sync.mark_as_modified()
        return new_version

    async def load_node_counter(self) -> int:
        row = await self._db.fetchone(
            "SELECT value FROM documents WHERE key = ?", (NODE_COUNTER_KEY,),
        )
        return parse_json_int(row["value"]) if row else 0

    async def save_node_counter(self, value: int) -> None:
        await self._db.execute(
            UPSERT_DOCUMENT_SQL, (NODE_COUNTER_KEY, json.dumps(value), utc_now_iso()),
        )

    async def _current_version(self) -> int:
        row = await self._db.fetchone(
            "SELECT version FROM documents WHERE key = ?", (self._tree_key,),
        )
        return row["version"] if row else 0


class StaleTreeError(Exception):
    def __init__(self, expected_version: int, actual_version: int) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale tree write: loaded at version {expected_version}, "
            f"storage is at version {actual_version}"
        )
