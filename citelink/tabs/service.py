"""Tabs: named workspaces, each with its own citation tree.

The tab list lives in one document. Each tab's tree is a separate tree
document served by its own TreeStore, so edits in different tabs never
contend for the same lock or version. The default tab reads the original
single-tree document, which carries a pre-tabs tree over unchanged.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar
from uuid import uuid4

import aiosqlite
from pydantic import ValidationError

from citelink.db.connection import Database
from citelink.db.schema import UPSERT_DOCUMENT_SQL
from citelink.models import Tab, TabState, utc_now_iso
from citelink.search.schemas import SearchOptions
from citelink.search.service import SearchService
from citelink.store.protocols import SyncNotifierProtocol
from citelink.store.repair_log import RepairLog
from citelink.store.tree_store import TREE_KEY, TreeStore
from citelink.tabs.schemas import TabSearchResult
from citelink.trees.service import TreeService
from citelink.utils.json import parse_json_field
from citelink.validation.service import TreeValidationService

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABS_KEY = "tabsData"
DEFAULT_TAB_ID = "general-tab"
DEFAULT_TAB_TITLE = "General"


def tree_key_for(tab_id: str) -> str:
    """Document key of a tab's tree."""
    return TREE_KEY if tab_id == DEFAULT_TAB_ID else f"{TREE_KEY}:{tab_id}"


@dataclass
class TabWorkspace:
    """The per-tab service stack, all sharing one store (and its lock)."""

    store: TreeStore
    trees: TreeService
    validation: TreeValidationService


class TabService:
    """Creates, renames, deletes and switches tabs, and hands out their workspaces."""

    def __init__(
        self,
        db: Database,
        sync: SyncNotifierProtocol | None = None,
        repair_log: RepairLog | None = None,
    ) -> None:
        self._db = db
        self._sync = sync
        self._repair_log = repair_log
        self._workspaces: dict[str, TabWorkspace] = {}
        self.lock = asyncio.Lock()
        self.last_error: Exception | None = None

    # -- Workspaces --

    def workspace(self, tab_id: str) -> TabWorkspace:
        """The services for one tab's tree. Built once per tab and reused."""
        workspace = self._workspaces.get(tab_id)
        if workspace is None:
            store = TreeStore(self._db, sync=self._sync, tree_key=tree_key_for(tab_id))
            workspace = TabWorkspace(
                store=store,
                trees=TreeService(store),
                validation=TreeValidationService(store, self._repair_log),
            )
            self._workspaces[tab_id] = workspace
        return workspace

    async def active_workspace(self) -> TabWorkspace:
        return self.workspace(await self.get_active_tab_id())

    # -- Reads --

    async def get_tabs(self) -> TabState:
        """The tab list. The first read creates the default tab."""
        async with self.lock:
            return await self._load_state()

    async def get_tab(self, tab_id: str) -> Tab | None:
        state = await self.get_tabs()
        return next((t for t in state.tabs if t.id == tab_id), None)

    async def get_active_tab(self) -> Tab | None:
        state = await self.get_tabs()
        return next((t for t in state.tabs if t.id == state.active_tab_id), None)

    async def get_active_tab_id(self) -> str:
        state = await self.get_tabs()
        if state.active_tab_id is not None:
            return state.active_tab_id
        return state.tabs[0].id if state.tabs else DEFAULT_TAB_ID

    # -- Edits --

    async def create_tab(self, title: str) -> Tab | None:
        """Add an empty tab and switch to it."""
        return await self._update("create_tab", lambda state: self._create(state, title))

    async def rename_tab(self, tab_id: str, title: str) -> bool:
        result = await self._update(
            "rename_tab", lambda state: self._rename(state, tab_id, title),
        )
        return result is not None

    async def set_active_tab(self, tab_id: str) -> bool:
        result = await self._update(
            "set_active_tab", lambda state: self._activate(state, tab_id),
        )
        return result is not None

    async def delete_tab(self, tab_id: str) -> bool:
        """Remove a tab and its tree. The last remaining tab can't be deleted."""
        self.last_error = None
        async with self.lock:
            try:
                state = await self._load_state()
                self._delete(state, tab_id)
                async with self._db.transaction() as conn:
                    await conn.execute(
                        UPSERT_DOCUMENT_SQL,
                        (TABS_KEY, json.dumps(state.to_storage()), utc_now_iso()),
                    )
                    await conn.execute(
                        "DELETE FROM documents WHERE key = ?", (tree_key_for(tab_id),),
                    )
            except TabOperationError as e:
                logger.warning("delete_tab rejected: %s", e)
                self.last_error = e
                return False
            except (aiosqlite.Error, OSError) as e:
                logger.exception("delete_tab failed, tabs left as stored: %s", e)
                self.last_error = e
                return False

        self._workspaces.pop(tab_id, None)
        logger.info("Deleted tab %s", tab_id)
        return True

    # -- Search --

    async def search_all_tabs(
        self, query: str, options: SearchOptions | None = None,
    ) -> list[TabSearchResult]:
        """Search every tab's validated tree. Tabs without a match are left out."""
        results: list[TabSearchResult] = []
        if not query.strip():
            return results

        state = await self.get_tabs()
        for tab in state.tabs:
            workspace = self.workspace(tab.id)
            validated = workspace.validation.validate_and_repair_tree(
                await workspace.store.load_tree()
            )
            matches = SearchService().perform_search(query, validated.nodes, options)
            if matches:
                results.append(TabSearchResult(
                    tab_id=tab.id, tab_title=tab.title, results=matches,
                ))
        return results

    # -- Internals --

    async def _update(self, operation: str, mutate: Callable[[TabState], T]) -> T | None:
        """Load, edit and save the tab list under the lock. None on failure."""
        self.last_error = None
        async with self.lock:
            try:
                state = await self._load_state()
                result = mutate(state)
                await self._save_state(state)
            except TabOperationError as e:
                logger.warning("%s rejected: %s", operation, e)
                self.last_error = e
                return None
            except (aiosqlite.Error, OSError) as e:
                logger.exception("%s failed, tabs left as stored: %s", operation, e)
                self.last_error = e
                return None
        return result

    async def _load_state(self) -> TabState:
        row = await self._db.fetchone(
            "SELECT value FROM documents WHERE key = ?", (TABS_KEY,),
        )
        data = parse_json_field(row["value"]) if row else None
        if data is not None:
            try:
                state = TabState.model_validate(data)
            except ValidationError as e:
                logger.warning(
                    "Stored tab list is malformed (%d errors), recreating the default tab",
                    e.error_count(),
                )
            else:
                if state.tabs:
                    return state
                logger.warning("Stored tab list is empty, recreating the default tab")

        state = TabState(
            tabs=[Tab(id=DEFAULT_TAB_ID, title=DEFAULT_TAB_TITLE, is_active=True)],
            active_tab_id=DEFAULT_TAB_ID,
        )
        await self._save_state(state)
        logger.info("Tabs initialized with the %s tab", DEFAULT_TAB_TITLE)
        return state

    async def _save_state(self, state: TabState) -> None:
        await self._db.execute(
            UPSERT_DOCUMENT_SQL,
            (TABS_KEY, json.dumps(state.to_storage()), utc_now_iso()),
        )

    @staticmethod
    def _find(state: TabState, tab_id: str) -> Tab:
        tab = next((t for t in state.tabs if t.id == tab_id), None)
        if tab is None:
            raise TabNotFoundError(tab_id)
        return tab

    @staticmethod
    def _set_active(state: TabState, tab_id: str) -> None:
        for tab in state.tabs:
            tab.is_active = tab.id == tab_id
        state.active_tab_id = tab_id

    def _create(self, state: TabState, title: str) -> Tab:
        tab = Tab(id=f"tab-{uuid4().hex[:12]}", title=title)
        state.tabs.append(tab)
        self._set_active(state, tab.id)
        logger.info("Created tab %s (%s)", tab.id, title)
        return tab

    def _rename(self, state: TabState, tab_id: str, title: str) -> bool:
        tab = self._find(state, tab_id)
        tab.title = title
        tab.last_modified = utc_now_iso()
        return True

    def _activate(self, state: TabState, tab_id: str) -> bool:
        self._find(state, tab_id)
        self._set_active(state, tab_id)
        return True

    def _delete(self, state: TabState, tab_id: str) -> None:
        self._find(state, tab_id)
        if len(state.tabs) <= 1:
            raise LastTabError(tab_id)
        state.tabs = [t for t in state.tabs if t.id != tab_id]
        if state.active_tab_id == tab_id:
            self._set_active(state, state.tabs[0].id)


class TabOperationError(Exception):
    """A tab edit was refused before anything was saved."""


class TabNotFoundError(TabOperationError):
    def __init__(self, tab_id: str) -> None:
        self.tab_id = tab_id
        super().__init__(f"Tab not found: {tab_id}")


class LastTabError(TabOperationError):
    def __init__(self, tab_id: str) -> None:
        self.tab_id = tab_id
        super().__init__(f"Cannot delete the only remaining tab: {tab_id}")
