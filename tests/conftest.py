"""Shared pytest fixtures for Citelink tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from citelink.db.connection import Database
from citelink.main import app
from citelink.search.router import get_search_service
from citelink.search.service import SearchService
from citelink.store.repair_log import RepairLog
from citelink.store.tree_store import TreeStore
from citelink.sync.router import get_sync_tracker
from citelink.sync.service import SyncTracker
from citelink.tabs.router import get_tab_service
from citelink.tabs.service import TabService
from citelink.trees.router import get_tree_service, get_validation_service
from citelink.trees.service import TreeService
from citelink.validation.service import TreeValidationService


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def sync_tracker(db):
    return SyncTracker(db)


@pytest.fixture
async def tree_store(db, sync_tracker):
    """TreeStore backed by in-memory database, reporting to the sync tracker."""
    return TreeStore(db, sync=sync_tracker)


@pytest.fixture
async def repair_log(db):
    return RepairLog(db)


@pytest.fixture
async def tree_service(tree_store):
    return TreeService(tree_store)


@pytest.fixture
async def validation_service(tree_store, repair_log):
    return TreeValidationService(tree_store, repair_log)


@pytest.fixture
async def tab_service(db, sync_tracker, repair_log):
    return TabService(db, sync=sync_tracker, repair_log=repair_log)


@pytest.fixture
async def client(tree_service, validation_service, sync_tracker, tab_service):
    """Async test client with in-memory DB wired into the app."""
    search_service = SearchService()
    app.dependency_overrides[get_tab_service] = lambda: tab_service
    app.dependency_overrides[get_tree_service] = lambda: tree_service
    app.dependency_overrides[get_validation_service] = lambda: validation_service
    app.dependency_overrides[get_search_service] = lambda: search_service
    app.dependency_overrides[get_sync_tracker] = lambda: sync_tracker
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def tabs_client(client, tab_service):
    """Client whose tree and search routes follow the active tab, as in the app."""

    async def active_trees() -> TreeService:
        return (await tab_service.active_workspace()).trees

    async def active_validation() -> TreeValidationService:
        return (await tab_service.active_workspace()).validation

    app.dependency_overrides[get_tree_service] = active_trees
    app.dependency_overrides[get_validation_service] = active_validation
    yield client
