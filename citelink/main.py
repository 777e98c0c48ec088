"""Citelink FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from citelink.config import Settings
from citelink.db.connection import Database
from citelink.search.router import get_search_service
from citelink.search.router import router as search_router
from citelink.search.service import SearchService
from citelink.store.repair_log import RepairLog
from citelink.sync.router import get_sync_tracker
from citelink.sync.router import router as sync_router
from citelink.sync.service import SyncTracker
from citelink.tabs.router import get_tab_service
from citelink.tabs.router import router as tabs_router
from citelink.tabs.service import TabService
from citelink.trees.router import get_tree_service, get_validation_service
from citelink.trees.router import router as trees_router
from citelink.trees.service import TreeService
from citelink.validation.service import TreeValidationService

# Load .env from the project directory before settings are read
load_dotenv(Path(__file__).resolve().parent.parent / ".env")
settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    logging.basicConfig(level=settings.log_level)

    db = await Database.connect(settings.db_path)

    tracker = SyncTracker(db)
    tabs = TabService(db, sync=tracker, repair_log=RepairLog(db))
    app.dependency_overrides[get_tab_service] = lambda: tabs

    # Tree and search routes act on whichever tab is active
    async def active_tree_service() -> TreeService:
        return (await tabs.active_workspace()).trees

    async def active_validation_service() -> TreeValidationService:
        return (await tabs.active_workspace()).validation

    app.dependency_overrides[get_tree_service] = active_tree_service
    app.dependency_overrides[get_validation_service] = active_validation_service

    search_svc = SearchService()
    app.dependency_overrides[get_search_service] = lambda: search_svc

    app.dependency_overrides[get_sync_tracker] = lambda: tracker

    # Whatever sync left behind since the last run is repaired before first use
    for tab in (await tabs.get_tabs()).tabs:
        await tabs.workspace(tab.id).validation.repair_tree_integrity(source="startup")

    app.state.db = db
    yield

    await db.close()


app = FastAPI(
    title="Citelink",
    description=(
        "Citation tree backend: capture, annotate and rearrange research"
        " citations, kept structurally consistent across sync overwrites"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(trees_router)
app.include_router(search_router)
app.include_router(sync_router)
app.include_router(tabs_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
