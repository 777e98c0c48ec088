"""Tab routes: list, create, rename, delete, switch, and search across tabs."""

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from citelink.models import Tab, TabState
from citelink.search.schemas import SearchOptions
from citelink.tabs.schemas import (
    CreateTabRequest,
    RenameTabRequest,
    SetActiveTabRequest,
    TabSearchResult,
)
from citelink.tabs.service import TabService
from citelink.trees.schemas import OperationResponse

router = APIRouter(prefix="/api/tabs", tags=["tabs"])


def get_tab_service() -> TabService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TabService not initialized")


def _operation_response(success: bool, service: TabService) -> OperationResponse | JSONResponse:
    if success:
        return OperationResponse(success=True)
    body = OperationResponse(
        success=False,
        error=str(service.last_error) if service.last_error else None,
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.to_storage())


@router.get("")
async def list_tabs(
    service: TabService = Depends(get_tab_service),
) -> TabState:
    return await service.get_tabs()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=None)
async def create_tab(
    request: CreateTabRequest,
    service: TabService = Depends(get_tab_service),
) -> Tab | JSONResponse:
    tab = await service.create_tab(request.title)
    if tab is None:
        return _operation_response(False, service)
    return tab


@router.get("/search")
async def search_all_tabs(
    q: str = Query(""),
    highlighted: bool = Query(True),
    annotations: bool = Query(True),
    service: TabService = Depends(get_tab_service),
) -> list[TabSearchResult]:
    options = SearchOptions(search_highlighted=highlighted, search_annotations=annotations)
    return await service.search_all_tabs(q, options)


@router.put("/active", response_model=None)
async def set_active_tab(
    request: SetActiveTabRequest,
    service: TabService = Depends(get_tab_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.set_active_tab(request.tab_id), service)


@router.patch("/{tab_id}", response_model=None)
async def rename_tab(
    tab_id: str,
    request: RenameTabRequest,
    service: TabService = Depends(get_tab_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.rename_tab(tab_id, request.title), service)


@router.delete("/{tab_id}", response_model=None)
async def delete_tab(
    tab_id: str,
    service: TabService = Depends(get_tab_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.delete_tab(tab_id), service)
