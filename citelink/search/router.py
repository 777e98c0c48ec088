"""Search API routes."""

from fastapi import APIRouter, Depends, Query

from citelink.search.schemas import SearchOptions, SearchResponse
from citelink.search.service import SearchService
from citelink.trees.router import get_validation_service
from citelink.validation.service import TreeValidationService

router = APIRouter(prefix="/api", tags=["search"])


def get_search_service() -> SearchService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("SearchService not configured")


def _response(service: SearchService) -> SearchResponse:
    results = service.results
    return SearchResponse(
        query=service.query,
        results=results,
        total=len(results),
        counter=service.get_search_counter(),
        current=service.get_current_result(),
    )


@router.get("/search")
async def search(
    q: str = Query(""),
    highlighted: bool = Query(True),
    annotations: bool = Query(True),
    filter_mode: bool = Query(False),
    service: SearchService = Depends(get_search_service),
    validation: TreeValidationService = Depends(get_validation_service),
) -> SearchResponse:
    """Search the validated tree's visible nodes. An empty query clears the search."""
    tree = await validation.repair_tree_integrity()
    options = SearchOptions(
        search_highlighted=highlighted,
        search_annotations=annotations,
        filter_mode=filter_mode,
    )
    service.perform_search(q, tree.nodes, options)
    return _response(service)


@router.post("/search/next")
async def search_next(
    service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    service.navigate_to_next()
    return _response(service)


@router.post("/search/previous")
async def search_previous(
    service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    service.navigate_to_previous()
    return _response(service)


@router.get("/search/counter")
async def search_counter(
    service: SearchService = Depends(get_search_service),
) -> dict:
    return {"counter": service.get_search_counter()}


@router.delete("/search")
async def clear_search(
    service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    service.clear_search_results()
    return _response(service)
