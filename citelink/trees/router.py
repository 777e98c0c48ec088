"""FastAPI routes for the citation tree: structural edits, annotations, repair."""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from citelink.models import Annotation, CitationNode, RepairLogEntry, RepairResult
from citelink.trees.schemas import (
    AddAnnotationRequest,
    CaptureNodeRequest,
    MoveNodeRequest,
    OperationResponse,
    SetCurrentNodeRequest,
    TreeResponse,
)
from citelink.trees.service import TreeService
from citelink.trees.structure import get_root_nodes, get_visible_nodes
from citelink.validation.service import TreeValidationService

router = APIRouter(prefix="/api/tree", tags=["tree"])


def get_tree_service() -> TreeService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeService not initialized")


def get_validation_service() -> TreeValidationService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeValidationService not initialized")


def _operation_response(success: bool, service: TreeService) -> OperationResponse | JSONResponse:
    """200 on success; 409 with the same body shape when the edit had no effect."""
    if success:
        return OperationResponse(success=True)
    body = OperationResponse(
        success=False,
        error=str(service.last_error) if service.last_error else None,
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.to_storage())


@router.get("")
async def get_tree(
    validation: TreeValidationService = Depends(get_validation_service),
) -> TreeResponse:
    """Load the tree through the repair pass and return it with its visible views."""
    result = await validation.repair_tree_integrity()
    return TreeResponse(
        nodes=result.nodes,
        current_node_id=result.current_node_id,
        visible_nodes=get_visible_nodes(result.nodes),
        root_ids=[n.id for n in get_root_nodes(result.nodes)],
        repaired=result.repaired,
        repairs=result.repairs,
    )


@router.post("/nodes", status_code=status.HTTP_201_CREATED, response_model=None)
async def capture_node(
    request: CaptureNodeRequest,
    service: TreeService = Depends(get_tree_service),
) -> CitationNode | JSONResponse:
    node = await service.capture_node(
        request.text,
        request.url,
        parent_id=request.parent_id,
        timestamp=request.timestamp,
    )
    if node is None:
        return _operation_response(False, service)
    return node


@router.post("/nodes/{node_id}/move", response_model=None)
async def move_node(
    node_id: int,
    request: MoveNodeRequest,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.move_node(node_id, request.target_id), service)


@router.post("/nodes/{node_id}/move-to-root", response_model=None)
async def move_node_to_root(
    node_id: int,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.move_node_to_root(node_id), service)


@router.post("/nodes/{node_id}/shift-up", response_model=None)
async def shift_node_to_parent(
    node_id: int,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.shift_node_to_parent(node_id), service)


@router.delete("/nodes/{node_id}", response_model=None)
async def delete_node(
    node_id: int,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.delete_node(node_id), service)


@router.put("/current", response_model=None)
async def set_current_node(
    request: SetCurrentNodeRequest,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(await service.set_current_node(request.node_id), service)


# -- Annotations --


@router.post(
    "/nodes/{node_id}/annotations",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def add_annotation(
    node_id: int,
    request: AddAnnotationRequest,
    service: TreeService = Depends(get_tree_service),
) -> Annotation | JSONResponse:
    annotation = await service.add_annotation(node_id, request.text)
    if annotation is None:
        return _operation_response(False, service)
    return annotation


@router.delete("/nodes/{node_id}/annotations/{annotation_id}", response_model=None)
async def remove_annotation(
    node_id: int,
    annotation_id: str,
    service: TreeService = Depends(get_tree_service),
) -> OperationResponse | JSONResponse:
    return _operation_response(
        await service.remove_annotation(node_id, annotation_id), service,
    )


# -- Integrity --


@router.post("/repair")
async def repair_tree(
    validation: TreeValidationService = Depends(get_validation_service),
) -> RepairResult:
    return await validation.repair_tree_integrity(source="manual")


@router.get("/repairs")
async def get_repair_history(
    limit: int | None = Query(None, ge=1, le=500),
    validation: TreeValidationService = Depends(get_validation_service),
) -> list[RepairLogEntry]:
    return await validation.get_repair_history(limit)


@router.put("/sync")
async def overwrite_from_sync(
    tree: Any = Body(...),
    validation: TreeValidationService = Depends(get_validation_service),
) -> RepairResult:
    """Wholesale replacement by the sync transport, repaired before anyone reads it."""
    return await validation.overwrite_from_sync(tree)
