"""Request and response schemas for tree and node endpoints."""

from pydantic import Field

from citelink.models import CamelModel, CitationNode, RepairRecord

# -- Requests --


class CaptureNodeRequest(CamelModel):
    text: str
    url: str = ""
    parent_id: int | None = None
    timestamp: str | None = None


class MoveNodeRequest(CamelModel):
    target_id: int


class SetCurrentNodeRequest(CamelModel):
    node_id: int


class AddAnnotationRequest(CamelModel):
    text: str = Field(min_length=1)


# -- Responses --


class OperationResponse(CamelModel):
    success: bool
    error: str | None = None


class TreeResponse(CamelModel):
    """The validated tree plus the views the sidebar renders from."""

    nodes: list[CitationNode] = Field(default_factory=list)
    current_node_id: int | None = None
    visible_nodes: list[CitationNode] = Field(default_factory=list)
    root_ids: list[int] = Field(default_factory=list)
    repaired: bool = False
    repairs: list[RepairRecord] = Field(default_factory=list)
