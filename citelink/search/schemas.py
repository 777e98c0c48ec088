"""Search request/response schemas."""

from typing import Literal

from pydantic import Field

from citelink.models import CamelModel


class SearchOptions(CamelModel):
    search_highlighted: bool = True
    search_annotations: bool = True
    filter_mode: bool = False  # UI hint: show only matching nodes


class SearchMatch(CamelModel):
    type: Literal["highlight", "annotation"]
    text: str
    node_id: int
    annotation_index: int | None = None


class SearchResult(CamelModel):
    node_id: int
    matches: list[SearchMatch]
    priority: int  # 1 = has a highlight match, 2 = annotation-only


class SearchResponse(CamelModel):
    query: str
    results: list[SearchResult] = Field(default_factory=list)
    total: int = 0
    counter: str = "0 of 0"
    current: SearchResult | None = None
