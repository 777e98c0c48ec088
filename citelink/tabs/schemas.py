"""Request and response schemas for tab endpoints."""

from pydantic import Field

from citelink.models import CamelModel
from citelink.search.schemas import SearchResult


class CreateTabRequest(CamelModel):
    title: str = Field(min_length=1)


class RenameTabRequest(CamelModel):
    title: str = Field(min_length=1)


class SetActiveTabRequest(CamelModel):
    tab_id: str


class TabSearchResult(CamelModel):
    tab_id: str
    tab_title: str
    results: list[SearchResult]
