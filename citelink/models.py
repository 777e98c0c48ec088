"""Canonical data structures for Citelink.

Defined once here, referenced everywhere else. Python attributes are
snake_case; the serialized shape (what the persistence layer and the sync
transport see) is camelCase, matching the sidebar's storage format.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Current time as an ISO-8601 string, the format used for all timestamps."""
    return datetime.now(UTC).isoformat()


class CamelModel(BaseModel):
    """Base for every persisted shape: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Tree shapes
# ---------------------------------------------------------------------------


class Annotation(CamelModel):
    id: str
    text: str
    timestamp: str = Field(default_factory=utc_now_iso)
    audio_url: str | None = None


class CitationNode(CamelModel):
    id: int
    text: str = ""
    url: str = ""
    timestamp: str = ""
    parent_id: int | None = None
    children: list[int] = Field(default_factory=list)
    deleted: bool = False
    deleted_at: str | None = None
    annotations: list[Annotation] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)


class CitationTree(CamelModel):
    """The whole tree aggregate, always read and written as one document.

    ``ui_only_change`` and ``version`` are transient: neither is persisted.
    ``version`` is the storage version this snapshot was loaded at.
    """

    nodes: list[CitationNode] = Field(default_factory=list)
    current_node_id: int | None = None
    ui_only_change: bool = Field(default=False, exclude=True)
    version: int = Field(default=0, exclude=True)


# ---------------------------------------------------------------------------
# Repair ledger
# ---------------------------------------------------------------------------

RepairType = Literal[
    "removed_duplicate_node",
    "promoted_to_root",
    "broke_cycle",
    "removed_invalid_children",
    "added_missing_children",
    "cleared_invalid_current_node",
    "cleared_deleted_current_node",
]

# Repairs that only touch the cursor; they never count as content changes.
UI_ONLY_REPAIR_TYPES: frozenset[str] = frozenset(
    {"cleared_invalid_current_node", "cleared_deleted_current_node"}
)


class RepairRecord(CamelModel):
    type: RepairType
    node_id: int | None = None
    # A str when the stored cursor wasn't an id at all
    invalid_node_id: int | str | None = None
    original_parent_id: int | None = None
    chain_length: int | None = None
    removed_children: list[int] | None = None
    added_children: list[int] | None = None

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RepairResult(CamelModel):
    nodes: list[CitationNode] = Field(default_factory=list)
    current_node_id: int | None = None
    repaired: bool = False
    repairs: list[RepairRecord] = Field(default_factory=list)

    @property
    def structural(self) -> bool:
        """True when at least one repair changed content, not just the cursor."""
        return any(r.type not in UI_ONLY_REPAIR_TYPES for r in self.repairs)

    def to_tree(self, version: int = 0) -> CitationTree:
        return CitationTree(
            nodes=[n.model_copy(deep=True) for n in self.nodes],
            current_node_id=self.current_node_id,
            version=version,
        )


class RepairLogEntry(BaseModel):
    """One persisted repair ledger. Stored in the repair_log table."""

    repair_id: str
    timestamp: datetime
    source: str = "load"
    repairs: list[RepairRecord]
    sequence_num: int | None = None  # assigned by DB on insert


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


class SyncState(CamelModel):
    dirty: bool = False
    last_modified: str | None = None
    last_sync_time: str | None = None


# ---------------------------------------------------------------------------
# Tabs
# ---------------------------------------------------------------------------


class Tab(CamelModel):
    """One named workspace. Its tree is stored as a separate document."""

    id: str
    title: str
    url: str = ""
    is_active: bool = False
    last_modified: str = Field(default_factory=utc_now_iso)


class TabState(CamelModel):
    tabs: list[Tab] = Field(default_factory=list)
    active_tab_id: str | None = None
