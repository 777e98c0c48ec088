"""Protocols for dependency injection of the persistence collaborators."""

import asyncio
from typing import Protocol, runtime_checkable

from citelink.models import CitationTree


@runtime_checkable
class TreeStoreProtocol(Protocol):
    """Whole-document persistence for the citation tree.

    ``lock`` serializes every read-mutate-write span in this process.
    """

    lock: asyncio.Lock

    async def load_tree(self) -> CitationTree:
        """Return the stored tree, or an empty tree at version 0."""
        ...

    async def save_tree(self, tree: CitationTree, *, force: bool = False) -> int:
        """Persist the whole tree and return its new storage version.

        Raises StaleTreeError when ``tree.version`` no longer matches storage,
        unless ``force`` is set.
        """
        ...

    async def load_node_counter(self) -> int:
        """Return the last id handed out by capture."""
        ...

    async def save_node_counter(self, value: int) -> None:
        """Persist the last id handed out by capture."""
        ...


@runtime_checkable
class SyncNotifierProtocol(Protocol):
    """The part of the sync collaborator that tracks unsynced local changes."""

    async def mark_as_modified(self) -> None:
        """Record that local data changed since the last sync."""
        ...
