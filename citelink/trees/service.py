"""Tree service: invariant-preserving structural edits over the citation tree.

Every public operation is one locked read-mutate-write span against the
store: load the whole tree, apply the edit in memory, save the whole tree.
Operations report success as a boolean (or the created object / None).
Rejections and persistence failures are logged and kept on ``last_error``;
nothing is saved when an operation fails.
"""

import logging
from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

import aiosqlite

from citelink.models import Annotation, CitationNode, CitationTree, utc_now_iso
from citelink.store.protocols import TreeStoreProtocol
from citelink.store.tree_store import StaleTreeError
from citelink.trees.structure import collect_descendants, index_nodes, is_ancestor

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PERSISTENCE_ERRORS = (StaleTreeError, aiosqlite.Error, OSError)


class TreeService:
    """Structural edits (move, reparent, delete, capture, annotate) on one tree."""

    def __init__(self, store: TreeStoreProtocol) -> None:
        self._store = store
        self.last_error: Exception | None = None

    async def get_tree(self) -> CitationTree:
        """Load the stored tree as-is. Consumers should go through validation."""
        return await self._store.load_tree()

    # -- Structural operations --

    async def move_node(self, dragged_id: int, target_id: int) -> bool:
        """Attach ``dragged_id`` as the last child of ``target_id``."""
        result = await self._mutate(
            "move_node", lambda tree: self._move(tree, dragged_id, target_id),
        )
        return result is not None

    async def move_node_to_root(self, node_id: int) -> bool:
        """Detach a node from its parent, making it a root."""
        result = await self._mutate(
            "move_node_to_root", lambda tree: self._move_to_root(tree, node_id),
        )
        return result is not None

    async def shift_node_to_parent(self, node_id: int) -> bool:
        """Promote a node to its grandparent's level (root if there is none)."""
        result = await self._mutate(
            "shift_node_to_parent", lambda tree: self._shift_up(tree, node_id),
        )
        return result is not None

    async def delete_node(self, node_id: int) -> bool:
        """Tombstone a node and its whole subtree."""
        result = await self._mutate(
            "delete_node", lambda tree: self._delete(tree, node_id),
        )
        return result is not None

    async def set_current_node(self, node_id: int) -> bool:
        """Move the cursor. Saved as a UI-only change, invisible to sync."""
        result = await self._mutate(
            "set_current_node", lambda tree: self._set_current(tree, node_id),
        )
        return result is not None

    async def capture_node(
        self,
        text: str,
        url: str = "",
        *,
        parent_id: int | None = None,
        timestamp: str | None = None,
    ) -> CitationNode | None:
        """Create a citation under ``parent_id`` (default: the current node).

        The new node gets the next id from the persisted counter and becomes
        the current node.
        """
        self.last_error = None
        async with self._store.lock:
            try:
                tree = await self._store.load_tree()
                counter = await self._store.load_node_counter()
                node = self._capture(tree, counter, text, url, parent_id, timestamp)
                # Counter before tree, so a failed save can only skip an id
                await self._store.save_node_counter(node.id)
                await self._store.save_tree(tree)
            except TreeOperationError as e:
                self._reject("capture_node", e)
                return None
            except _PERSISTENCE_ERRORS as e:
                self._persistence_failed("capture_node", e)
                return None

        logger.info("Captured node %d under %s", node.id, node.parent_id)
        return node

    # -- Annotation operations --

    async def add_annotation(self, node_id: int, text: str) -> Annotation | None:
        """Append an annotation to a node. Does not touch tree shape."""
        return await self._mutate(
            "add_annotation", lambda tree: self._add_annotation(tree, node_id, text),
        )

    async def remove_annotation(self, node_id: int, annotation_id: str) -> bool:
        result = await self._mutate(
            "remove_annotation",
            lambda tree: self._remove_annotation(tree, node_id, annotation_id),
        )
        return result is not None

    # -- Internals --

    async def _mutate(
        self, operation: str, mutate: Callable[[CitationTree], T],
    ) -> T | None:
        """Run one read-mutate-write span. Returns None on any failure."""
        self.last_error = None
        async with self._store.lock:
            try:
                tree = await self._store.load_tree()
                result = mutate(tree)
                await self._store.save_tree(tree)
            except TreeOperationError as e:
                self._reject(operation, e)
                return None
            except _PERSISTENCE_ERRORS as e:
                self._persistence_failed(operation, e)
                return None
        return result

    def _reject(self, operation: str, error: Exception) -> None:
        logger.warning("%s rejected: %s", operation, error)
        self.last_error = error

    def _persistence_failed(self, operation: str, error: Exception) -> None:
        logger.exception("%s failed, tree left as stored: %s", operation, error)
        self.last_error = error

    @staticmethod
    def _require(
        index: dict[int, CitationNode], node_id: int, *, live: bool = True,
    ) -> CitationNode:
        node = index.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        if live and node.deleted:
            raise DeletedNodeError(node_id)
        return node

    @staticmethod
    def _detach(index: dict[int, CitationNode], node: CitationNode) -> None:
        """Remove ``node`` from its current parent's children, if it has one."""
        if node.parent_id is None:
            return
        old_parent = index.get(node.parent_id)
        if old_parent is not None:
            old_parent.children = [c for c in old_parent.children if c != node.id]

    @staticmethod
    def _attach(parent: CitationNode, node: CitationNode) -> None:
        if node.id not in parent.children:
            parent.children.append(node.id)
        node.parent_id = parent.id

    def _move(self, tree: CitationTree, dragged_id: int, target_id: int) -> bool:
        index = index_nodes(tree.nodes)
        dragged = self._require(index, dragged_id)
        target = self._require(index, target_id)

        if dragged_id == target_id or is_ancestor(index, dragged_id, target_id):
            raise CycleError(dragged_id, target_id)

        self._detach(index, dragged)
        self._attach(target, dragged)
        logger.info("Moved node %d to parent %d", dragged_id, target_id)
        return True

    def _move_to_root(self, tree: CitationTree, node_id: int) -> bool:
        index = index_nodes(tree.nodes)
        node = self._require(index, node_id)
        self._detach(index, node)
        node.parent_id = None
        logger.info("Moved node %d to root level", node_id)
        return True

    def _shift_up(self, tree: CitationTree, node_id: int) -> bool:
        index = index_nodes(tree.nodes)
        node = self._require(index, node_id)
        if node.parent_id is None:
            raise NoParentError(node_id)
        parent = index.get(node.parent_id)
        if parent is None:
            raise NodeNotFoundError(node.parent_id)

        self._detach(index, node)
        grandparent = index.get(parent.parent_id) if parent.parent_id is not None else None
        if grandparent is None:
            node.parent_id = None
        else:
            self._attach(grandparent, node)
        logger.info("Shifted node %d up to parent %s", node_id, node.parent_id)
        return True

    def _delete(self, tree: CitationTree, node_id: int) -> bool:
        index = index_nodes(tree.nodes)
        self._require(index, node_id, live=False)

        doomed = collect_descendants(index, node_id)
        now = utc_now_iso()
        for doomed_id in doomed:
            node = index.get(doomed_id)
            if node is not None and not node.deleted:
                node.deleted = True
                node.deleted_at = now

        if tree.current_node_id is not None and tree.current_node_id in doomed:
            tree.current_node_id = None
        logger.info("Deleted node %d and %d descendants", node_id, len(doomed) - 1)
        return True

    def _set_current(self, tree: CitationTree, node_id: int) -> bool:
        self._require(index_nodes(tree.nodes), node_id)
        tree.current_node_id = node_id
        tree.ui_only_change = True
        return True

    def _capture(
        self,
        tree: CitationTree,
        counter: int,
        text: str,
        url: str,
        parent_id: int | None,
        timestamp: str | None,
    ) -> CitationNode:
        index = index_nodes(tree.nodes)
        parent: CitationNode | None = None
        if parent_id is not None:
            parent = self._require(index, parent_id)
        elif tree.current_node_id is not None:
            parent = index.get(tree.current_node_id)
            if parent is None or parent.deleted:
                logger.warning(
                    "Current node %d is not usable as a parent, capturing at root",
                    tree.current_node_id,
                )
                parent = None

        # Ids are never reused, even if the counter lags behind stored nodes.
        new_id = max([counter, *index.keys()]) + 1
        node = CitationNode(
            id=new_id,
            text=text,
            url=url,
            timestamp=timestamp or utc_now_iso(),
        )
        if parent is not None:
            self._attach(parent, node)
        tree.nodes.append(node)
        tree.current_node_id = node.id
        return node

    def _add_annotation(self, tree: CitationTree, node_id: int, text: str) -> Annotation:
        node = self._require(index_nodes(tree.nodes), node_id, live=False)
        annotation = Annotation(id=str(uuid4()), text=text)
        node.annotations.append(annotation)
        return annotation

    def _remove_annotation(
        self, tree: CitationTree, node_id: int, annotation_id: str,
    ) -> bool:
        node = self._require(index_nodes(tree.nodes), node_id, live=False)
        remaining = [a for a in node.annotations if a.id != annotation_id]
        if len(remaining) == len(node.annotations):
            raise AnnotationNotFoundError(annotation_id)
        node.annotations = remaining
        return True


class TreeOperationError(Exception):
    """An operation was refused before any mutation was applied."""


class NodeNotFoundError(TreeOperationError):
    def __init__(self, node_id: int) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class DeletedNodeError(TreeOperationError):
    def __init__(self, node_id: int) -> None:
        self.node_id = node_id
        super().__init__(f"Node is deleted: {node_id}")


class CycleError(TreeOperationError):
    def __init__(self, node_id: int, target_id: int) -> None:
        self.node_id = node_id
        self.target_id = target_id
        super().__init__(f"Moving node {node_id} under {target_id} would create a cycle")


class NoParentError(TreeOperationError):
    def __init__(self, node_id: int) -> None:
        self.node_id = node_id
        super().__init__(f"Node has no parent to shift up to: {node_id}")


class AnnotationNotFoundError(TreeOperationError):
    def __init__(self, annotation_id: str) -> None:
        self.annotation_id = annotation_id
        super().__init__(f"Annotation not found: {annotation_id}")
