"""Tree validation and repair.

Any snapshot that may not have come from our own writes (a fresh load, a
sync overwrite) goes through ``validate_and_repair_tree`` before it is
handed to consumers. The pass never drops a node: orphans and cycle members
are promoted to root, children arrays are rebuilt from parent pointers, and
a dangling cursor is cleared. Every change lands in an ordered repair ledger.
"""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from citelink.models import (
    CitationNode,
    CitationTree,
    RepairLogEntry,
    RepairRecord,
    RepairResult,
)
from citelink.store.protocols import TreeStoreProtocol
from citelink.store.repair_log import RepairLog
from citelink.store.tree_store import StaleTreeError
from citelink.trees.structure import children_by_parent, find_cycle, index_nodes

logger = logging.getLogger(__name__)


class TreeValidationService:
    """Detects and heals structural corruption in a tree snapshot."""

    def __init__(
        self,
        store: TreeStoreProtocol | None = None,
        repair_log: RepairLog | None = None,
    ) -> None:
        self._store = store
        self._repair_log = repair_log

    def validate_and_repair_tree(self, tree: CitationTree | dict | Any) -> RepairResult:
        """Return a structurally valid copy of ``tree`` plus the repair ledger.

        Unusable input (not a tree, ``nodes`` not a list of node records)
        yields an empty tree with ``repaired=False``. A cursor that isn't an
        id is cleared like any other dangling cursor; the nodes are kept.
        """
        snapshot, bad_cursor = self._coerce(tree)
        if snapshot is None:
            return RepairResult()

        repairs: list[RepairRecord] = []
        nodes = self._remove_duplicate_ids(snapshot.nodes, repairs)

        self._repair_orphans(nodes, repairs)
        self._break_cycles(nodes, repairs)
        self._repair_children(nodes, repairs)
        current_node_id = self._validate_current_node(
            nodes, snapshot.current_node_id, repairs, bad_cursor=bad_cursor,
        )

        if repairs:
            logger.info(
                "Tree repair completed: %s",
                [r.to_storage() for r in repairs],
            )

        return RepairResult(
            nodes=nodes,
            current_node_id=current_node_id,
            repaired=bool(repairs),
            repairs=repairs,
        )

    async def repair_tree_integrity(
        self,
        tree: CitationTree | dict | None = None,
        *,
        source: str = "load",
    ) -> RepairResult:
        """Validate a snapshot (default: the stored tree) and persist any repair.

        The write bumps the sync dirty flag only when a repair changed content;
        clearing a dangling cursor alone is saved as a UI-only change.
        """
        store = self._require_store()
        async with store.lock:
            if tree is None:
                tree = await store.load_tree()
            result = self.validate_and_repair_tree(tree)
            if not result.repaired:
                return result

            logger.info("Tree structure repaired, saving %d repairs", len(result.repairs))
            # Only a snapshot we loaded ourselves carries a trustworthy version.
            version = tree.version if isinstance(tree, CitationTree) else 0
            repaired_tree = result.to_tree(version=version)
            repaired_tree.ui_only_change = not result.structural
            try:
                await store.save_tree(
                    repaired_tree, force=not isinstance(tree, CitationTree),
                )
            except StaleTreeError as e:
                # The next load repairs whatever is stored now.
                logger.warning("Repaired tree not saved: %s", e)
                return result

        await self._log_repairs(result, source)
        return result

    async def overwrite_from_sync(self, tree: CitationTree | dict | Any) -> RepairResult:
        """Replace the stored tree wholesale (last write wins), already repaired.

        Validation and the forced write share one locked span, so no queued
        edit can load the snapshot before it is repaired.
        """
        store = self._require_store()
        async with store.lock:
            result = self.validate_and_repair_tree(tree)
            incoming = result.to_tree()
            # Sync already has this data; only a structural repair is new to push
            incoming.ui_only_change = not result.structural
            await store.save_tree(incoming, force=True)
        logger.info("Tree overwritten from sync with %d nodes", len(incoming.nodes))

        if result.repaired:
            await self._log_repairs(result, "sync")
        return result

    async def get_repair_history(self, limit: int | None = None) -> list[RepairLogEntry]:
        """Persisted repair ledgers, oldest first."""
        if self._repair_log is None:
            return []
        return await self._repair_log.get_entries(limit)

    def _require_store(self) -> TreeStoreProtocol:
        if self._store is None:
            raise RuntimeError("TreeValidationService has no store configured")
        return self._store

    async def _log_repairs(self, result: RepairResult, source: str) -> None:
        if self._repair_log is None:
            return
        await self._repair_log.append(
            RepairLogEntry(
                repair_id=str(uuid4()),
                timestamp=datetime.now(UTC),
                source=source,
                repairs=result.repairs,
            )
        )

    # -- Repair steps --

    @staticmethod
    def _coerce(tree: CitationTree | dict | Any) -> tuple[CitationTree | None, str | None]:
        """Deep-copy the input into a CitationTree.

        Returns ``(None, None)`` if the nodes are unusable. The second item is
        the raw cursor, as text, when it was present but not an integer id.
        """
        if isinstance(tree, CitationTree):
            return tree.model_copy(deep=True), None
        if not isinstance(tree, dict) or not isinstance(tree.get("nodes"), list):
            logger.warning("Invalid tree structure, initializing empty tree")
            return None, None

        data = dict(tree)
        cursor = data.pop("currentNodeId", None)
        cursor = data.pop("current_node_id", cursor)
        bad_cursor = None
        if cursor is not None and (isinstance(cursor, bool) or not isinstance(cursor, int)):
            logger.warning("Current node id %r is not an id, ignoring it", cursor)
            bad_cursor, cursor = str(cursor), None

        try:
            snapshot = CitationTree.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "Invalid tree structure (%d errors), initializing empty tree",
                e.error_count(),
            )
            return None, None
        snapshot.current_node_id = cursor
        return snapshot, bad_cursor

    @staticmethod
    def _remove_duplicate_ids(
        nodes: list[CitationNode], repairs: list[RepairRecord],
    ) -> list[CitationNode]:
        """Keep the first record for each id, the same one ``index_nodes`` picks."""
        seen: set[int] = set()
        kept: list[CitationNode] = []
        for node in nodes:
            if node.id in seen:
                logger.info("Dropping duplicate record for node %d", node.id)
                repairs.append(RepairRecord(
                    type="removed_duplicate_node",
                    node_id=node.id,
                    original_parent_id=node.parent_id,
                ))
                continue
            seen.add(node.id)
            kept.append(node)
        return kept

    @staticmethod
    def _repair_orphans(nodes: list[CitationNode], repairs: list[RepairRecord]) -> None:
        """Promote the head of each orphan chain to root.

        A chain runs from an orphan down through the first child found at
        each level. Only the head's parent is missing, so the rest of the
        chain stays wired to it.
        """
        node_ids = {n.id for n in nodes}
        orphans = [
            n for n in nodes if n.parent_id is not None and n.parent_id not in node_ids
        ]
        if not orphans:
            return

        logger.info(
            "Found orphaned nodes: %s",
            [{"id": n.id, "missing_parent": n.parent_id} for n in orphans],
        )
        first_child = {
            parent_id: child_ids[0]
            for parent_id, child_ids in children_by_parent(nodes).items()
        }
        processed: set[int] = set()

        for orphan in orphans:
            if orphan.id in processed:
                continue
            chain = [orphan.id]
            processed.add(orphan.id)
            child_id = first_child.get(orphan.id)
            while child_id is not None and child_id not in chain:
                chain.append(child_id)
                processed.add(child_id)
                child_id = first_child.get(child_id)

            original_parent_id = orphan.parent_id
            orphan.parent_id = None
            logger.info(
                "Promoting orphaned node %d to root (was child of missing node %s)",
                orphan.id, original_parent_id,
            )
            repairs.append(RepairRecord(
                type="promoted_to_root",
                node_id=orphan.id,
                original_parent_id=original_parent_id,
                chain_length=len(chain),
            ))

    @staticmethod
    def _break_cycles(nodes: list[CitationNode], repairs: list[RepairRecord]) -> None:
        """Promote the smallest id of every parent cycle to root."""
        index = index_nodes(nodes)
        checked: set[int] = set()
        for node in nodes:
            if node.id in checked:
                continue
            cycle = find_cycle(index, node.id)
            while cycle is not None:
                breaker = index[min(cycle)]
                original_parent_id = breaker.parent_id
                breaker.parent_id = None
                logger.info(
                    "Breaking parent cycle %s by promoting node %d to root",
                    cycle, breaker.id,
                )
                repairs.append(RepairRecord(
                    type="broke_cycle",
                    node_id=breaker.id,
                    original_parent_id=original_parent_id,
                    chain_length=len(cycle),
                ))
                cycle = find_cycle(index, node.id)
            checked.add(node.id)

    @staticmethod
    def _repair_children(nodes: list[CitationNode], repairs: list[RepairRecord]) -> None:
        """Make every children array match the parent pointers."""
        expected_by_parent = children_by_parent(nodes)
        for node in nodes:
            expected = list(dict.fromkeys(expected_by_parent.get(node.id, [])))
            expected_set = set(expected)

            # Ids that aren't real children, and repeats of ones that are.
            kept: list[int] = []
            invalid: list[int] = []
            for child_id in node.children:
                if child_id in expected_set and child_id not in kept:
                    kept.append(child_id)
                else:
                    invalid.append(child_id)
            if invalid:
                logger.info("Removing invalid children from node %d: %s", node.id, invalid)
                node.children = kept
                repairs.append(RepairRecord(
                    type="removed_invalid_children",
                    node_id=node.id,
                    removed_children=invalid,
                ))

            present = set(node.children)
            missing = [c for c in expected if c not in present]
            if missing:
                logger.info("Adding missing children to node %d: %s", node.id, missing)
                node.children.extend(missing)
                repairs.append(RepairRecord(
                    type="added_missing_children",
                    node_id=node.id,
                    added_children=missing,
                ))

    @staticmethod
    def _validate_current_node(
        nodes: list[CitationNode],
        current_node_id: int | None,
        repairs: list[RepairRecord],
        *,
        bad_cursor: str | None = None,
    ) -> int | None:
        if bad_cursor is not None:
            logger.info("Current node %r is not a node id, clearing it", bad_cursor)
            repairs.append(RepairRecord(
                type="cleared_invalid_current_node", invalid_node_id=bad_cursor,
            ))
            return None
        if current_node_id is None:
            return None

        current = next((n for n in nodes if n.id == current_node_id), None)
        if current is None:
            logger.info("Current node %d doesn't exist, clearing it", current_node_id)
            repairs.append(RepairRecord(
                type="cleared_invalid_current_node", invalid_node_id=current_node_id,
            ))
            return None
        if current.deleted:
            logger.info("Current node %d is deleted, clearing it", current_node_id)
            repairs.append(RepairRecord(
                type="cleared_deleted_current_node", invalid_node_id=current_node_id,
            ))
            return None
        return current_node_id
