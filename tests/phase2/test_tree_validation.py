"""Tests for the validation pass and its persistence wrapper.

The pure pass (validate_and_repair_tree) is checked ledger-first: every
corruption must produce exactly the expected repair records, in order.
"""

import asyncio
import copy

import pytest

from citelink.models import CitationTree
from citelink.trees.service import TreeService
from citelink.trees.structure import index_nodes
from citelink.validation.service import TreeValidationService
from tests.fakes import FakeTreeStore
from tests.fixtures import (
    assert_tree_invariants,
    make_branching_tree,
    make_chain_tree,
    make_node,
    make_tree,
    tree_as_raw,
)


@pytest.fixture
def validator():
    return TreeValidationService()


def ledger(result) -> list[dict]:
    return [r.to_storage() for r in result.repairs]


class TestValidTrees:
    def test_valid_tree_untouched(self, validator):
        tree = make_branching_tree()
        result = validator.validate_and_repair_tree(tree)
        assert result.repaired is False
        assert result.repairs == []
        assert [n.to_storage() for n in result.nodes] == [n.to_storage() for n in tree.nodes]
        assert result.current_node_id == 5

    def test_empty_tree(self, validator):
        result = validator.validate_and_repair_tree(CitationTree())
        assert result.repaired is False
        assert result.nodes == []

    def test_tombstones_are_valid(self, validator):
        tree = make_tree([make_node(1, None, [2]), make_node(2, 1, deleted=True)], 1)
        assert validator.validate_and_repair_tree(tree).repaired is False


class TestOrphans:
    def test_single_orphan_promoted(self, validator):
        tree = make_tree([make_node(1), make_node(2, 99)])
        result = validator.validate_and_repair_tree(tree)

        assert result.repaired is True
        assert ledger(result) == [{
            "type": "promoted_to_root",
            "nodeId": 2,
            "originalParentId": 99,
            "chainLength": 1,
        }]
        assert index_nodes(result.nodes)[2].parent_id is None

    def test_orphan_chain_keeps_its_subtree(self, validator):
        """Only the chain head loses its parent; 3 and 4 stay attached below it."""
        tree = make_tree([
            make_node(2, 99, [3]),
            make_node(3, 2, [4]),
            make_node(4, 3),
        ])
        result = validator.validate_and_repair_tree(tree)

        assert ledger(result) == [{
            "type": "promoted_to_root",
            "nodeId": 2,
            "originalParentId": 99,
            "chainLength": 3,
        }]
        nodes = index_nodes(result.nodes)
        assert nodes[2].parent_id is None
        assert nodes[3].parent_id == 2
        assert nodes[4].parent_id == 3

    def test_siblings_under_same_missing_parent(self, validator):
        """Each orphan is its own chain head."""
        tree = make_tree([make_node(2, 99), make_node(3, 99)])
        result = validator.validate_and_repair_tree(tree)
        assert [(r.type, r.node_id) for r in result.repairs] == [
            ("promoted_to_root", 2),
            ("promoted_to_root", 3),
        ]

    def test_no_node_dropped(self, validator):
        tree = make_tree([make_node(5, 50), make_node(6, 60, [7]), make_node(7, 6)])
        result = validator.validate_and_repair_tree(tree)
        assert sorted(n.id for n in result.nodes) == [5, 6, 7]


class TestCycles:
    def test_two_node_cycle(self, validator):
        tree = make_tree([make_node(1, 2, [2]), make_node(2, 1, [1])])
        result = validator.validate_and_repair_tree(tree)

        assert ledger(result) == [
            {"type": "broke_cycle", "nodeId": 1, "originalParentId": 2, "chainLength": 2},
            {"type": "removed_invalid_children", "nodeId": 2, "removedChildren": [1]},
        ]
        nodes = index_nodes(result.nodes)
        assert nodes[1].parent_id is None
        assert nodes[2].parent_id == 1

    def test_self_parent(self, validator):
        tree = make_tree([make_node(7, 7, [7])])
        result = validator.validate_and_repair_tree(tree)
        assert [r.type for r in result.repairs] == ["broke_cycle", "removed_invalid_children"]
        assert result.nodes[0].parent_id is None
        assert result.nodes[0].children == []

    def test_two_separate_cycles(self, validator):
        tree = make_tree([
            make_node(1, 2), make_node(2, 1),
            make_node(5, 6), make_node(6, 5),
        ])
        result = validator.validate_and_repair_tree(tree)
        broken = [r.node_id for r in result.repairs if r.type == "broke_cycle"]
        assert broken == [1, 5]
        assert_tree_invariants(result.to_tree())


class TestChildren:
    def test_invalid_and_duplicate_children_removed(self, validator):
        tree = make_tree([
            make_node(1, None, [2, 2, 42]),
            make_node(2, 1),
            make_node(3, 1),
        ])
        result = validator.validate_and_repair_tree(tree)
        assert ledger(result) == [
            {"type": "removed_invalid_children", "nodeId": 1, "removedChildren": [2, 42]},
            {"type": "added_missing_children", "nodeId": 1, "addedChildren": [3]},
        ]
        assert index_nodes(result.nodes)[1].children == [2, 3]

    def test_existing_child_order_kept(self, validator):
        tree = make_tree([make_node(1, None, [3, 2]), make_node(2, 1), make_node(3, 1)])
        result = validator.validate_and_repair_tree(tree)
        assert result.repaired is False
        assert result.nodes[0].children == [3, 2]

    def test_child_listed_under_wrong_parent(self, validator):
        tree = make_tree([
            make_node(1, None, [3]),
            make_node(2, None, []),
            make_node(3, 2),
        ])
        result = validator.validate_and_repair_tree(tree)
        assert [(r.type, r.node_id) for r in result.repairs] == [
            ("removed_invalid_children", 1),
            ("added_missing_children", 2),
        ]


class TestCurrentNode:
    def test_missing_current_cleared(self, validator):
        tree = make_tree([make_node(1)], current_node_id=9)
        result = validator.validate_and_repair_tree(tree)
        assert result.current_node_id is None
        assert ledger(result) == [
            {"type": "cleared_invalid_current_node", "invalidNodeId": 9},
        ]
        assert result.structural is False

    def test_deleted_current_cleared(self, validator):
        tree = make_tree([make_node(1, deleted=True)], current_node_id=1)
        result = validator.validate_and_repair_tree(tree)
        assert result.current_node_id is None
        assert ledger(result) == [
            {"type": "cleared_deleted_current_node", "invalidNodeId": 1},
        ]


class TestShapeChecks:
    @pytest.mark.parametrize(
        "raw",
        [None, "tree", 42, {}, {"nodes": "x"}, {"nodes": [{"text": "no id"}]}],
    )
    def test_unusable_input_yields_empty_tree(self, validator, raw):
        result = validator.validate_and_repair_tree(raw)
        assert result.nodes == []
        assert result.current_node_id is None
        assert result.repaired is False

    def test_raw_dict_accepted(self, validator):
        raw = tree_as_raw(make_tree([make_node(1), make_node(2, 99)]))
        result = validator.validate_and_repair_tree(raw)
        assert [r.type for r in result.repairs] == ["promoted_to_root"]

    def test_non_integer_cursor_keeps_nodes(self, validator):
        raw = {
            "nodes": tree_as_raw(make_tree([make_node(1, None, [2]), make_node(2, 1)]))["nodes"],
            "currentNodeId": "abc",
        }
        result = validator.validate_and_repair_tree(raw)
        assert [n.id for n in result.nodes] == [1, 2]
        assert result.current_node_id is None
        assert ledger(result) == [
            {"type": "cleared_invalid_current_node", "invalidNodeId": "abc"},
        ]
        assert result.structural is False

    @pytest.mark.parametrize("cursor", [True, 2.5, [2], {"id": 2}])
    def test_other_non_id_cursors_cleared(self, validator, cursor):
        raw = tree_as_raw(make_tree([make_node(1), make_node(2)]))
        raw["currentNodeId"] = cursor
        result = validator.validate_and_repair_tree(raw)
        assert len(result.nodes) == 2
        assert [r.type for r in result.repairs] == ["cleared_invalid_current_node"]
        assert result.current_node_id is None

    def test_non_integer_cursor_repair_is_idempotent(self, validator):
        raw = tree_as_raw(make_tree([make_node(1)]))
        raw["currentNodeId"] = "abc"
        first = validator.validate_and_repair_tree(raw)
        second = validator.validate_and_repair_tree(first.to_tree())
        assert second.repaired is False


class TestDuplicateIds:
    def raw_with_duplicate(self) -> dict:
        """Node 5 appears twice under 1, and 1 lists it twice."""
        return tree_as_raw(make_tree(
            [make_node(1, None, [5, 5]), make_node(5, 1, text="first"), make_node(5, 1)],
            current_node_id=5,
        ))

    def test_later_record_dropped(self, validator):
        result = validator.validate_and_repair_tree(self.raw_with_duplicate())
        assert ledger(result) == [
            {"type": "removed_duplicate_node", "nodeId": 5, "originalParentId": 1},
            {"type": "removed_invalid_children", "nodeId": 1, "removedChildren": [5]},
        ]
        assert [n.id for n in result.nodes] == [1, 5]
        assert index_nodes(result.nodes)[5].text == "first"
        assert index_nodes(result.nodes)[1].children == [5]
        assert result.current_node_id == 5
        assert result.structural is True
        assert_tree_invariants(result.to_tree())

    def test_repair_is_idempotent(self, validator):
        first = validator.validate_and_repair_tree(self.raw_with_duplicate())
        second = validator.validate_and_repair_tree(first.to_tree())
        assert second.repaired is False
        assert second.repairs == []

    def test_duplicates_under_different_parents(self, validator):
        tree = make_tree([
            make_node(1, None, [3]), make_node(2, None, [3]),
            make_node(3, 1), make_node(3, 2),
        ])
        result = validator.validate_and_repair_tree(tree)
        index = index_nodes(result.nodes)
        assert index[3].parent_id == 1
        assert index[2].children == []
        assert_tree_invariants(result.to_tree())

    def test_cursor_follows_surviving_record(self, validator):
        tree = make_tree(
            [make_node(1), make_node(1, deleted=True)], current_node_id=1,
        )
        result = validator.validate_and_repair_tree(tree)
        assert result.current_node_id == 1
        assert [r.type for r in result.repairs] == ["removed_duplicate_node"]


class TestPassProperties:
    def test_input_not_mutated(self, validator):
        tree = make_tree([make_node(1, 2, [2]), make_node(2, 1), make_node(3, 99)], 8)
        before = tree.to_storage()
        validator.validate_and_repair_tree(tree)
        assert tree.to_storage() == before

    def test_raw_input_not_mutated(self, validator):
        raw = tree_as_raw(make_tree([make_node(1, None, [5]), make_node(3, 99)]))
        before = copy.deepcopy(raw)
        validator.validate_and_repair_tree(raw)
        assert raw == before

    def test_repair_is_idempotent(self, validator):
        tree = make_tree(
            [make_node(1, 2, [9]), make_node(2, 1), make_node(3, 99, [4]), make_node(4, 3)],
            current_node_id=77,
        )
        first = validator.validate_and_repair_tree(tree)
        second = validator.validate_and_repair_tree(first.to_tree())
        assert first.repaired is True
        assert second.repaired is False
        assert_tree_invariants(first.to_tree())


class TestRepairTreeIntegrity:
    async def test_requires_store(self, validator):
        with pytest.raises(RuntimeError):
            await validator.repair_tree_integrity()

    async def test_clean_tree_not_saved(self, validation_service, tree_store, repair_log):
        await tree_store.save_tree(make_chain_tree())
        result = await validation_service.repair_tree_integrity()
        assert result.repaired is False
        assert (await tree_store.load_tree()).version == 1
        assert await repair_log.get_entries() == []

    async def test_structural_repair_persisted_and_logged(
        self, validation_service, tree_store, repair_log, sync_tracker,
    ):
        await tree_store.save_tree(make_tree([make_node(1), make_node(2, 99)]))
        await sync_tracker.mark_synced()

        result = await validation_service.repair_tree_integrity()

        assert result.repaired is True
        stored = await tree_store.load_tree()
        assert stored.version == 2
        assert index_nodes(stored.nodes)[2].parent_id is None
        assert (await sync_tracker.get_state()).dirty is True

        [entry] = await repair_log.get_entries()
        assert entry.source == "load"
        assert [r.type for r in entry.repairs] == ["promoted_to_root"]

    async def test_cursor_repair_is_ui_only(
        self, validation_service, tree_store, sync_tracker,
    ):
        await tree_store.save_tree(make_tree([make_node(1, deleted=True)], 1))
        await sync_tracker.mark_synced()

        await validation_service.repair_tree_integrity()

        assert (await tree_store.load_tree()).current_node_id is None
        assert (await sync_tracker.get_state()).dirty is False

    async def test_raw_snapshot_force_saved(self, validation_service, tree_store):
        await tree_store.save_tree(make_chain_tree())
        raw = tree_as_raw(make_tree([make_node(7, 70)]))

        result = await validation_service.repair_tree_integrity(raw, source="manual")

        assert result.repaired is True
        stored = await tree_store.load_tree()
        assert [n.id for n in stored.nodes] == [7]
        assert stored.nodes[0].parent_id is None

    async def test_raw_snapshot_with_bad_cursor_keeps_tree(
        self, validation_service, tree_store, repair_log,
    ):
        raw = tree_as_raw(make_tree([make_node(1, None, [2]), make_node(2, 1)]))
        raw["currentNodeId"] = "abc"

        result = await validation_service.repair_tree_integrity(raw, source="manual")

        stored = await tree_store.load_tree()
        assert [n.id for n in stored.nodes] == [1, 2]
        assert stored.current_node_id is None
        [entry] = await repair_log.get_entries()
        assert entry.repairs[0].invalid_node_id == "abc"
        assert result.repaired is True

    async def test_duplicate_repair_settles_after_one_save(
        self, validation_service, tree_store,
    ):
        await tree_store.save_tree(
            make_tree([make_node(1, None, [5]), make_node(5, 1), make_node(5, 1)]),
        )
        first = await validation_service.repair_tree_integrity()
        second = await validation_service.repair_tree_integrity()

        assert [r.type for r in first.repairs] == ["removed_duplicate_node"]
        assert second.repaired is False
        stored = await tree_store.load_tree()
        assert stored.version == 2
        assert [n.id for n in stored.nodes] == [1, 5]

    async def test_stale_repair_not_saved(self):
        """A concurrent external write wins over the repair write."""
        store = FakeTreeStore(make_tree([make_node(2, 99)]))
        external = make_tree([make_node(5)])

        async def interfere():
            store.before_save = None
            await store.external_write(external)

        store.before_save = interfere
        service = TreeValidationService(store)
        result = await service.repair_tree_integrity()

        assert result.repaired is True
        assert store.stored_tree().to_storage() == external.to_storage()

    async def test_history(self, validation_service, tree_store):
        await tree_store.save_tree(make_tree([make_node(2, 99)]))
        await validation_service.repair_tree_integrity(source="startup")
        history = await validation_service.get_repair_history()
        assert [e.source for e in history] == ["startup"]

    async def test_history_without_log(self, tree_store):
        assert await TreeValidationService(tree_store).get_repair_history() == []


class TestOverwriteFromSync:
    async def test_clean_snapshot_replaces_tree(
        self, validation_service, tree_store, sync_tracker, repair_log,
    ):
        await tree_store.save_tree(make_chain_tree())
        await sync_tracker.mark_synced()

        result = await validation_service.overwrite_from_sync(
            tree_as_raw(make_branching_tree()),
        )

        assert result.repaired is False
        stored = await tree_store.load_tree()
        assert [n.id for n in stored.nodes] == [1, 2, 3, 4, 5, 6]
        assert (await sync_tracker.get_state()).dirty is False
        assert await repair_log.get_entries() == []

    async def test_corrupt_snapshot_repaired(
        self, validation_service, tree_store, sync_tracker, repair_log,
    ):
        raw = tree_as_raw(make_tree([make_node(1, None, [2]), make_node(3, 99)], 3))
        result = await validation_service.overwrite_from_sync(raw)

        assert [r.type for r in result.repairs] == [
            "promoted_to_root", "removed_invalid_children",
        ]
        stored = await tree_store.load_tree()
        assert_tree_invariants(stored)
        assert stored.current_node_id == 3
        assert (await sync_tracker.get_state()).dirty is True
        [entry] = await repair_log.get_entries()
        assert entry.source == "sync"

    async def test_unusable_snapshot_clears_tree(self, validation_service, tree_store):
        await tree_store.save_tree(make_chain_tree())
        await validation_service.overwrite_from_sync({"nodes": "garbage"})
        assert (await tree_store.load_tree()).nodes == []

    async def test_snapshot_saved_once_under_the_lock(self):
        store = FakeTreeStore(make_chain_tree())
        held: list[bool] = []

        async def record_lock():
            held.append(store.lock.locked())

        store.before_save = record_lock
        raw = tree_as_raw(make_tree([make_node(1, None, [2]), make_node(3, 99)]))
        await TreeValidationService(store).overwrite_from_sync(raw)

        assert held == [True]
        assert_tree_invariants(store.stored_tree())

    async def test_queued_edit_never_sees_unrepaired_snapshot(self, tree_store):
        """An edit racing the overwrite acts on the repaired tree, not the raw one."""
        trees = TreeService(tree_store)
        validation = TreeValidationService(tree_store)
        await tree_store.save_tree(make_chain_tree())
        # 1 lists 2 and 9; 9 doesn't exist and 2 is really a child of 3
        raw = tree_as_raw(make_tree(
            [make_node(1, None, [2, 9]), make_node(2, 3), make_node(3, 1, [])], 2,
        ))

        result, moved = await asyncio.gather(
            validation.overwrite_from_sync(raw),
            trees.move_node_to_root(2),
        )

        assert result.repaired is True
        assert moved is True
        stored = await tree_store.load_tree()
        assert_tree_invariants(stored)
        index = index_nodes(stored.nodes)
        assert index[2].parent_id is None
        assert index[1].children == [3]
        assert index[3].children == []
