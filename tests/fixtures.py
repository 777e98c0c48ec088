"""Shared test helpers: node/tree builders and an invariant checker."""

from typing import Any

from citelink.models import Annotation, CitationNode, CitationTree
from citelink.trees.structure import find_cycle, index_nodes


def make_node(
    node_id: int,
    parent_id: int | None = None,
    children: list[int] | None = None,
    text: str | None = None,
    *,
    deleted: bool = False,
    annotations: list[str] | None = None,
    **overrides: Any,
) -> CitationNode:
    """Create a CitationNode for testing. Annotation texts become Annotations."""
    return CitationNode(
        id=node_id,
        text=text if text is not None else f"Citation {node_id}",
        url=f"https://example.com/{node_id}",
        timestamp="2026-01-01T00:00:00+00:00",
        parent_id=parent_id,
        children=children or [],
        deleted=deleted,
        deleted_at="2026-01-02T00:00:00+00:00" if deleted else None,
        annotations=[
            Annotation(id=f"a{node_id}-{i}", text=t, timestamp="2026-01-01T00:00:00+00:00")
            for i, t in enumerate(annotations or [])
        ],
        **overrides,
    )


def make_tree(
    nodes: list[CitationNode], current_node_id: int | None = None,
) -> CitationTree:
    return CitationTree(nodes=nodes, current_node_id=current_node_id)


def make_chain_tree() -> CitationTree:
    """1 -> 2 -> 3, plus an unrelated root 4. Current node is 3."""
    return make_tree(
        [
            make_node(1, None, [2]),
            make_node(2, 1, [3]),
            make_node(3, 2, []),
            make_node(4, None, []),
        ],
        current_node_id=3,
    )


def make_branching_tree() -> CitationTree:
    """1 -> (2 -> (5, 6), 3), 4 is a second root. Current node is 5."""
    return make_tree(
        [
            make_node(1, None, [2, 3]),
            make_node(2, 1, [5, 6]),
            make_node(3, 1, []),
            make_node(4, None, []),
            make_node(5, 2, []),
            make_node(6, 2, []),
        ],
        current_node_id=5,
    )


def tree_as_raw(tree: CitationTree) -> dict:
    """The camelCase dict the sync transport would hand over."""
    return tree.to_storage()


def assert_tree_invariants(tree: CitationTree) -> None:
    """Check parent existence, children sync, acyclicity and cursor safety."""
    index = index_nodes(tree.nodes)
    assert len(index) == len(tree.nodes), "duplicate node ids"

    for node in tree.nodes:
        if node.parent_id is not None:
            assert node.parent_id in index, f"node {node.id} has missing parent"

        expected = {c.id for c in tree.nodes if c.parent_id == node.id}
        assert set(node.children) == expected, f"children of {node.id} out of sync"
        assert len(node.children) == len(expected), f"duplicate children on {node.id}"

        assert find_cycle(index, node.id) is None, f"cycle through {node.id}"

    if tree.current_node_id is not None:
        current = index.get(tree.current_node_id)
        assert current is not None, "current node missing"
        assert not current.deleted, "current node deleted"
