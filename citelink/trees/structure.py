"""Index-based tree walks and visible-tree views.

Every walk goes through a ``dict[int, CitationNode]`` id index and tracks
visited ids, so a corrupt snapshot (cycles, dangling ids) can't loop forever.
"""

from collections import defaultdict
from collections.abc import Iterable, Iterator

from citelink.models import CitationNode


def index_nodes(nodes: Iterable[CitationNode]) -> dict[int, CitationNode]:
    """Map ids to nodes. If an id repeats, the first record wins."""
    index: dict[int, CitationNode] = {}
    for node in nodes:
        index.setdefault(node.id, node)
    return index


def children_by_parent(nodes: Iterable[CitationNode]) -> dict[int | None, list[int]]:
    """Group node ids by parent_id, preserving node order within each group."""
    groups: dict[int | None, list[int]] = defaultdict(list)
    for node in nodes:
        groups[node.parent_id].append(node.id)
    return groups


def iter_ancestors(index: dict[int, CitationNode], node_id: int) -> Iterator[int]:
    """Yield the ids above ``node_id``, nearest first.

    Stops at a root, at a parent id that isn't in the index, or when the
    walk revisits an id.
    """
    seen = {node_id}
    node = index.get(node_id)
    while node is not None and node.parent_id is not None:
        parent_id = node.parent_id
        if parent_id in seen:
            return
        seen.add(parent_id)
        yield parent_id
        node = index.get(parent_id)


def is_ancestor(index: dict[int, CitationNode], ancestor_id: int, node_id: int) -> bool:
    """True if ``ancestor_id`` is strictly above ``node_id``."""
    return any(a == ancestor_id for a in iter_ancestors(index, node_id))


def collect_descendants(index: dict[int, CitationNode], node_id: int) -> set[int]:
    """Return ``node_id`` plus every id reachable through children links."""
    collected: set[int] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in collected:
            continue
        collected.add(current)
        node = index.get(current)
        if node is not None:
            stack.extend(node.children)
    return collected


def find_cycle(index: dict[int, CitationNode], node_id: int) -> list[int] | None:
    """Follow parent links from ``node_id``; return the ids of a cycle if one is hit."""
    path: list[int] = []
    position: dict[int, int] = {}
    current: int | None = node_id
    while current is not None and current in index:
        if current in position:
            return path[position[current]:]
        position[current] = len(path)
        path.append(current)
        current = index[current].parent_id
    return None


# -- Visible-tree views --


def get_visible_nodes(nodes: Iterable[CitationNode]) -> list[CitationNode]:
    return [n for n in nodes if not n.deleted]


def get_root_nodes(nodes: Iterable[CitationNode]) -> list[CitationNode]:
    return [n for n in nodes if n.parent_id is None and not n.deleted]


def get_child_nodes(
    nodes: Iterable[CitationNode], parent_id: int | None,
) -> list[CitationNode]:
    """Visible nodes directly under ``parent_id`` (``None`` for roots)."""
    return [n for n in nodes if n.parent_id == parent_id and not n.deleted]
