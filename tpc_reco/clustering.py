from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, List, Sequence, TypeVar

from networkx.utils import UnionFind

T = TypeVar("T")

MergePredicate = Callable[["ClusterNode", "ClusterNode"], bool]


@dataclass(slots=True)
class ClusterNode(Generic[T]):
    """An entity to be clustered, tagged with its search-bucket id ``index0``."""
    item: T
    index0: int = 0


def make_nodes(items: Iterable[T], index_of: Callable[[T], int] | None = None) -> List[ClusterNode[T]]:
    """Wrap ``items`` into nodes; ``index_of`` supplies the bucket id (default 0)."""
    if index_of is None:
        return [ClusterNode(it, 0) for it in items]
    return [ClusterNode(it, int(index_of(it))) for it in items]


def _collect(uf: UnionFind, order: List[int], nodes: Sequence[ClusterNode[T]], min_size: int) -> List[List[T]]:
    groups: Dict[Any, List[T]] = {}
    for i in order:
        groups.setdefault(uf[i], []).append(nodes[i].item)
    return [g for g in groups.values() if len(g) >= min_size]


def _link(uf: UnionFind, seen: set, order: List[int], i: int, j: int) -> None:
    for k in (i, j):
        if k not in seen:
            seen.add(k)
            order.append(k)
    uf.union(i, j)


def cluster(nodes: Sequence[ClusterNode[T]], merge: MergePredicate, min_size: int = 1) -> List[List[T]]:
    r"""
    Single-linkage clustering over all pairs of nodes.

    Every pair :math:`(i, j), i < j` is tested with ``merge``; linked nodes end
    up in the same group (connected components via union-find).

    Parameters
    ----------
    nodes : sequence of :class:`ClusterNode`
    merge : callable
        Symmetric predicate ``merge(node_a, node_b) -> bool``.
    min_size : int
        Groups with fewer items are dropped. Nodes that were never linked to
        any other node do not form a group.

    Returns
    -------
    list[list]
        Groups of items, ordered by their first link in the sweep; inside a
        group, items are ordered by the sweep step that first linked them.
    """
    uf = UnionFind()
    seen: set = set()
    order: List[int] = []
    n = len(nodes)
    for i in range(n):
        ni = nodes[i]
        for j in range(i + 1, n):
            if merge(ni, nodes[j]):
                _link(uf, seen, order, i, j)
    return _collect(uf, order, nodes, min_size)


def cluster_sorted(nodes: Sequence[ClusterNode[T]], merge: MergePredicate, min_size: int = 1) -> List[List[T]]:
    r"""
    Like :func:`cluster`, for nodes sorted by ``index0``.

    The inner loop stops as soon as the bucket gap exceeds one, so only
    neighbouring buckets are compared.

    Raises
    ------
    ValueError
        If ``nodes`` is not sorted by ``index0``.
    """
    n = len(nodes)
    for i in range(1, n):
        if nodes[i].index0 < nodes[i - 1].index0:
            raise ValueError("cluster_sorted needs nodes sorted by index0.")
    uf = UnionFind()
    seen: set = set()
    order: List[int] = []
    for i in range(n):
        ni = nodes[i]
        for j in range(i + 1, n):
            nj = nodes[j]
            if nj.index0 - ni.index0 > 1:
                break
            if merge(ni, nj):
                _link(uf, seen, order, i, j)
    return _collect(uf, order, nodes, min_size)
