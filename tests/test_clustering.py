import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from tpc_reco.clustering import ClusterNode, cluster, cluster_sorted, make_nodes
from tpc_reco.hit_pool import HitPool
from tpc_reco.predicates import HitDistance
from tpc_reco.segments import SegmentBook
from tpc_reco.splitting import DuplicatePadRows, DuplicateRowSplitter, duplicate_fraction, split_list


def _adjacent(a, b):
    return abs(a.item - b.item) == 1


def test_cluster_groups_and_min_size():
    nodes = make_nodes([0, 1, 2, 10, 11, 20])
    assert cluster(nodes, _adjacent) == [[0, 1, 2], [10, 11]]
    assert cluster(nodes, _adjacent, min_size=3) == [[0, 1, 2]]


def test_cluster_order_follows_first_link():
    links = {(0, 3), (1, 2)}
    nodes = make_nodes([0, 1, 2, 3])
    groups = cluster(nodes, lambda a, b: (a.item, b.item) in links)
    assert groups == [[0, 3], [1, 2]]


def test_cluster_sorted_only_compares_neighbouring_buckets():
    nodes = [ClusterNode("a", 0), ClusterNode("b", 0), ClusterNode("c", 2)]
    assert cluster_sorted(nodes, lambda a, b: True) == [["a", "b"]]
    nodes = [ClusterNode("a", 0), ClusterNode("b", 1), ClusterNode("c", 2)]
    assert cluster_sorted(nodes, lambda a, b: True) == [["a", "b", "c"]]
    with pytest.raises(ValueError):
        cluster_sorted([ClusterNode("a", 3), ClusterNode("b", 1)], lambda a, b: True)


def test_split_list_keeps_order():
    keep, moved = split_list(range(6), lambda v: v % 2 == 0)
    assert keep == [1, 3, 5]
    assert moved == [0, 2, 4]


def _crossing_tracks():
    # track A on rows 0-5 at y=0, track B on rows 5-8 at y=25; they share row 5
    rows = list(range(6)) + list(range(5, 9))
    y = [0.0] * 6 + [25.0] * 4
    df = pd.DataFrame({
        "hit_id": np.arange(len(rows)),
        "x": [10.0 * r for r in rows],
        "y": y,
        "z": np.zeros(len(rows)),
        "var_rphi": np.full(len(rows), 0.01),
        "var_z": np.full(len(rows), 0.25),
    })
    pool = HitPool(df)
    pool.set_annotations(np.array(rows), np.zeros(len(rows), dtype=int))
    return pool


def test_hits_on_consecutive_rows_form_one_clean_segment():
    df = pd.DataFrame({
        "hit_id": np.arange(12),
        "x": 10.0 * np.arange(12),
        "y": np.zeros(12),
        "z": np.zeros(12),
        "var_rphi": np.full(12, 0.01),
        "var_z": np.full(12, 0.25),
    })
    pool = HitPool(df)
    pool.set_annotations(np.arange(12), np.zeros(12, dtype=int))

    groups = cluster_sorted(make_nodes(list(pool), lambda h: h.zbucket), HitDistance(15.0), min_size=3)
    assert len(groups) == 1
    assert sorted(h.layer for h in groups[0]) == list(range(12))
    assert duplicate_fraction(groups[0]) == 0.0
    assert not DuplicatePadRows(0.01)(groups[0])


def test_duplicate_fraction():
    pool = _crossing_tracks()
    assert duplicate_fraction(list(pool)) == pytest.approx(0.2)
    assert duplicate_fraction([]) == 0.0
    assert DuplicatePadRows(0.01)(list(pool))
    assert not DuplicatePadRows(0.01)(list(pool)[:6])


def test_repair_splits_touching_tracks():
    pool = _crossing_tracks()
    book = SegmentBook(pool)
    seg = book.create(list(pool))

    splitter = DuplicateRowSplitter(DuplicatePadRows(0.01), recluster_distance_cut=20.0,
                                    min_cluster_size=3, rows_for_splitting=10, split_passes=2)
    result = splitter.repair(book, [seg])

    assert seg.id not in book
    assert sorted(len(s) for s in result.clean) == [4, 6]
    assert result.rejected_hits == []
    assert result.passes == 1
    for s in result.clean:
        layers = s.layers
        assert len(layers) == len(set(layers))
        assert all(pool.owner_of(h) == s.id for h in s)


def test_repair_releases_what_stays_contaminated():
    pool = _crossing_tracks()
    book = SegmentBook(pool)
    seg = book.create(list(pool))

    # both tracks stay linked in the first pass; the shifted ranges of the
    # second pass free rows 0-4 of track A, rows 5-8 remain contaminated
    splitter = DuplicateRowSplitter(DuplicatePadRows(0.01), recluster_distance_cut=40.0,
                                    min_cluster_size=3, rows_for_splitting=10, split_passes=2)
    result = splitter.repair(book, [seg])
    assert result.passes == 2
    assert len(result.clean) == 1
    assert result.clean[0].layers == [0, 1, 2, 3, 4]
    assert len(result.rejected_hits) == 5
    assert all(not pool.is_used(h) for h in result.rejected_hits)
    assert len(pool.used_hits()) == 5


def test_range_index_shifts_between_passes():
    splitter = DuplicateRowSplitter(DuplicatePadRows(), rows_for_splitting=10, split_shift=0.5)
    assert [splitter.range_index(row, 0) for row in (0, 9, 10, 25)] == [0, 0, 2, 4]
    assert [splitter.range_index(row, 1) for row in (0, 4, 5, 15)] == [0, 0, 2, 4]
