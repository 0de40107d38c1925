import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from tpc_reco.data import merge_collections, validate_hits
from tpc_reco.hit_pool import HitPool
from tpc_reco.segments import SegmentBook


def _pool(n=6):
    df = pd.DataFrame({
        "hit_id": np.arange(100, 100 + n),
        "x": np.arange(n, dtype=float) * 10.0,
        "y": np.zeros(n),
        "z": np.zeros(n),
        "var_rphi": np.full(n, 0.01),
        "var_z": np.full(n, 0.25),
    })
    pool = HitPool(df)
    pool.set_annotations(np.arange(n), np.zeros(n, dtype=int))
    return pool


def test_claim_is_exclusive():
    pool = _pool()
    assert pool.claim(0, 1)
    assert pool.claim(0, 1)
    assert not pool.claim(0, 2)
    assert pool.owner_of(0) == 1

    with pytest.raises(ValueError):
        pool.claim_many([1, 2, 0], 2)
    # all or nothing
    assert not pool.is_used(1) and not pool.is_used(2)
    assert pool.claim_many([1, 2], 2) == 2
    assert pool.get_assignment_ratio() == pytest.approx(0.5)


def test_annotations_are_write_once():
    pool = _pool(3)
    assert pool[2].layer == 2
    with pytest.raises(RuntimeError):
        pool.set_annotations(np.zeros(3), np.zeros(3))


def test_partition_covers_every_hit():
    pool = _pool()
    book = SegmentBook(pool)
    seg = book.create([pool[0], pool[1], pool[2]])
    used, unused = pool.partition()
    assert len(used) + len(unused) == len(pool)
    assert set(used["hit_id"]) == {100, 101, 102}
    assert (used["segment_id"] == seg.id).all()
    assert set(unused["hit_id"]).isdisjoint(used["hit_id"])
    assert {"layer", "zbucket", "chi2_residual"} <= set(unused.columns)


def test_segment_book_merge_and_dissolve():
    pool = _pool()
    book = SegmentBook(pool)
    a = book.create([pool[0], pool[1]])
    b = book.create([pool[2], pool[3]])
    assert not book.add_hit(a, pool[2])
    assert book.add_hit(a, pool[4])

    keep = book.merge(a, b)
    assert keep is a and len(a) == 5
    assert b.id not in book
    assert all(pool.owner_of(h) == a.id for h in a)
    with pytest.raises(ValueError):
        book.merge(a, a)

    released = book.dissolve(a)
    assert len(released) == 5
    assert len(book) == 0
    assert pool.used_hits() == []
    # ids are never reused
    assert book.create([pool[5]]).id == 2


def test_layer_statistics():
    pool = _pool(4)
    pool.claim(1, 0)
    stats = pool.get_layer_statistics()
    assert stats[1]["assigned_hits"] == 1
    assert stats[0]["available_hits"] == 1


def test_validate_hits_derives_variances():
    df = pd.DataFrame({"hit_id": [1, 2], "x": [1.0, 2.0], "y": [0.0, 0.0], "z": [0.0, 1.0],
                       "cov_xx": [0.01, 0.01], "cov_yy": [0.03, 0.03], "cov_zz": [0.5, 0.5]})
    out = validate_hits(df)
    assert np.allclose(out["var_rphi"], 0.04)
    assert np.allclose(out["var_z"], 0.5)

    with pytest.raises(ValueError):
        validate_hits(df.assign(hit_id=[1, 1]))
    with pytest.raises(KeyError):
        validate_hits(df.drop(columns="z"))


def test_merge_collections_skips_bad_ones():
    good = pd.DataFrame({"hit_id": [0, 1], "x": [1.0, 2.0], "y": [0.0, 0.0], "z": [0.0, 0.0]})
    bad = pd.DataFrame({"hit_id": [5], "x": [np.nan], "y": [0.0], "z": [0.0]})
    hits, errors = merge_collections({"tpc": good, "broken": bad, "absent": None})
    assert len(hits) == 2
    assert set(errors) == {"broken", "absent"}
    assert (hits["collection"] == "tpc").all()

    hits, errors = merge_collections({"a": good, "b": good})
    assert hits["hit_id"].is_unique
    assert list(hits["source_hit_id"]) == [0, 1, 0, 1]
