import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pstats

import numpy as np
import pandas as pd
import pytest

from tpc_reco.metrics import find_impure_tracks, find_split_tracks, hit_efficiency, track_purity
from tpc_reco.profiling import StageTimer, _resolve_sort_key, prof
from tpc_reco.utils import drop_hits, make_assignments


def _truth():
    # particle 1: hits 0-9, particle 2: hits 10-19, noise: hits 20-21
    return pd.DataFrame({"hit_id": np.arange(22), "particle_id": [1] * 10 + [2] * 10 + [0, 0]})


def test_track_purity_and_impure_tracks():
    # track 0 = particle 1 + one hit of particle 2; track 1 = rest of particle 2
    hit_ids = np.arange(20)
    track_ids = np.array([0] * 11 + [1] * 9)
    a = make_assignments(hit_ids, track_ids)
    pur = track_purity(a, _truth())
    assert list(pur["track_id"]) == [0, 1]
    assert pur.loc[0, "major_particle"] == 1
    assert pur.loc[0, "purity"] == pytest.approx(10 / 11)
    assert pur.loc[1, "purity"] == 1.0
    assert find_impure_tracks(a, _truth()) == [0]


def test_split_particles():
    # particle 1 spread over two tracks 6 + 4, particle 2 on one track
    a = make_assignments(np.arange(20), np.array([0] * 6 + [1] * 4 + [2] * 10))
    assert find_split_tracks(a, _truth()) == {1: [0, 1]}
    # a one-hit stray piece still counts as a split
    a = make_assignments(np.arange(20), np.array([0] * 9 + [3] + [2] * 10))
    assert find_split_tracks(a, _truth()) == {1: [0, 3]}


def test_hit_efficiency_ignores_noise():
    a = make_assignments(np.arange(15), np.zeros(15, dtype=int))
    assert hit_efficiency(a, _truth()) == pytest.approx(0.75)


def test_make_assignments_renumbering():
    a = make_assignments(np.arange(6), np.array([7, 7, 3, 3, 9, 9]), renumber=True,
                         rng=np.random.default_rng(0))
    assert sorted(a["track_id"].unique()) == [1, 2, 3]
    assert a["track_id"][0] == a["track_id"][1]
    with pytest.raises(ValueError):
        make_assignments(np.arange(3), np.arange(2))


def test_drop_hits():
    hits = pd.DataFrame({"hit_id": np.arange(1000)})
    kept = drop_hits(hits, 0.25, rng=np.random.default_rng(1))
    assert 650 < len(kept) < 850
    assert kept["hit_id"].is_monotonic_increasing
    assert len(drop_hits(hits, 0.0)) == 1000
    with pytest.raises(ValueError):
        drop_hits(hits, 1.5)


def test_stage_timer_and_prof(tmp_path):
    timer = StageTimer()
    with timer("fit"):
        sum(range(1000))
    with timer("fit"):
        pass
    assert list(timer.timings) == ["fit"]
    assert timer.total >= 0.0
    assert timer.summary().startswith("total=")

    out = tmp_path / "prof.txt"
    with prof(True, out_path=str(out)):
        sum(range(1000))
    assert out.read_text().startswith("[prof]")
    with prof(False) as pr:
        assert pr is None


def test_profile_sort_aliases(tmp_path):
    assert _resolve_sort_key("file") is pstats.SortKey.FILENAME
    assert _resolve_sort_key("CUMTIME") is pstats.SortKey.CUMULATIVE
    assert _resolve_sort_key("bogus") is pstats.SortKey.TIME
    out = tmp_path / "prof.txt"
    with prof(True, sort="file", out_path=str(out)):
        sum(range(100))
    assert out.read_text().startswith("[prof]")
