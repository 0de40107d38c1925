import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging

import numpy as np

from tpc_reco.config import TrackFinderConfig
from tpc_reco.fitting import FittedTrack, HelixParameters
from tpc_reco.hit_pool import Hit
from tpc_reco.merging import SegmentMerger


def _hits(start, n):
    return tuple(Hit(index=i, hit_id=i, position=np.zeros(3), var_rphi=0.01, var_z=0.25, layer=i)
                 for i in range(start, start + n))


def _track(segment_id, omega, tanl, chi2=5.0, ndf=5, hits=()):
    params = HelixParameters(omega=omega, phi0=0.0, d0=0.0, z0=0.0, tan_lambda=tanl)
    return FittedTrack(segment_id=segment_id, params=params, chi2=chi2, ndf=ndf, hits=hits)


def test_compatible_tracks_are_merged():
    t0 = _track(0, 1 / 500.0, 0.5, chi2=10.0, hits=_hits(0, 4))
    t1 = _track(1, 1 / 505.0, 0.51, chi2=5.0, hits=_hits(4, 3))
    t2 = _track(2, -1 / 800.0, 0.5, hits=_hits(7, 5))

    merged = SegmentMerger().merge([t0, t1, t2])

    assert [m.track_id for m in merged] == [0, 1]
    assert merged[0].segment_ids == (0, 1)
    assert merged[0].n_segments == 2
    assert merged[0].n_hits == 7
    # parameters of the better fit
    assert merged[0].params is t1.params
    assert merged[0].chi2 == 5.0
    assert merged[1].segment_ids == (2,)
    assert merged[1].n_hits == 5


def test_merger_can_be_disabled():
    cfg = TrackFinderConfig(merge_segments=False)
    tracks = [_track(0, 1 / 500.0, 0.5), _track(1, 1 / 505.0, 0.51)]
    merged = SegmentMerger.from_config(cfg).merge(tracks)
    assert [m.segment_ids for m in merged] == [(0,), (1,)]


def test_group_without_valid_ndf_uses_first_member(caplog):
    tracks = [_track(3, 1 / 500.0, 0.5, ndf=0), _track(4, 1 / 505.0, 0.5, ndf=-1)]
    with caplog.at_level(logging.ERROR):
        merged = SegmentMerger().merge(tracks)
    assert len(merged) == 1
    assert merged[0].params is tracks[0].params
    assert "valid ndf" in caplog.text


def test_empty_input():
    assert SegmentMerger().merge([]) == []
