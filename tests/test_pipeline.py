import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd

from tpc_reco.config import TrackFinderConfig
from tpc_reco.fitting import HelixFitter, HelixParameters
from tpc_reco.geometry import UniformPadRowLayout
from tpc_reco.metrics import summarize_event
from tpc_reco.pipeline import PipelineObserver, TrackFinder
from tpc_reco.splitting import DuplicatePadRows
from tpc_reco.utils import make_helix_hits, make_toy_event, shuffle_hits

LAYOUT = UniformPadRowLayout()


def _single_track_event(seed=5):
    params = HelixParameters(omega=1.0 / 1000.0, phi0=1.2, d0=0.0, z0=0.0, tan_lambda=0.5)
    rng = np.random.default_rng(seed)
    hits = make_helix_hits(params, LAYOUT, rng=rng).drop(columns="layer")
    hits = shuffle_hits(hits, rng=rng)
    hits.insert(0, "hit_id", np.arange(len(hits)))
    return hits.assign(particle_id=1)


class _Recorder(PipelineObserver):
    def __init__(self):
        self.segment_stages = []
        self.track_stages = []
        self.events = []

    def on_segments(self, stage, segments):
        self.segment_stages.append(stage)

    def on_tracks(self, stage, tracks):
        self.track_stages.append(stage)

    def on_event(self, result):
        self.events.append(result.event_number)


def test_single_helix_gives_one_track():
    hits = _single_track_event()
    finder = TrackFinder(LAYOUT)
    result = finder.process_event(hits)

    assert len(result.merged_tracks) == 1
    track = result.merged_tracks[0]
    assert track.n_hits == LAYOUT.n_rows
    assert abs(track.params.radius - 1000.0) < 10.0
    assert len(result.used_hits) == len(hits)
    assert result.unused_hits.empty
    assert result.repair.clean == []

    truth = hits[["hit_id", "particle_id"]]
    summary = summarize_event(result.assignments(), truth, result.merged_tracks)
    assert summary["hit_efficiency"] == 1.0
    assert summary["mean_purity"] == 1.0
    assert summary["n_duplicate_row_tracks"] == 0


def test_partition_and_ownership_on_a_busy_event():
    hits, _ = make_toy_event(LAYOUT, 6, noise_hits=30, rng=np.random.default_rng(11))
    finder = TrackFinder(LAYOUT)
    result = finder.process_event({"tpc": hits})

    assert result.n_hits == len(hits)
    used, unused = set(result.used_hits["hit_id"]), set(result.unused_hits["hit_id"])
    assert used.isdisjoint(unused)
    assert used | unused == set(hits["hit_id"])

    segment_hits = [h.hit_id for seg in result.segments for h in seg]
    assert len(segment_hits) == len(set(segment_hits))
    assert set(segment_hits) == used

    detector = DuplicatePadRows(TrackFinderConfig().duplicate_row_fraction)
    assert not any(detector(seg) for seg in result.clean_segments)

    # reconciliation only grows segments or absorbs whole ones
    final = [{h.hit_id for h in seg} for seg in result.segments]
    for seg in result.clean_segments:
        ids = {h.hit_id for h in seg}
        assert sum(ids <= f for f in final) == 1

    track_hits = [h.hit_id for t in result.merged_tracks for h in t.hits]
    assert len(track_hits) == len(set(track_hits))
    assert set(result.timings) == {"load", "cluster", "repair", "fit", "reconcile", "refit", "merge"}


def test_observer_sees_every_stage():
    rec = _Recorder()
    finder = TrackFinder(LAYOUT, observer=rec)
    finder.process_event(_single_track_event())
    finder.process_event(_single_track_event(seed=6))

    assert rec.segment_stages == ["clustered", "repaired", "reconciled"] * 2
    assert rec.track_stages == ["fitted", "refitted", "merged"] * 2
    assert rec.events == [0, 1]
    assert finder.n_events == 2
    assert finder.n_tracks == 2



class _ReleaseCounter(HelixFitter):
    def __init__(self, layout):
        super().__init__(layout)
        self.released = []

    def release(self, track):
        self.released.append(id(track))


class _TrackCollector(PipelineObserver):
    def __init__(self):
        self.fitted = []

    def on_tracks(self, stage, tracks):
        if stage in ("fitted", "refitted"):
            self.fitted.extend(id(t) for t in tracks)


def test_every_fitted_track_is_released_once():
    hits, _ = make_toy_event(LAYOUT, 4, noise_hits=10, rng=np.random.default_rng(3))
    fitter, obs = _ReleaseCounter(LAYOUT), _TrackCollector()
    result = TrackFinder(LAYOUT, fitter=fitter, observer=obs).process_event(hits)

    assert result.tracks
    assert sorted(fitter.released) == sorted(obs.fitted)

def test_bad_collections_are_skipped():
    good = _single_track_event()
    bad = good.drop(columns="x")
    finder = TrackFinder(LAYOUT)
    result = finder.process_event({"tpc": good, "broken": bad, "missing": None})
    assert set(result.errors) == {"broken", "missing"}
    assert len(result.merged_tracks) == 1

    empty = finder.process_event({"missing": None})
    assert empty.merged_tracks == []
    assert empty.n_hits == 0
    assert finder.n_events == 2


def test_gated_hits_are_only_leftovers():
    hits = _single_track_event()
    # everything inside the chamber is gated off: no segment can form
    cfg = TrackFinderConfig(r_cut=5000.0)
    result = TrackFinder(LAYOUT, cfg).process_event(hits)
    assert result.segments == []
    assert len(result.unused_hits) == len(hits)


def test_best_track_strategy_runs_end_to_end():
    hits, _ = make_toy_event(LAYOUT, 3, rng=np.random.default_rng(2))
    cfg = TrackFinderConfig(assignment_strategy="best_track", fit_order="incoming")
    result = TrackFinder(LAYOUT, cfg).process_event(hits)
    assert isinstance(result.assignments(), pd.DataFrame)
    assert result.n_hits == len(hits)
