from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from tpc_reco.clustering import cluster_sorted, make_nodes
from tpc_reco.config import TrackFinderConfig
from tpc_reco.data import merge_collections
from tpc_reco.fitting import FittedTrack, HelixFitter, SegmentFitter, TrajectoryFitter
from tpc_reco.geometry import LayerIndexAnnotator, PadRowLayout, ZBinning
from tpc_reco.hit_pool import Hit, HitPool
from tpc_reco.merging import MergedTrack, SegmentMerger
from tpc_reco.predicates import HitDistance, RadialGate
from tpc_reco.profiling import StageTimer
from tpc_reco.reconcile import LeftoverReconciler, ReconcileReport
from tpc_reco.segments import Segment, SegmentBook
from tpc_reco.splitting import DuplicatePadRows, DuplicateRowSplitter, RepairResult, split_list
from tpc_reco.utils import make_assignments

logger = logging.getLogger(__name__)


class PipelineObserver:
    """Debug/visualisation hooks; every method is a no-op by default."""

    def on_segments(self, stage: str, segments: Sequence[Segment]) -> None:
        pass

    def on_tracks(self, stage: str, tracks: Sequence) -> None:
        pass

    def on_event(self, result: "EventResult") -> None:
        pass


@dataclass(slots=True)
class EventResult:
    r"""
    Everything the finder produced for one event.

    Attributes
    ----------
    event_number : int
        Running event index of the :class:`TrackFinder`.
    clean_segments : list[list[Hit]]
        Hit lists of the clean segments handed to the first fit (after repair).
    segments : list[list[Hit]]
        Hit lists of the final segments (after reconciliation).
    tracks : list[FittedTrack]
        Refitted segment tracks.
    merged_tracks : list[MergedTrack]
        Final tracks after helix-parameter merging.
    used_hits, unused_hits : pandas.DataFrame
        Partition of all input hits by segment membership.
    repair : RepairResult
    reconcile : ReconcileReport
    timings : dict[str, float]
        Wall-clock seconds per stage.
    errors : dict[str, str]
        Input collections that were skipped, with the reason.
    """
    event_number: int
    clean_segments: List[List[Hit]]
    segments: List[List[Hit]]
    tracks: List[FittedTrack]
    merged_tracks: List[MergedTrack]
    used_hits: pd.DataFrame
    unused_hits: pd.DataFrame
    repair: RepairResult = field(default_factory=RepairResult)
    reconcile: ReconcileReport = field(default_factory=ReconcileReport)
    timings: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def n_hits(self) -> int:
        return len(self.used_hits) + len(self.unused_hits)

    def assignments(self) -> pd.DataFrame:
        """``hit_id -> track_id`` table of the merged tracks."""
        hit_ids = np.fromiter((h.hit_id for t in self.merged_tracks for h in t.hits), dtype=np.int64)
        track_ids = np.fromiter((t.track_id for t in self.merged_tracks for _ in t.hits), dtype=np.int64)
        return make_assignments(hit_ids, track_ids)


class TrackFinder:
    r"""
    Nearest-neighbour track finder for one TPC event at a time.

    Stages (timed individually, see :attr:`EventResult.timings`):

    1. ``load``: validate/concatenate collections, write pad rows and z buckets;
    2. ``cluster``: radial gate, then nearest-neighbour clustering of the
       gated hits sorted by z bucket;
    3. ``repair``: split segments with duplicate pad rows;
    4. ``fit``: helix fit of every segment;
    5. ``reconcile``: attach leftover hits, merge colliding segments;
    6. ``refit``: fit the final segments;
    7. ``merge``: join segment tracks by helix parameters.

    Only the counters :attr:`n_events` and :attr:`n_tracks` survive between
    events.

    Parameters
    ----------
    layout : PadRowLayout
    config : TrackFinderConfig, optional
    fitter : TrajectoryFitter, optional
        Defaults to :class:`~tpc_reco.fitting.HelixFitter` on ``layout``.
    observer : PipelineObserver, optional
    """

    def __init__(
        self,
        layout: PadRowLayout,
        config: Optional[TrackFinderConfig] = None,
        fitter: Optional[TrajectoryFitter] = None,
        observer: Optional[PipelineObserver] = None,
    ) -> None:
        cfg = (config if config is not None else TrackFinderConfig()).validate()
        self.config = cfg
        self.layout = layout
        self.fitter = fitter if fitter is not None else HelixFitter(layout, min_hits=cfg.min_fit_hits)
        self.observer = observer if observer is not None else PipelineObserver()

        self.annotator = LayerIndexAnnotator(layout, ZBinning(cfg.n_z_bins, cfg.z_min, cfg.z_max))
        self.gate = RadialGate(cfg.r_cut, cfg.z_gate_margin)
        self.distance = HitDistance(cfg.distance_cut)
        self.detector = DuplicatePadRows(cfg.duplicate_row_fraction)
        self.splitter = DuplicateRowSplitter.from_config(cfg)
        self.segment_fitter = SegmentFitter.from_config(self.fitter, cfg)
        self.reconciler = LeftoverReconciler.from_config(cfg)
        self.merger = SegmentMerger.from_config(cfg)

        self.n_events = 0
        self.n_tracks = 0

    def process_event(self, collections: pd.DataFrame | Mapping[str, pd.DataFrame]) -> EventResult:
        r"""
        Reconstruct one event.

        Parameters
        ----------
        collections : pandas.DataFrame or mapping
            One hit table, or ``collection name -> hit table``. Malformed
            collections are logged, recorded in :attr:`EventResult.errors` and
            skipped.

        Returns
        -------
        EventResult
        """
        cfg = self.config
        timer = StageTimer()
        if isinstance(collections, pd.DataFrame):
            collections = {"hits": collections}

        with timer("load"):
            hits, errors = merge_collections(collections)
            pool = HitPool(hits)
            self.annotator.annotate(pool)
        book = SegmentBook(pool)

        with timer("cluster"):
            working, excluded = self.gate.split(pool)
            working.sort(key=lambda h: h.zbucket)
            nodes = make_nodes(working, lambda h: h.zbucket)
            for group in cluster_sorted(nodes, self.distance, cfg.min_cluster_size):
                book.create(group)
        self.observer.on_segments("clustered", list(book))

        with timer("repair"):
            _, contaminated = split_list(book, self.detector)
            repair = self.splitter.repair(book, contaminated)
        clean_segments = [list(seg.hits) for seg in book]
        self.observer.on_segments("repaired", list(book))

        with timer("fit"):
            tracks = self.segment_fitter.fit_all(book)
        self.observer.on_tracks("fitted", tracks)

        with timer("reconcile"):
            leftovers = pool.unused_hits(working) + excluded
            survivors, report = self.reconciler.reconcile(book, tracks, leftovers)
            kept = {id(t) for t in survivors}
            for t in tracks:
                if id(t) not in kept:
                    self.fitter.release(t)
        segments = list(book)
        self.observer.on_segments("reconciled", segments)

        with timer("refit"):
            final_tracks = self.segment_fitter.fit_all(segments)
            for t in survivors:
                self.fitter.release(t)
        self.observer.on_tracks("refitted", final_tracks)

        with timer("merge"):
            merged = self.merger.merge(final_tracks)
            for t in final_tracks:
                self.fitter.release(t)
        self.observer.on_tracks("merged", merged)

        used, unused = pool.partition()
        result = EventResult(
            event_number=self.n_events,
            clean_segments=clean_segments,
            segments=[list(seg.hits) for seg in segments],
            tracks=final_tracks,
            merged_tracks=merged,
            used_hits=used,
            unused_hits=unused,
            repair=repair,
            reconcile=report,
            timings=dict(timer.timings),
            errors=errors,
        )
        self.n_events += 1
        self.n_tracks += len(merged)

        logger.info(
            "Event %d: %d hits, %d segments (%d repaired, %d hits released), %d tracks, %d used hits (%.1f%%) | %s",
            result.event_number, len(pool), len(segments), len(contaminated), len(repair.rejected_hits),
            len(merged), len(used), 100.0 * pool.get_assignment_ratio(), timer.summary(),
        )
        self.observer.on_event(result)
        return result
