__all__ = [
    "TrackFinderConfig", "FitOrder", "AssignmentStrategy", "load_config",
    "validate_hits", "merge_collections", "read_event_csv",
    "Hit", "HitPool", "Segment", "SegmentBook",
    "wrap_phi", "chi2_rphi_z", "hit_chi2", "HitDistance", "HelixDistance", "RadialGate",
    "PadRowLayout", "UniformPadRowLayout", "ZBinning", "LayerIndexAnnotator",
    "ClusterNode", "cluster", "cluster_sorted", "make_nodes",
    "duplicate_fraction", "DuplicatePadRows", "split_list", "DuplicateRowSplitter", "RepairResult",
    "FitError", "HelixParameters", "FitResult", "FittedTrack", "TrajectoryFitter",
    "HelixFitter", "SegmentFitter", "describe_track",
    "LeftoverReconciler", "ReconcileReport", "Anomaly", "describe_hit",
    "SegmentMerger", "MergedTrack",
    "TrackFinder", "EventResult", "PipelineObserver",
    "make_assignments", "make_helix_hits", "make_toy_event", "drop_hits", "shuffle_hits",
    "track_purity", "find_impure_tracks", "find_split_tracks", "duplicate_row_tracks", "summarize_event",
    "prof", "StageTimer",
]

# Configuration & input
from .config import TrackFinderConfig, FitOrder, AssignmentStrategy, load_config
from .data import validate_hits, merge_collections, read_event_csv

# Hits & segments
from .hit_pool import Hit, HitPool
from .segments import Segment, SegmentBook

# Geometry & predicates
from .predicates import wrap_phi, chi2_rphi_z, hit_chi2, HitDistance, HelixDistance, RadialGate
from .geometry import PadRowLayout, UniformPadRowLayout, ZBinning, LayerIndexAnnotator

# Reconstruction stages
from .clustering import ClusterNode, cluster, cluster_sorted, make_nodes
from .splitting import duplicate_fraction, DuplicatePadRows, split_list, DuplicateRowSplitter, RepairResult
from .fitting import (
    FitError,
    HelixParameters,
    FitResult,
    FittedTrack,
    TrajectoryFitter,
    HelixFitter,
    SegmentFitter,
    describe_track,
)
from .reconcile import LeftoverReconciler, ReconcileReport, Anomaly, describe_hit
from .merging import SegmentMerger, MergedTrack
from .pipeline import TrackFinder, EventResult, PipelineObserver

# Utilities & checks (plotting is imported on demand: tpc_reco.plotting)
from .utils import make_assignments, make_helix_hits, make_toy_event, drop_hits, shuffle_hits
from .metrics import track_purity, find_impure_tracks, find_split_tracks, duplicate_row_tracks, summarize_event
from .profiling import prof, StageTimer
