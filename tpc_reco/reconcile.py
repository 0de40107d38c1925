from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from tpc_reco.config import AssignmentStrategy, TrackFinderConfig
from tpc_reco.fitting import FittedTrack, describe_track
from tpc_reco.hit_pool import Hit, HitPool
from tpc_reco.predicates import hit_chi2
from tpc_reco.segments import Segment, SegmentBook

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Anomaly:
    """A state the reconciler refuses to act on (recorded, never fatal)."""
    kind: str
    segment_id: int
    hit_id: int
    layer: int
    chi2: float


@dataclass(slots=True)
class ReconcileReport:
    r"""
    Counters of one reconciliation run.

    Attributes
    ----------
    assigned : int
        Leftover hits claimed by a segment.
    merged : int
        Segment pairs merged after a collision.
    ambiguous : int
        Collisions with another segment that were left unresolved.
    rejected : int
        Best matches that failed the :math:`\chi^2` (or distance) cut.
    anomalies : list[Anomaly]
    dropped_segments : list[int]
        Ids of segments absorbed by a merge.
    """
    assigned: int = 0
    merged: int = 0
    ambiguous: int = 0
    rejected: int = 0
    anomalies: List[Anomaly] = field(default_factory=list)
    dropped_segments: List[int] = field(default_factory=list)


def describe_hit(hit: Hit) -> str:
    """One-line debug description of a hit: position, errors and residual."""
    return (f"hit {hit.hit_id} layer={hit.layer} xyz=({hit.x:.1f}, {hit.y:.1f}, {hit.z:.1f}) "
            f"sigma_rphi={math.sqrt(hit.var_rphi):.3f} sigma_z={math.sqrt(hit.var_z):.3f} "
            f"chi2={hit.chi2_residual:.2f}")


class LeftoverReconciler:
    r"""
    Attach hits that are in no segment to the fitted segment tracks.

    The pool of candidates holds the given leftover hits, bucketed by pad row.
    With ``include_segment_endpoints`` the first and last hit of every live
    segment join the pool, so that a track reaching into another segment is
    noticed.

    ``BEST_HIT``
        Tracks are visited longest first. For every crossing point in a pad
        row the track's segment has no hit in, the pool hit of that row with
        the smallest :math:`\chi^2` (see :func:`tpc_reco.predicates.hit_chi2`)
        is taken. Below the track's cut it is

        * claimed, if unowned;
        * an anomaly, if owned by the track's own segment;
        * a collision, if owned by another segment: the fraction of that
          segment's hits with :math:`\chi^2 <` ``compat_chi2_max`` against the
          track's crossing points decides. Above ``merge_good_fraction`` the
          smaller segment is merged into the larger and the track of the
          absorbed segment is dropped. The surviving track loses its crossing
          points in the absorbed rows; if it is the visiting track its search
          goes on, otherwise the search moves to the next track. Otherwise
          nothing changes.

    ``BEST_TRACK``
        For every unowned leftover hit the track with the smallest
        :math:`\chi^2` in the hit's row is chosen; the hit is claimed if it lies
        within ``best_track_max_distance`` of the crossing point and the segment
        has no hit in that row yet.

    The :math:`\chi^2` cut of a track with curvature :math:`\omega` is
    ``leftover_chi2_cut`` if given, otherwise

    .. math::

        \chi^2_{cut} = \min\Bigl(c_{max},\; c_0\bigl[1 + \ln\max(\omega_p/|\omega|, 1)\bigr]\Bigr),

    so straighter tracks get a looser cut and :math:`\omega = 0` gets
    :math:`c_{max}`.
    """

    def __init__(
        self,
        strategy: AssignmentStrategy = AssignmentStrategy.BEST_HIT,
        *,
        include_segment_endpoints: bool = True,
        chi2_cut: Optional[float] = None,
        chi2_cut_base: float = 20.0,
        chi2_cut_max: float = 200.0,
        omega_pivot: float = 1.0 / 300.0,
        compat_chi2_max: float = 10.0,
        merge_good_fraction: float = 0.5,
        best_track_max_distance: float = 3.0,
    ) -> None:
        self.strategy = strategy
        self.include_segment_endpoints = bool(include_segment_endpoints)
        self.fixed_chi2_cut = chi2_cut
        self.chi2_cut_base = float(chi2_cut_base)
        self.chi2_cut_max = float(chi2_cut_max)
        self.omega_pivot = float(omega_pivot)
        self.compat_chi2_max = float(compat_chi2_max)
        self.merge_good_fraction = float(merge_good_fraction)
        self.best_track_max_distance = float(best_track_max_distance)

    @classmethod
    def from_config(cls, cfg: TrackFinderConfig) -> "LeftoverReconciler":
        return cls(
            cfg.strategy,
            include_segment_endpoints=cfg.include_segment_endpoints,
            chi2_cut=cfg.leftover_chi2_cut,
            chi2_cut_base=cfg.chi2_cut_base,
            chi2_cut_max=cfg.chi2_cut_max,
            omega_pivot=cfg.omega_pivot,
            compat_chi2_max=cfg.compat_chi2_max,
            merge_good_fraction=cfg.merge_good_fraction,
            best_track_max_distance=cfg.best_track_max_distance,
        )

    def chi2_cut(self, omega: float) -> float:
        if self.fixed_chi2_cut is not None:
            return float(self.fixed_chi2_cut)
        a = abs(omega)
        if a == 0.0:
            return self.chi2_cut_max
        cut = self.chi2_cut_base * (1.0 + math.log(max(self.omega_pivot / a, 1.0)))
        return min(self.chi2_cut_max, cut)

    def reconcile(
        self,
        book: SegmentBook,
        tracks: Sequence[FittedTrack],
        leftovers: Sequence[Hit],
    ) -> Tuple[List[FittedTrack], ReconcileReport]:
        r"""
        Run the configured strategy.

        Parameters
        ----------
        book : SegmentBook
            Live segments; all membership changes go through it.
        tracks : sequence of FittedTrack
            Tracks of the live segments.
        leftovers : sequence of Hit
            Hits offered for assignment (normally unowned working hits plus
            gate-excluded hits).

        Returns
        -------
        tracks : list[FittedTrack]
            Surviving tracks, in input order.
        report : ReconcileReport
        """
        report = ReconcileReport()
        if not tracks:
            return list(tracks), report
        if self.strategy is AssignmentStrategy.BEST_TRACK:
            self._best_track(book, tracks, leftovers, report)
            survivors = list(tracks)
        else:
            dropped = self._best_hit(book, tracks, leftovers, report)
            survivors = [t for t in tracks if id(t) not in dropped]
        logger.debug("Reconciled leftovers: assigned=%d merged=%d ambiguous=%d rejected=%d anomalies=%d",
                     report.assigned, report.merged, report.ambiguous, report.rejected, len(report.anomalies))
        return survivors, report

    # ------------------------------------------------------------------ best hit

    def _best_hit(self, book: SegmentBook, tracks: Sequence[FittedTrack],
                  leftovers: Sequence[Hit], report: ReconcileReport) -> Set[int]:
        pool = book.pool
        by_layer = HitPool.hits_by_layer(leftovers)
        if self.include_segment_endpoints:
            for seg in book:
                for h in seg.endpoints:
                    bucket = by_layer.setdefault(h.layer, [])
                    if h not in bucket:
                        bucket.append(h)

        track_of: Dict[int, FittedTrack] = {t.segment_id: t for t in tracks}
        covered: Dict[int, Set[int]] = {}
        dropped: Set[int] = set()

        def layers_of(seg: Segment) -> Set[int]:
            if seg.id not in covered:
                covered[seg.id] = {h.layer for h in seg.hits}
            return covered[seg.id]

        for track in sorted(tracks, key=lambda t: t.n_hits, reverse=True):
            if id(track) in dropped or track.segment_id not in book:
                continue
            cut = self.chi2_cut(track.params.omega)
            logger.debug("Searching leftover hits for %s (chi2 cut %.1f)", describe_track(track), cut)

            for layer in range(len(track.crossing_points)):
                xp = track.crossing_points[layer]
                if xp is None:
                    continue
                seg = book.get(track.segment_id)
                if layer in layers_of(seg):
                    continue
                candidates = by_layer.get(layer)
                if not candidates:
                    continue

                best, chi2_min = _best_candidate(candidates, xp)
                if not chi2_min < cut:
                    report.rejected += 1
                    continue

                owner = pool.owner_of(best)
                if owner is None:
                    best.chi2_residual = chi2_min
                    book.add_hit(seg, best)
                    candidates.remove(best)
                    layers_of(seg).add(layer)
                    report.assigned += 1
                    logger.debug("Assigned %s to segment %d", describe_hit(best), seg.id)
                elif owner == seg.id:
                    report.anomalies.append(Anomaly("self_match", seg.id, best.hit_id, layer, chi2_min))
                    logger.error("Best matching hit for segment %d in layer %d belongs to the segment itself (chi2 %.2f): %s",
                                 seg.id, layer, chi2_min, describe_hit(best))
                else:
                    other = book.get(owner)
                    frac = self._compatible_fraction(track, other)
                    if frac > self.merge_good_fraction:
                        if not self._merge(book, track, seg, other, by_layer, track_of, covered, dropped, report):
                            break
                    else:
                        report.ambiguous += 1
                        logger.debug("Segment %d collides with segment %d (compatible fraction %.2f); left as is",
                                     seg.id, other.id, frac)
        return dropped

    def _compatible_fraction(self, track: FittedTrack, other: Segment) -> float:
        if not other.hits:
            return 0.0
        good = 0
        for h in other.hits:
            xp = track.crossing_point(h.layer)
            if xp is not None and hit_chi2(h, xp) < self.compat_chi2_max:
                good += 1
        return good / len(other.hits)

    def _merge(self, book: SegmentBook, track: FittedTrack, seg: Segment, other: Segment,
               by_layer: Dict[int, List[Hit]], track_of: Dict[int, FittedTrack],
               covered: Dict[int, Set[int]], dropped: Set[int], report: ReconcileReport) -> bool:
        """Merge ``seg`` and ``other``; returns whether ``track`` is still live."""
        other_track = track_of.pop(other.id, None)
        track_of.pop(seg.id, None)
        if len(other) > len(seg):
            survivor, absorbed = other, seg
            keeper, loser = (other_track, track) if other_track is not None else (track, None)
        else:
            survivor, absorbed = seg, other
            keeper, loser = track, other_track

        absorbed_layers = {h.layer for h in absorbed.hits}
        for h in absorbed.endpoints:
            bucket = by_layer.get(h.layer)
            if bucket and h in bucket:
                bucket.remove(h)
        layers = covered.pop(seg.id, {h.layer for h in seg.hits}) | covered.pop(other.id, {h.layer for h in other.hits})

        book.merge(survivor, absorbed)
        keeper.segment_id = survivor.id
        keeper.invalidate_layers(absorbed_layers)
        track_of[survivor.id] = keeper
        covered[survivor.id] = layers

        if loser is not None and loser is not keeper:
            dropped.add(id(loser))
        report.merged += 1
        report.dropped_segments.append(absorbed.id)
        logger.debug("Merged segment %d into %d after collision (%d hits)", absorbed.id, survivor.id, len(survivor))
        return keeper is track

    # ------------------------------------------------------------------ best track

    def _best_track(self, book: SegmentBook, tracks: Sequence[FittedTrack],
                    leftovers: Sequence[Hit], report: ReconcileReport) -> None:
        pool = book.pool
        covered: Dict[int, Set[int]] = {}
        for hit in leftovers:
            if pool.is_used(hit):
                continue
            best: Optional[FittedTrack] = None
            best_xp: Optional[np.ndarray] = None
            chi2_min = math.inf
            for trk in tracks:
                xp = trk.crossing_point(hit.layer)
                if xp is None:
                    continue
                c = hit_chi2(hit, xp)
                if c < chi2_min:
                    best, best_xp, chi2_min = trk, xp, c
            if best is None:
                continue
            seg = book.get(best.segment_id)
            if seg.id not in covered:
                covered[seg.id] = {h.layer for h in seg.hits}
            dist = float(np.linalg.norm(hit.position - best_xp))
            if dist < self.best_track_max_distance and hit.layer not in covered[seg.id]:
                hit.chi2_residual = chi2_min
                book.add_hit(seg, hit)
                covered[seg.id].add(hit.layer)
                report.assigned += 1
                logger.debug("Assigned %s to segment %d (distance %.2f)", describe_hit(hit), seg.id, dist)
            else:
                report.rejected += 1


def _best_candidate(candidates: Sequence[Hit], xp: np.ndarray) -> Tuple[Hit, float]:
    best = candidates[0]
    chi2_min = hit_chi2(best, xp)
    for h in candidates[1:]:
        c = hit_chi2(h, xp)
        if c < chi2_min:
            best, chi2_min = h, c
    return best, chi2_min
