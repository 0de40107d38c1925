from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from tpc_reco.clustering import cluster, make_nodes
from tpc_reco.config import TrackFinderConfig
from tpc_reco.fitting import FittedTrack, HelixParameters
from tpc_reco.hit_pool import Hit
from tpc_reco.predicates import HelixDistance

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergedTrack:
    r"""
    Final track: one or more segment tracks describing the same trajectory.

    Attributes
    ----------
    track_id : int
        Running index within the event.
    params : HelixParameters
        Parameters of the member with the lowest :math:`\chi^2/n_{df}`.
    chi2, ndf
        Fit quality of that member.
    hits : tuple[Hit, ...]
        Union of the members' hits.
    segment_ids : tuple[int, ...]
    """
    track_id: int
    params: HelixParameters
    chi2: float
    ndf: int
    hits: Tuple[Hit, ...]
    segment_ids: Tuple[int, ...]

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def n_segments(self) -> int:
        return len(self.segment_ids)


class SegmentMerger:
    r"""
    Join segment tracks whose helix parameters agree (see
    :class:`~tpc_reco.predicates.HelixDistance`).

    All tracks share one bucket; groups of two or more become one
    :class:`MergedTrack`, every other track passes through on its own.
    """

    def __init__(self, distance: HelixDistance | None = None, enabled: bool = True) -> None:
        self.distance = distance if distance is not None else HelixDistance()
        self.enabled = bool(enabled)

    @classmethod
    def from_config(cls, cfg: TrackFinderConfig) -> "SegmentMerger":
        return cls(
            HelixDistance(cfg.helix_radius_tolerance, cfg.helix_tanl_tolerance, cfg.helix_distance_tolerance),
            enabled=cfg.merge_segments,
        )

    def merge(self, tracks: Sequence[FittedTrack]) -> List[MergedTrack]:
        groups: List[List[FittedTrack]] = []
        if self.enabled and len(tracks) > 1:
            groups = cluster(make_nodes(tracks), self.distance, 2)
        grouped = {id(t) for g in groups for t in g}
        singles = [[t] for t in tracks if id(t) not in grouped]

        out: List[MergedTrack] = []
        for members in groups + singles:
            best = _best_member(members)
            hits = tuple(h for t in members for h in t.hits)
            out.append(MergedTrack(track_id=len(out), params=best.params, chi2=best.chi2, ndf=best.ndf,
                                   hits=hits, segment_ids=tuple(t.segment_id for t in members)))
        if groups:
            logger.debug("Merged %d segment tracks into %d tracks",
                         sum(len(g) for g in groups), len(groups))
        return out


def _best_member(members: Sequence[FittedTrack]) -> FittedTrack:
    best = min(members, key=lambda t: t.chi2_ndf)
    if not math.isfinite(best.chi2_ndf):
        if len(members) > 1:
            logger.error("No member of segments %s has a valid ndf; using the first",
                         [t.segment_id for t in members])
        return members[0]
    return best
