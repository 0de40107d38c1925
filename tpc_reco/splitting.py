from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Sequence, Tuple, TypeVar

from networkx.utils import UnionFind

from tpc_reco.clustering import ClusterNode, cluster
from tpc_reco.config import TrackFinderConfig
from tpc_reco.hit_pool import Hit
from tpc_reco.predicates import HitDistance
from tpc_reco.segments import Segment, SegmentBook

logger = logging.getLogger(__name__)

T = TypeVar("T")


def duplicate_fraction(hits: Sequence[Hit]) -> float:
    r"""
    Fraction of hits that share their pad row with another hit of the same list.

    .. math::

        f_{dup} = \frac{1}{N} \sum_{\ell:\ n_\ell > 1} n_\ell

    Returns ``0.0`` for an empty list.
    """
    if not hits:
        return 0.0
    counts = Counter(h.layer for h in hits)
    return sum(c for c in counts.values() if c > 1) / len(hits)


class DuplicatePadRows:
    """Predicate: ``True`` if a hit collection is contaminated by duplicate pad rows."""

    __slots__ = ("fraction",)

    def __init__(self, fraction: float = 0.01) -> None:
        self.fraction = float(fraction)

    def __call__(self, hits: Segment | Sequence[Hit]) -> bool:
        if isinstance(hits, Segment):
            hits = hits.hits
        return duplicate_fraction(hits) > self.fraction


def split_list(items: Iterable[T], predicate: Callable[[T], bool]) -> Tuple[List[T], List[T]]:
    """Split ``items`` into ``(predicate false, predicate true)`` keeping order."""
    keep: List[T] = []
    moved: List[T] = []
    for it in items:
        (moved if predicate(it) else keep).append(it)
    return keep, moved


@dataclass(slots=True)
class RepairResult:
    """Outcome of :meth:`DuplicateRowSplitter.repair`."""
    clean: List[Segment] = field(default_factory=list)
    rejected_hits: List[Hit] = field(default_factory=list)
    passes: int = 0


class DuplicateRowSplitter:
    r"""
    Repair segments that picked up hits of a second trajectory.

    Contaminated segments are dissolved and their hits are reclustered inside
    pad-row ranges, so that two tracks touching in one place fall apart into
    clean pieces. Pass :math:`k` tags every hit with the range id

    .. math::

        b_k(\ell) = 2 \left\lfloor \frac{\ell}{w} + o_k \right\rfloor, \qquad
        o_k = (k \cdot s) \bmod 1,

    (width :math:`w`, shift :math:`s`); the factor two keeps hits of
    neighbouring ranges from ever being linked. Clean groups are kept,
    contaminated groups go to the next pass with shifted boundaries, and
    whatever is still contaminated after the last pass is released.

    When ``rejoin`` is set, clean pieces that touch across a range boundary
    (same hit distance, z buckets) are merged again if the union stays clean.

    Parameters
    ----------
    detector : DuplicatePadRows
        Contamination test.
    recluster_distance_cut : float
        Hit distance of the range reclustering.
    min_cluster_size : int
        Smaller pieces are released.
    rows_for_splitting : int
        Range width :math:`w` in pad rows.
    split_passes : int
        Number of passes.
    split_shift : float
        Range shift :math:`s` between passes.
    rejoin : bool
        Merge touching clean pieces afterwards.
    """

    def __init__(
        self,
        detector: DuplicatePadRows,
        recluster_distance_cut: float = 20.0,
        min_cluster_size: int = 3,
        rows_for_splitting: int = 10,
        split_passes: int = 2,
        split_shift: float = 0.5,
        rejoin: bool = True,
    ) -> None:
        self.detector = detector
        self.distance = HitDistance(recluster_distance_cut)
        self.min_cluster_size = int(min_cluster_size)
        self.rows_for_splitting = int(rows_for_splitting)
        self.split_passes = int(split_passes)
        self.split_shift = float(split_shift)
        self.rejoin = bool(rejoin)

    @classmethod
    def from_config(cls, cfg: TrackFinderConfig) -> "DuplicateRowSplitter":
        return cls(
            DuplicatePadRows(cfg.duplicate_row_fraction),
            recluster_distance_cut=cfg.recluster_distance_cut,
            min_cluster_size=cfg.min_cluster_size,
            rows_for_splitting=cfg.rows_for_splitting,
            split_passes=cfg.split_passes,
            split_shift=cfg.split_shift,
            rejoin=cfg.rejoin_split_segments,
        )

    def range_index(self, layer: int, k: int) -> int:
        offset = math.fmod(k * self.split_shift, 1.0)
        return 2 * math.floor(layer / self.rows_for_splitting + offset)

    def repair(self, book: SegmentBook, contaminated: Sequence[Segment]) -> RepairResult:
        r"""
        Dissolve ``contaminated`` segments and rebuild clean ones from their hits.

        Returns
        -------
        RepairResult
            New clean segments (registered in ``book``), the hits that could
            not be placed in a clean segment (left unowned), and the number of
            passes run.
        """
        result = RepairResult()
        if not contaminated:
            return result

        all_hits: List[Hit] = []
        for seg in contaminated:
            all_hits.extend(book.dissolve(seg))

        pending = all_hits
        pieces: List[List[Hit]] = []
        for k in range(self.split_passes):
            if not pending:
                break
            result.passes += 1
            nodes = [ClusterNode(h, self.range_index(h.layer, k)) for h in pending]
            groups = cluster(nodes, self.distance, self.min_cluster_size)
            good, bad = split_list(groups, self.detector)
            pieces.extend(good)
            pending = [h for g in bad for h in g]
            logger.debug("Repair pass %d: %d clean pieces, %d contaminated groups", k, len(good), len(bad))

        if self.rejoin and len(pieces) > 1:
            pieces = self._rejoin(pieces)

        placed = set()
        for piece in pieces:
            result.clean.append(book.create(piece))
            placed.update(h.index for h in piece)

        result.rejected_hits = [h for h in all_hits if h.index not in placed]
        if result.rejected_hits:
            logger.debug("Released %d hits from %d contaminated segments",
                         len(result.rejected_hits), len(contaminated))
        return result

    def _rejoin(self, pieces: List[List[Hit]]) -> List[List[Hit]]:
        piece_of = {h.index: p for p, piece in enumerate(pieces) for h in piece}
        nodes = [ClusterNode(h, h.zbucket) for piece in pieces for h in piece]
        groups = cluster(nodes, self.distance, 1)

        uf = UnionFind(range(len(pieces)))
        for g in groups:
            members = {piece_of[h.index] for h in g}
            if len(members) > 1:
                uf.union(*members)

        out: List[List[Hit]] = []
        for piece_set in sorted((sorted(s) for s in uf.to_sets()), key=lambda s: s[0]):
            if len(piece_set) == 1:
                out.append(pieces[piece_set[0]])
                continue
            union = [h for p in piece_set for h in pieces[p]]
            if self.detector(union):
                out.extend(pieces[p] for p in piece_set)
            else:
                logger.debug("Rejoined %d split pieces (%d hits)", len(piece_set), len(union))
                out.append(union)
        return out
