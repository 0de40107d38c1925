from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from tpc_reco.hit_pool import Hit, HitPool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Segment:
    """A track segment: an id and its hits in insertion order."""
    id: int
    hits: List[Hit] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[Hit]:
        return iter(self.hits)

    @property
    def layers(self) -> List[int]:
        return [h.layer for h in self.hits]

    @property
    def endpoints(self) -> List[Hit]:
        """First and last hit (one hit for a single-hit segment)."""
        if not self.hits:
            return []
        if len(self.hits) == 1:
            return [self.hits[0]]
        return [self.hits[0], self.hits[-1]]

    def __repr__(self) -> str:
        return f"Segment(id={self.id}, n_hits={len(self.hits)})"


class SegmentBook:
    r"""
    Live segments of one event, backed by a :class:`HitPool`.

    Every membership change goes through this class and is a
    *claim-and-append* (or *release-and-remove*) in one step, so the pool's
    ownership map and the segments' hit lists always agree:

    * a hit belongs to at most one live segment;
    * the hit count of a live segment never decreases, except through
      :meth:`dissolve` or being absorbed by :meth:`merge`.

    Segment ids are never reused within an event.
    """

    __slots__ = ("pool", "_segments", "_next_id")

    def __init__(self, pool: HitPool) -> None:
        self.pool = pool
        self._segments: Dict[int, Segment] = {}
        self._next_id = 0

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(list(self._segments.values()))

    def __contains__(self, segment_id: int) -> bool:
        return segment_id in self._segments

    def get(self, segment_id: int) -> Segment:
        """Live segment by id; ``KeyError`` if it was dissolved or absorbed."""
        return self._segments[segment_id]

    def segment_of(self, hit: Hit | int) -> Optional[Segment]:
        owner = self.pool.owner_of(hit)
        return None if owner is None else self._segments.get(owner)

    def create(self, hits: Iterable[Hit] = ()) -> Segment:
        r"""
        Open a new segment and claim ``hits`` for it.

        Raises
        ------
        ValueError
            If one of the hits is owned by another segment (nothing changes).
        """
        hits = list(hits)
        seg = Segment(id=self._next_id)
        self.pool.claim_many(hits, seg.id)
        self._next_id += 1
        seg.hits.extend(hits)
        self._segments[seg.id] = seg
        return seg

    def add_hit(self, segment: Segment | int, hit: Hit) -> bool:
        r"""
        Claim ``hit`` for ``segment`` and append it.

        Returns
        -------
        bool
            ``False`` if the hit is owned by some segment already (including
            this one); nothing changes then.
        """
        seg = self._resolve(segment)
        if self.pool.is_used(hit):
            return False
        self.pool.claim(hit, seg.id)
        seg.hits.append(hit)
        return True

    def dissolve(self, segment: Segment | int) -> List[Hit]:
        """Remove a segment and release its hits; returns the released hits."""
        seg = self._resolve(segment)
        del self._segments[seg.id]
        self.pool.release_many(seg.hits)
        hits, seg.hits = seg.hits, []
        return hits

    def merge(self, survivor: Segment | int, absorbed: Segment | int) -> Segment:
        r"""
        Move all hits of ``absorbed`` into ``survivor`` and drop ``absorbed``.

        Raises
        ------
        ValueError
            If both arguments name the same segment.
        """
        keep = self._resolve(survivor)
        gone = self._resolve(absorbed)
        if keep.id == gone.id:
            raise ValueError(f"Cannot merge segment {keep.id} into itself.")
        self.pool.transfer(gone.hits, gone.id, keep.id)
        keep.hits.extend(gone.hits)
        gone.hits = []
        del self._segments[gone.id]
        logger.debug("Merged segment %d into %d (%d hits)", gone.id, keep.id, len(keep.hits))
        return keep

    def _resolve(self, segment: Segment | int) -> Segment:
        sid = segment.id if isinstance(segment, Segment) else int(segment)
        try:
            return self._segments[sid]
        except KeyError:
            raise KeyError(f"Segment {sid} is not live.") from None
