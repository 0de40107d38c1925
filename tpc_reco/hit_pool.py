from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from tpc_reco.data import validate_hits


@dataclass(slots=True, eq=False)
class Hit:
    r"""
    One TPC space point with its uncertainty and per-event annotations.

    Attributes
    ----------
    index : int
        Position of the hit in its :class:`HitPool` (stable for the event).
    hit_id : int
        Identifier from the input collection.
    position : (3,) ndarray
        Cartesian position :math:`(x, y, z)`.
    var_rphi, var_z : float
        Variances :math:`\sigma^2_{r\phi}` and :math:`\sigma^2_z`.
    layer : int
        Pad-row index, ``-1`` until annotated.
    zbucket : int
        Longitudinal search bucket, ``-1`` until annotated.
    chi2_residual : float
        :math:`\chi^2` of the hit against the best matching crossing point;
        ``NaN`` until leftover reconciliation scored it.

    Notes
    -----
    A hit never references the segment it belongs to; ownership lives in
    :class:`HitPool` as a ``hit index -> segment id`` map.
    """
    index: int
    hit_id: int
    position: np.ndarray
    var_rphi: float
    var_z: float
    layer: int = -1
    zbucket: int = -1
    chi2_residual: float = math.nan

    @property
    def x(self) -> float:
        return float(self.position[0])

    @property
    def y(self) -> float:
        return float(self.position[1])

    @property
    def z(self) -> float:
        return float(self.position[2])

    @property
    def rho(self) -> float:
        return math.hypot(self.position[0], self.position[1])

    @property
    def phi(self) -> float:
        return math.atan2(self.position[1], self.position[0])

    def __repr__(self) -> str:
        return (f"Hit(id={self.hit_id}, layer={self.layer}, "
                f"xyz=({self.x:.1f}, {self.y:.1f}, {self.z:.1f}))")


class HitPool:
    r"""
    Event hit store and authoritative ownership registry.

    The pool owns every :class:`Hit` of the event and records which segment,
    if any, currently claims it. All membership changes of segments go through
    :meth:`claim` / :meth:`release` / :meth:`transfer`, so a hit can never be
    owned by two segments.

    Parameters
    ----------
    hits : pandas.DataFrame
        Validated hit table (see :func:`tpc_reco.data.validate_hits`) with
        columns ``hit_id, x, y, z, var_rphi, var_z``. Extra columns such as
        ``particle_id`` or ``collection`` are carried through to
        :meth:`partition`.

    Attributes
    ----------
    hits : pandas.DataFrame
        Input table, never mutated.
    _hits : list[Hit]
        Hit objects in input order.
    _owner : dict[int, int]
        ``hit index -> segment id`` for claimed hits.
    _annotated : bool
        Set once layer ids and z buckets were written.
    """

    __slots__ = ("hits", "_hits", "_owner", "_annotated")

    def __init__(self, hits: pd.DataFrame) -> None:
        self.hits = hits.reset_index(drop=True)
        self._hits: List[Hit] = self._build_hits(self.hits)
        self._owner: Dict[int, int] = {}
        self._annotated = False

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "HitPool":
        r"""
        Validate an input table and build a pool from it.

        Raises
        ------
        KeyError
            If a required column is missing.
        ValueError
            If coordinates or variances are not finite / positive.
        """
        return cls(validate_hits(frame))

    @staticmethod
    def _build_hits(hits: pd.DataFrame) -> List[Hit]:
        xyz = np.ascontiguousarray(hits[["x", "y", "z"]].to_numpy(dtype=np.float64), dtype=np.float64)
        hid = hits["hit_id"].to_numpy(dtype=np.int64, copy=False)
        vr = hits["var_rphi"].to_numpy(dtype=np.float64, copy=False)
        vz = hits["var_z"].to_numpy(dtype=np.float64, copy=False)
        return [
            Hit(index=i, hit_id=int(hid[i]), position=xyz[i], var_rphi=float(vr[i]), var_z=float(vz[i]))
            for i in range(hid.size)
        ]

    def __len__(self) -> int:
        return len(self._hits)

    def __iter__(self):
        return iter(self._hits)

    def __getitem__(self, index: int) -> Hit:
        return self._hits[index]

    @property
    def positions(self) -> np.ndarray:
        """``(N, 3)`` positions in pool order."""
        if not self._hits:
            return np.empty((0, 3), dtype=np.float64)
        return np.vstack([h.position for h in self._hits])

    # ------------------------------------------------------------------ annotations

    @property
    def annotated(self) -> bool:
        return self._annotated

    def set_annotations(self, layers: np.ndarray, zbuckets: np.ndarray) -> None:
        r"""
        Write pad-row ids and z buckets onto the hits (once per event).

        Raises
        ------
        RuntimeError
            If the pool was annotated before.
        ValueError
            If the arrays do not match the pool size.
        """
        if self._annotated:
            raise RuntimeError("Hit annotations are write-once per event.")
        layers = np.asarray(layers, dtype=np.int64)
        zbuckets = np.asarray(zbuckets, dtype=np.int64)
        if layers.shape != (len(self._hits),) or zbuckets.shape != (len(self._hits),):
            raise ValueError("Annotation arrays must have one entry per hit.")
        for h, lay, zb in zip(self._hits, layers.tolist(), zbuckets.tolist()):
            h.layer = lay
            h.zbucket = zb
        self._annotated = True

    # ------------------------------------------------------------------ ownership

    def owner_of(self, hit: Hit | int) -> Optional[int]:
        """Segment id owning ``hit`` or ``None``."""
        return self._owner.get(_index(hit))

    def is_used(self, hit: Hit | int) -> bool:
        return _index(hit) in self._owner

    def claim(self, hit: Hit | int, segment_id: int) -> bool:
        r"""
        Reserve a hit for a segment.

        Returns
        -------
        bool
            ``True`` if the hit was free (or already owned by ``segment_id``),
            ``False`` if another segment owns it; the registry is unchanged then.
        """
        i = _index(hit)
        owner = self._owner.get(i)
        if owner is not None and owner != segment_id:
            return False
        self._owner[i] = int(segment_id)
        return True

    def claim_many(self, hits: Iterable[Hit | int], segment_id: int) -> int:
        r"""
        Reserve several hits, all or nothing.

        Returns
        -------
        int
            Number of newly claimed hits.

        Raises
        ------
        ValueError
            If any hit is owned by another segment (nothing is claimed then).
        """
        idx = [_index(h) for h in hits]
        taken = [i for i in idx if self._owner.get(i, segment_id) != segment_id]
        if taken:
            raise ValueError(f"Hits {taken[:5]} are already owned by another segment.")
        before = len(self._owner)
        for i in idx:
            self._owner[i] = int(segment_id)
        return len(self._owner) - before

    def release(self, hit: Hit | int) -> bool:
        """Drop the reservation of one hit; ``True`` if it was claimed."""
        return self._owner.pop(_index(hit), None) is not None

    def release_many(self, hits: Iterable[Hit | int]) -> int:
        cnt = 0
        for h in hits:
            if self._owner.pop(_index(h), None) is not None:
                cnt += 1
        return cnt

    def transfer(self, hits: Iterable[Hit | int], from_segment: int, to_segment: int) -> int:
        r"""
        Move ownership of hits between two segments.

        Raises
        ------
        ValueError
            If a hit is not owned by ``from_segment``.
        """
        idx = [_index(h) for h in hits]
        bad = [i for i in idx if self._owner.get(i) != from_segment]
        if bad:
            raise ValueError(f"Hits {bad[:5]} are not owned by segment {from_segment}.")
        for i in idx:
            self._owner[i] = int(to_segment)
        return len(idx)

    # ------------------------------------------------------------------ queries

    def used_hits(self) -> List[Hit]:
        return [h for h in self._hits if h.index in self._owner]

    def unused_hits(self, hits: Optional[Iterable[Hit]] = None) -> List[Hit]:
        source = self._hits if hits is None else hits
        return [h for h in source if h.index not in self._owner]

    def get_assignment_ratio(self) -> float:
        r"""
        Fraction of claimed hits in :math:`[0,1]` (``0.0`` for an empty pool).
        """
        total = len(self._hits)
        return (len(self._owner) / total) if total else 0.0

    @staticmethod
    def hits_by_layer(hits: Iterable[Hit]) -> Dict[int, List[Hit]]:
        """Bucket hits by pad row, keeping input order inside a bucket."""
        out: Dict[int, List[Hit]] = {}
        for h in hits:
            out.setdefault(h.layer, []).append(h)
        return out

    def get_layer_statistics(self) -> Dict[int, Dict[str, float | int]]:
        r"""
        Per pad-row assignment statistics.

        Returns
        -------
        dict
            ``layer -> {'total_hits', 'assigned_hits', 'available_hits', 'assignment_ratio'}``.
        """
        stats: Dict[int, Dict[str, float | int]] = {}
        for layer, hits in sorted(self.hits_by_layer(self._hits).items()):
            total = len(hits)
            assigned = sum(1 for h in hits if h.index in self._owner)
            stats[layer] = {
                "total_hits": total,
                "assigned_hits": assigned,
                "available_hits": total - assigned,
                "assignment_ratio": assigned / total,
            }
        return stats

    def partition(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        r"""
        Split the input table into used and unused hits.

        The ``used`` frame gains a ``segment_id`` column, both frames gain the
        annotations ``layer``, ``zbucket`` and ``chi2_residual``. Every input row
        appears in exactly one of the two frames.
        """
        n = len(self._hits)
        owner = np.full(n, -1, dtype=np.int64)
        for i, seg in self._owner.items():
            owner[i] = seg
        annotated = self.hits.assign(
            layer=np.fromiter((h.layer for h in self._hits), dtype=np.int64, count=n),
            zbucket=np.fromiter((h.zbucket for h in self._hits), dtype=np.int64, count=n),
            chi2_residual=np.fromiter((h.chi2_residual for h in self._hits), dtype=np.float64, count=n),
        )
        used_mask = owner >= 0
        used = annotated.loc[used_mask].assign(segment_id=owner[used_mask])
        unused = annotated.loc[~used_mask]
        return used.reset_index(drop=True), unused.reset_index(drop=True)


def _index(hit: Hit | int) -> int:
    return hit.index if isinstance(hit, Hit) else int(hit)


def hit_positions(hits: Sequence[Hit]) -> np.ndarray:
    """Stack hit positions into a contiguous ``(N, 3)`` array."""
    if not hits:
        return np.empty((0, 3), dtype=np.float64)
    return np.ascontiguousarray(np.vstack([h.position for h in hits]), dtype=np.float64)
