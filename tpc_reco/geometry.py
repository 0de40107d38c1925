from __future__ import annotations

import abc
import logging
import math

import numpy as np

from tpc_reco.hit_pool import HitPool

logger = logging.getLogger(__name__)


class PadRowLayout(abc.ABC):
    r"""
    Abstract pad-row geometry of a cylindrical chamber.

    Subclasses provide the row radii and the mapping from a 3-D position to
    its pad-row index. The reconstruction only ever asks for

    * the number of rows,
    * the radius of a row (crossing points are computed on these cylinders),
    * the row index of a position.
    """

    @property
    @abc.abstractmethod
    def n_rows(self) -> int:
        ...

    @abc.abstractmethod
    def row_radius(self, row: int) -> float:
        ...

    @abc.abstractmethod
    def layer_indices(self, positions: np.ndarray) -> np.ndarray:
        """Vectorised row lookup for an ``(N, 3)`` array; returns int64 ``(N,)``."""

    def layer_index_of(self, position: np.ndarray) -> int:
        return int(self.layer_indices(np.asarray(position, dtype=np.float64).reshape(1, 3))[0])

    def row_radii(self) -> np.ndarray:
        return np.array([self.row_radius(i) for i in range(self.n_rows)], dtype=np.float64)


class UniformPadRowLayout(PadRowLayout):
    r"""
    Equally spaced pad rows between an inner and an outer radius.

    Row :math:`i` is centred at

    .. math::

        R_i = r_{in} + \left(i + \tfrac12\right)\,\Delta r, \qquad
        \Delta r = \frac{r_{out} - r_{in}}{n_{rows}},

    and a position is assigned to the nearest row by its transverse radius,
    clipped to ``[0, n_rows - 1]``.

    Parameters
    ----------
    r_inner, r_outer : float
        Radial extent of the sensitive volume (``r_outer > r_inner >= 0``).
    n_rows : int
        Number of pad rows (``>= 1``).
    """

    __slots__ = ("r_inner", "r_outer", "_n_rows", "pitch")

    def __init__(self, r_inner: float = 390.0, r_outer: float = 1740.0, n_rows: int = 224) -> None:
        if n_rows < 1:
            raise ValueError("n_rows must be >= 1.")
        if not (r_outer > r_inner >= 0.0):
            raise ValueError("Need r_outer > r_inner >= 0.")
        self.r_inner = float(r_inner)
        self.r_outer = float(r_outer)
        self._n_rows = int(n_rows)
        self.pitch = (self.r_outer - self.r_inner) / self._n_rows

    @property
    def n_rows(self) -> int:
        return self._n_rows

    def row_radius(self, row: int) -> float:
        if not 0 <= row < self._n_rows:
            raise IndexError(f"Pad row {row} out of range [0, {self._n_rows}).")
        return self.r_inner + (row + 0.5) * self.pitch

    def layer_indices(self, positions: np.ndarray) -> np.ndarray:
        pos = np.asarray(positions, dtype=np.float64)
        if pos.size == 0:
            return np.empty(0, dtype=np.int64)
        rho = np.hypot(pos[:, 0], pos[:, 1])
        rows = np.floor((rho - self.r_inner) / self.pitch).astype(np.int64)
        return np.clip(rows, 0, self._n_rows - 1)

    def __repr__(self) -> str:
        return f"UniformPadRowLayout(r_inner={self.r_inner}, r_outer={self.r_outer}, n_rows={self._n_rows})"


class ZBinning:
    r"""
    Linear binning of :math:`z` into search buckets, clipped at both ends.

    .. math::

        b(z) = \operatorname{clip}\!\left(\left\lfloor
        n\,\frac{z - z_{min}}{z_{max} - z_{min}} \right\rfloor,\ 0,\ n-1\right)
    """

    __slots__ = ("n_bins", "z_min", "z_max")

    def __init__(self, n_bins: int = 200, z_min: float = -2750.0, z_max: float = 2750.0) -> None:
        if n_bins < 1 or not z_max > z_min:
            raise ValueError("Need n_bins >= 1 and z_max > z_min.")
        self.n_bins = int(n_bins)
        self.z_min = float(z_min)
        self.z_max = float(z_max)

    def bucket_of(self, z: float) -> int:
        b = math.floor(self.n_bins * (z - self.z_min) / (self.z_max - self.z_min))
        return min(max(b, 0), self.n_bins - 1)

    def buckets(self, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=np.float64)
        b = np.floor(self.n_bins * (z - self.z_min) / (self.z_max - self.z_min)).astype(np.int64)
        return np.clip(b, 0, self.n_bins - 1)


class LayerIndexAnnotator:
    """Writes pad-row ids and z buckets onto every hit of a pool, once per event."""

    __slots__ = ("layout", "zbinning")

    def __init__(self, layout: PadRowLayout, zbinning: ZBinning | None = None) -> None:
        self.layout = layout
        self.zbinning = zbinning if zbinning is not None else ZBinning()

    def annotate(self, pool: HitPool) -> None:
        pos = pool.positions
        layers = self.layout.layer_indices(pos)
        zb = self.zbinning.buckets(pos[:, 2]) if len(pos) else np.empty(0, dtype=np.int64)
        pool.set_annotations(layers, zb)
        logger.debug("Annotated %d hits (%d distinct pad rows)", len(pos), np.unique(layers).size)
