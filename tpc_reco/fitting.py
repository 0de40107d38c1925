from __future__ import annotations

import abc
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from tpc_reco.config import FitOrder, TrackFinderConfig
from tpc_reco.geometry import PadRowLayout
from tpc_reco.hit_pool import Hit, hit_positions
from tpc_reco.predicates import TWO_PI, wrap_phi
from tpc_reco.segments import Segment

logger = logging.getLogger(__name__)


class FitError(RuntimeError):
    """Raised by a :class:`TrajectoryFitter` when a hit list cannot be fitted."""


@dataclass(slots=True)
class HelixParameters:
    r"""
    Helix in the perigee parametrisation about the :math:`z` axis.

    With signed radius :math:`r = 1/\omega` (positive for clockwise motion
    seen from :math:`+z`), the circle centre is

    .. math::

        x_c = (r - d_0)\sin\phi_0, \qquad y_c = (d_0 - r)\cos\phi_0,

    the point of closest approach to the axis is
    :math:`(-d_0\sin\phi_0,\ d_0\cos\phi_0,\ z_0)` and along the transverse
    arc length :math:`s`

    .. math::

        \phi(s) = \phi_0 - \omega s, \qquad
        \mathbf{x}_\perp(s) = \mathbf{c} + r\,(-\sin\phi(s),\ \cos\phi(s)), \qquad
        z(s) = z_0 + s\tan\lambda .
    """
    omega: float
    phi0: float
    d0: float
    z0: float
    tan_lambda: float

    @property
    def radius(self) -> float:
        return 1.0 / self.omega if self.omega != 0.0 else math.inf

    @property
    def center(self) -> Tuple[float, float]:
        r = self.radius
        return (r - self.d0) * math.sin(self.phi0), (self.d0 - r) * math.cos(self.phi0)

    def position_at(self, s: float | np.ndarray) -> np.ndarray:
        """Point(s) on the helix at arc length ``s``; shape ``(3,)`` or ``(N, 3)``."""
        s = np.asarray(s, dtype=np.float64)
        r = self.radius
        xc, yc = self.center
        phi = self.phi0 - self.omega * s
        return np.stack([xc - r * np.sin(phi), yc + r * np.cos(phi), self.z0 + self.tan_lambda * s], axis=-1)

    def phi_at(self, x: float, y: float) -> float:
        """Direction angle at the circle point nearest to ``(x, y)``."""
        r = self.radius
        xc, yc = self.center
        return math.atan2(-(x - xc) / r, (y - yc) / r)


@dataclass(slots=True)
class FitResult:
    """What a :class:`TrajectoryFitter` returns for one hit list."""
    params: HelixParameters
    chi2: float
    ndf: int
    crossing_points: List[Optional[np.ndarray]]
    hits: Tuple[Hit, ...]


@dataclass(slots=True, eq=False)
class FittedTrack:
    r"""
    A fitted segment: helix parameters, fit quality and one crossing point per
    pad row (``None`` where the helix does not reach the row or where it was
    invalidated).

    Attributes
    ----------
    segment_id : int
        Segment the track was fitted from (may be re-pointed after a merge).
    params : HelixParameters
    chi2 : float
    ndf : int
    hits : tuple[Hit, ...]
        Snapshot of the fitted hits in fit order.
    crossing_points : list[ndarray | None]
        Indexed by pad row.
    """
    segment_id: int
    params: HelixParameters
    chi2: float
    ndf: int
    hits: Tuple[Hit, ...]
    crossing_points: List[Optional[np.ndarray]] = field(default_factory=list)

    @classmethod
    def from_result(cls, segment_id: int, result: FitResult) -> "FittedTrack":
        return cls(segment_id=segment_id, params=result.params, chi2=result.chi2, ndf=result.ndf,
                   hits=tuple(result.hits), crossing_points=list(result.crossing_points))

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def chi2_ndf(self) -> float:
        return self.chi2 / self.ndf if self.ndf > 0 else math.inf

    def crossing_point(self, layer: int) -> Optional[np.ndarray]:
        if 0 <= layer < len(self.crossing_points):
            return self.crossing_points[layer]
        return None

    def invalidate_layers(self, layers: Iterable[int]) -> None:
        for layer in layers:
            if 0 <= layer < len(self.crossing_points):
                self.crossing_points[layer] = None

    def __repr__(self) -> str:
        return (f"FittedTrack(segment={self.segment_id}, n_hits={self.n_hits}, "
                f"omega={self.params.omega:.3e}, chi2/ndf={self.chi2_ndf:.2f})")


def describe_track(track: FittedTrack) -> str:
    """One-line debug description: circle radius and centre, dip and fit quality."""
    p = track.params
    xc, yc = p.center
    return (f"segment {track.segment_id}: n_hits={track.n_hits} R={p.radius:.1f} "
            f"center=({xc:.1f}, {yc:.1f}) d0={p.d0:.2f} z0={p.z0:.1f} "
            f"tanl={p.tan_lambda:.4f} chi2/ndf={track.chi2_ndf:.2f}")


class TrajectoryFitter(abc.ABC):
    """Fit engine interface used by :class:`SegmentFitter`."""

    @abc.abstractmethod
    def fit(self, hits: Sequence[Hit], order: FitOrder) -> FitResult:
        """Fit ``hits`` (given in traversal order); raise :class:`FitError` on failure."""

    def release(self, track: FittedTrack) -> None:
        """Hook to free engine resources attached to ``track``."""


class HelixFitter(TrajectoryFitter):
    r"""
    Default fit engine: circle in :math:`x\text{-}y`, straight line in :math:`s\text{-}z`.

    1. **Circle.** Algebraic (Kåsa) fit of
       :math:`x^2 + y^2 + Dx + Ey + F = 0`, refined with
       :func:`scipy.optimize.least_squares` on the residuals

       .. math::

           \varepsilon_i = \frac{\lVert \mathbf{x}_{\perp,i} - \mathbf{c}\rVert - R}{\sigma_{r\phi,i}} .

    2. **Orientation.** The sign of
       :math:`\sum_i (\mathbf{x}_i - \mathbf{c}) \times (\mathbf{x}_{i+1} - \mathbf{c})`
       over the given hit order; counter-clockwise motion gives
       :math:`r = -R`.
    3. **Perigee.** The circle point nearest the axis defines
       :math:`\phi_0` and :math:`d_0`.
    4. **Dip.** Weighted linear fit :math:`z = z_0 + s\tan\lambda` with
       unwrapped arc lengths :math:`s_i` and weights :math:`1/\sigma_{z,i}`.
    5. **Crossing points.** Intersections with every pad-row cylinder; of the
       two solutions the one closest in arc length to the fitted hits is
       kept.

    :math:`\chi^2` sums both residual types, :math:`n_{df} = 2n - 5`.
    """

    def __init__(self, layout: PadRowLayout, min_hits: int = 3) -> None:
        if min_hits < 3:
            raise ValueError("A circle fit needs at least 3 hits.")
        self.layout = layout
        self.min_hits = int(min_hits)
        self._row_radii = layout.row_radii()

    @staticmethod
    def _algebraic_circle(x: np.ndarray, y: np.ndarray) -> Tuple[float, float, float]:
        A = np.column_stack([x, y, np.ones_like(x)])
        b = -(x * x + y * y)
        (D, E, F), *_ = np.linalg.lstsq(A, b, rcond=None)
        xc, yc = -0.5 * D, -0.5 * E
        r2 = xc * xc + yc * yc - F
        return xc, yc, math.sqrt(r2) if r2 > 0.0 else math.nan

    def _circle(self, x: np.ndarray, y: np.ndarray, sigma: np.ndarray) -> Tuple[float, float, float]:
        xc, yc, R = self._algebraic_circle(x, y)
        if not (math.isfinite(xc) and math.isfinite(yc) and math.isfinite(R)):
            raise FitError("Degenerate hit configuration for the circle fit.")

        def residuals(p: np.ndarray) -> np.ndarray:
            return (np.hypot(x - p[0], y - p[1]) - p[2]) / sigma

        sol = least_squares(residuals, x0=np.array([xc, yc, R]), method="lm")
        xc, yc, R = (float(v) for v in sol.x)
        R = abs(R)
        if not (math.isfinite(xc) and math.isfinite(yc) and math.isfinite(R)) or R <= 0.0:
            raise FitError("Circle refinement did not converge to a finite radius.")
        return xc, yc, R

    def fit(self, hits: Sequence[Hit], order: FitOrder) -> FitResult:
        n = len(hits)
        if n < self.min_hits:
            raise FitError(f"Need at least {self.min_hits} hits, got {n}.")
        pos = hit_positions(hits)
        x, y, z = pos[:, 0], pos[:, 1], pos[:, 2]
        var_rphi = np.array([h.var_rphi for h in hits], dtype=np.float64)
        var_z = np.array([h.var_z for h in hits], dtype=np.float64)

        xc, yc, R = self._circle(x, y, np.sqrt(var_rphi))

        dx, dy = x - xc, y - yc
        turn = float(np.sum(dx[:-1] * dy[1:] - dy[:-1] * dx[1:]))
        r = -R if turn > 0.0 else R

        dc = math.hypot(xc, yc)
        if dc == 0.0:
            raise FitError("Circle centred on the axis; perigee undefined.")
        px, py = xc - R * xc / dc, yc - R * yc / dc
        phi0 = math.atan2(-(px - xc) / r, (py - yc) / r)
        d0 = -px * math.sin(phi0) + py * math.cos(phi0)

        phi = np.arctan2(-dx / r, dy / r)
        phi_u = np.unwrap(np.concatenate(([phi0], phi)))[1:]
        s = (phi0 - phi_u) * r

        w = 1.0 / np.sqrt(var_z)
        if np.ptp(s) <= 0.0:
            raise FitError("Hits do not spread along the trajectory.")
        tan_lambda, z0 = np.polyfit(s, z, 1, w=w)

        params = HelixParameters(omega=1.0 / r, phi0=phi0, d0=d0, z0=float(z0), tan_lambda=float(tan_lambda))
        res_c = np.hypot(dx, dy) - R
        res_z = z - (z0 + tan_lambda * s)
        chi2 = float(np.sum(res_c * res_c / var_rphi) + np.sum(res_z * res_z / var_z))

        crossings = self.crossing_points(params, float(s.min()), float(s.max()))
        return FitResult(params=params, chi2=chi2, ndf=2 * n - 5, crossing_points=crossings, hits=tuple(hits))

    def crossing_points(self, params: HelixParameters, s_min: float, s_max: float) -> List[Optional[np.ndarray]]:
        r"""
        Intersections of the helix with all pad-row cylinders.

        For a row of radius :math:`R_\ell` and circle centre at distance
        :math:`d` from the axis, the intersections lie at

        .. math::

            a = \frac{R_\ell^2 - R^2 + d^2}{2d}, \qquad
            h = \sqrt{R_\ell^2 - a^2}, \qquad
            \mathbf{x} = a\,\hat{\mathbf{c}} \pm h\,\hat{\mathbf{c}}_\perp .

        The candidate whose arc length (shifted by whole turns) lies nearest
        to :math:`[s_{min}, s_{max}]` is returned; rows the circle never
        reaches get ``None``.
        """
        r = params.radius
        R = abs(r)
        xc, yc = params.center
        d = math.hypot(xc, yc)
        out: List[Optional[np.ndarray]] = [None] * self._row_radii.size
        if d == 0.0:
            return out
        ux, uy = xc / d, yc / d
        rl = self._row_radii
        a = (rl * rl - R * R + d * d) / (2.0 * d)
        h2 = rl * rl - a * a
        ok = h2 >= 0.0
        period = TWO_PI * R
        s_mid = 0.5 * (s_min + s_max)
        for row in np.flatnonzero(ok).tolist():
            h = math.sqrt(h2[row])
            best = None
            best_gap = math.inf
            for sign in (1.0, -1.0):
                cx = a[row] * ux - sign * h * uy
                cy = a[row] * uy + sign * h * ux
                phi = math.atan2(-(cx - xc) / r, (cy - yc) / r)
                sk = wrap_phi(params.phi0 - phi) * r
                sk += round((s_mid - sk) / period) * period
                gap = max(s_min - sk, 0.0, sk - s_max)
                if gap < best_gap:
                    best_gap = gap
                    best = np.array([cx, cy, params.z0 + params.tan_lambda * sk])
            out[row] = best
        return out


class SegmentFitter:
    r"""
    Adapter between segments and a :class:`TrajectoryFitter`.

    Hits are sorted by pad row (ascending for ``OUTGOING``, descending for
    ``INCOMING``). Assuming tracks come from the interaction point, the order
    is reversed for segments that run towards the centre in :math:`z`:

    * ``OUTGOING``: reverse if :math:`|z_{first}| > |z_{last}| + m`,
    * ``INCOMING``: reverse if :math:`|z_{first}| < |z_{last}| + m`.

    Fit failures never propagate: the segment keeps its hits and simply
    yields no track.
    """

    def __init__(self, fitter: TrajectoryFitter, order: FitOrder = FitOrder.OUTGOING,
                 reverse_margin: float = 3.0, min_hits: int = 3) -> None:
        self.fitter = fitter
        self.order = order
        self.reverse_margin = float(reverse_margin)
        self.min_hits = int(min_hits)

    @classmethod
    def from_config(cls, fitter: TrajectoryFitter, cfg: TrackFinderConfig) -> "SegmentFitter":
        return cls(fitter, order=cfg.order, reverse_margin=cfg.reverse_margin, min_hits=cfg.min_fit_hits)

    def ordered_hits(self, hits: Sequence[Hit]) -> List[Hit]:
        out = sorted(hits, key=lambda h: h.layer, reverse=self.order is FitOrder.INCOMING)
        if len(out) < 2:
            return out
        zf, zl = abs(out[0].z), abs(out[-1].z)
        if self.order is FitOrder.OUTGOING:
            reverse = zf > zl + self.reverse_margin
        else:
            reverse = zf < zl + self.reverse_margin
        if reverse:
            out.reverse()
        return out

    def fit(self, segment: Segment) -> Optional[FittedTrack]:
        if len(segment) < self.min_hits:
            logger.debug("Segment %d has %d hits; not fitted", segment.id, len(segment))
            return None
        hits = self.ordered_hits(segment.hits)
        try:
            result = self.fitter.fit(hits, self.order)
        except FitError as e:
            logger.debug("Fit of segment %d failed: %s", segment.id, e)
            return None
        track = FittedTrack.from_result(segment.id, result)
        logger.debug("Fitted %s", describe_track(track))
        return track

    def fit_all(self, segments: Iterable[Segment]) -> List[FittedTrack]:
        tracks = []
        for seg in segments:
            trk = self.fit(seg)
            if trk is not None:
                tracks.append(trk)
        return tracks
