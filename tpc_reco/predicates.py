from __future__ import annotations

import math
from typing import Iterable, List, Tuple

import numpy as np

from tpc_reco.hit_pool import Hit

TWO_PI = 2.0 * math.pi


def wrap_phi(phi: float) -> float:
    r"""
    Map an angle into :math:`(-\pi, \pi]`.
    """
    out = math.fmod(phi + math.pi, TWO_PI)
    if out <= 0.0:
        out += TWO_PI
    return out - math.pi


def chi2_rphi_z(position: np.ndarray, reference: np.ndarray, var_rphi: float, var_z: float) -> float:
    r"""
    :math:`\chi^2` of a position against a reference point in :math:`(r\phi, z)`.

    .. math::

        \chi^2 = \frac{(\rho\,\Delta\phi)^2}{\sigma^2_{r\phi}}
               + \frac{(\Delta z)^2}{\sigma^2_z},

    with :math:`\rho` the mean transverse radius of the two points and
    :math:`\Delta\phi` wrapped into :math:`(-\pi, \pi]`, so swapping the
    arguments gives the same value. This is a pure score; callers apply their
    own cut.
    """
    rho = 0.5 * (math.hypot(position[0], position[1]) + math.hypot(reference[0], reference[1]))
    dphi = wrap_phi(math.atan2(position[1], position[0]) - math.atan2(reference[1], reference[0]))
    dz = float(position[2]) - float(reference[2])
    return (rho * dphi) ** 2 / var_rphi + dz * dz / var_z


def hit_chi2(hit: Hit, reference: np.ndarray) -> float:
    """:func:`chi2_rphi_z` with the hit's own variances."""
    return chi2_rphi_z(hit.position, reference, hit.var_rphi, hit.var_z)


class HitDistance:
    r"""
    Nearest-neighbour merge predicate on :class:`~tpc_reco.clustering.ClusterNode`
    objects wrapping hits.

    Two hits are linked iff their search buckets differ by at most one, they
    sit on different pad rows and

    .. math::

        \lVert \mathbf{x}_0 - \mathbf{x}_1 \rVert^2 < d_{cut}^2 .
    """

    __slots__ = ("d_cut", "_d_cut2")

    def __init__(self, d_cut: float) -> None:
        self.d_cut = float(d_cut)
        self._d_cut2 = self.d_cut * self.d_cut

    def __call__(self, n0, n1) -> bool:
        if abs(n0.index0 - n1.index0) > 1:
            return False
        h0, h1 = n0.item, n1.item
        if h0.layer == h1.layer:
            return False
        d = h0.position - h1.position
        return float(d @ d) < self._d_cut2

    def __repr__(self) -> str:
        return f"HitDistance(d_cut={self.d_cut})"


class HelixDistance:
    r"""
    Merge predicate on nodes wrapping fitted tracks.

    Two tracks are compatible iff their buckets differ by at most one and

    .. math::

        2\left|\frac{r_0 - r_1}{r_0 + r_1}\right| < \epsilon_r, \qquad
        \left(\frac{2(t_0 - t_1)}{t_0 + t_1}\right)^2 \le \epsilon_t^2, \qquad
        \lVert \mathbf{c}_0 - \mathbf{c}_1 \rVert < \epsilon_d\,|r_0|,

    with signed radii :math:`r`, :math:`t=\tan\lambda` and circle centres
    :math:`\mathbf{c}`. Equal :math:`\tan\lambda` always passes the slope
    test; opposite slopes summing to zero never do.

    Parameters
    ----------
    radius_tol, tanl_tol, distance_tol : float
        :math:`\epsilon_r`, :math:`\epsilon_t` and :math:`\epsilon_d`.
    """

    __slots__ = ("radius_tol", "tanl_tol", "distance_tol")

    def __init__(self, radius_tol: float = 0.1, tanl_tol: float = 0.2, distance_tol: float = 0.1) -> None:
        self.radius_tol = float(radius_tol)
        self.tanl_tol = float(tanl_tol)
        self.distance_tol = float(distance_tol)

    def __call__(self, n0, n1) -> bool:
        if abs(n0.index0 - n1.index0) > 1:
            return False
        p0, p1 = n0.item.params, n1.item.params
        r0, r1 = p0.radius, p1.radius
        rsum = r0 + r1
        if rsum == 0.0 or not 2.0 * abs((r0 - r1) / rsum) < self.radius_tol:
            return False

        t0, t1 = p0.tan_lambda, p1.tan_lambda
        if t0 != t1:
            tsum = t0 + t1
            if tsum == 0.0:
                return False
            dtl = 2.0 * (t0 - t1) / tsum
            if dtl * dtl > self.tanl_tol * self.tanl_tol:
                return False

        c0, c1 = p0.center, p1.center
        return math.hypot(c0[0] - c1[0], c0[1] - c1[1]) < self.distance_tol * abs(r0)

    def __repr__(self) -> str:
        return (f"HelixDistance(radius_tol={self.radius_tol}, tanl_tol={self.tanl_tol}, "
                f"distance_tol={self.distance_tol})")


class RadialGate:
    r"""
    Transverse-radius gate applied before clustering.

    ``keep`` (the cut) accepts hits with :math:`\rho > r_{cut}` or
    :math:`|z| > z_{margin} + r_{cut}`; ``excluded`` is its exact complement.
    Excluded hits skip clustering and are only offered to the leftover
    reconciler. With ``r_cut = 0`` nothing is excluded except hits on the
    axis near the centre of the chamber.
    """

    __slots__ = ("r_cut", "z_margin")

    def __init__(self, r_cut: float, z_margin: float = 500.0) -> None:
        self.r_cut = float(r_cut)
        self.z_margin = float(z_margin)

    def keep(self, hit: Hit) -> bool:
        return hit.rho > self.r_cut or abs(hit.z) > self.z_margin + self.r_cut

    def excluded(self, hit: Hit) -> bool:
        return hit.rho <= self.r_cut and abs(hit.z) <= self.z_margin + self.r_cut

    def split(self, hits: Iterable[Hit]) -> Tuple[List[Hit], List[Hit]]:
        """Partition ``hits`` into ``(working, excluded)`` preserving order."""
        working: List[Hit] = []
        excluded: List[Hit] = []
        for h in hits:
            (working if self.keep(h) else excluded).append(h)
        return working, excluded
