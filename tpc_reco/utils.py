from __future__ import annotations

import math
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from tpc_reco.fitting import HelixParameters
from tpc_reco.geometry import PadRowLayout

TWO_PI = 2.0 * math.pi


def make_assignments(
    hit_ids: np.ndarray,
    track_ids: np.ndarray,
    *,
    renumber: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    r"""
    Build a ``hit_id -> track_id`` table, optionally relabelling the tracks.

    With ``renumber=True`` the distinct track labels
    :math:`U=\{u_1,\dots,u_K\}` are replaced by a random permutation
    :math:`\pi` of :math:`\{1,\dots,K\}`:

    .. math::

        t_i' = \pi\bigl(\operatorname{index}_U(t_i)\bigr).

    Equal input labels always receive equal output labels.

    Raises
    ------
    ValueError
        If the inputs are not 1-D arrays of equal length.

    Examples
    --------
    >>> make_assignments(np.array([10, 11, 12]), np.array([0, 0, 3]))
       hit_id  track_id
    0      10         0
    1      11         0
    2      12         3
    """
    hit_ids = np.asarray(hit_ids, dtype=np.int64)
    track_ids = np.asarray(track_ids, dtype=np.int64)
    if hit_ids.ndim != 1 or track_ids.ndim != 1 or hit_ids.shape[0] != track_ids.shape[0]:
        raise ValueError("hit_ids and track_ids must be 1D arrays of the same length.")

    if renumber and track_ids.size:
        rng = np.random.default_rng() if rng is None else rng
        unique_ids, inverse = np.unique(track_ids, return_inverse=True)
        perm = np.arange(1, unique_ids.size + 1, dtype=np.int64)
        rng.shuffle(perm)
        track_ids = perm[inverse]

    return pd.DataFrame({"hit_id": hit_ids, "track_id": track_ids})


def helix_row_crossings(
    params: HelixParameters,
    layout: PadRowLayout,
) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    First crossing of a helix with every pad-row cylinder it reaches.

    For every row the intersection with the smallest arc length
    :math:`s \in [0, 2\pi|r|)` is taken, i.e. the helix is followed from its
    perigee for at most one turn and each row is hit on the way out.

    Returns
    -------
    rows : (M,) int64
        Rows that are reached, ascending.
    s : (M,) float64
        Arc lengths of the crossings.
    """
    r = params.radius
    R = abs(r)
    xc, yc = params.center
    d = math.hypot(xc, yc)
    radii = layout.row_radii()
    if d == 0.0 or not math.isfinite(R):
        return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)

    ux, uy = xc / d, yc / d
    a = (radii * radii - R * R + d * d) / (2.0 * d)
    h2 = radii * radii - a * a
    rows = np.flatnonzero(h2 >= 0.0)
    a, h = a[rows], np.sqrt(h2[rows])

    period = TWO_PI * R
    best = np.full(rows.size, np.inf)
    for sign in (1.0, -1.0):
        cx = a * ux - sign * h * uy
        cy = a * uy + sign * h * ux
        phi = np.arctan2(-(cx - xc) / r, (cy - yc) / r)
        s = np.mod((params.phi0 - phi) * r, period)
        best = np.minimum(best, s)
    return rows.astype(np.int64), best


def make_helix_hits(
    params: HelixParameters,
    layout: PadRowLayout,
    *,
    sigma_rphi: float = 0.1,
    sigma_z: float = 0.5,
    z_limit: float = 2750.0,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    r"""
    Smeared hits of one helix, one per pad row it crosses.

    Every true crossing point is displaced by :math:`\mathcal{N}(0,\sigma_{r\phi}^2)`
    along the azimuthal direction and :math:`\mathcal{N}(0,\sigma_z^2)` in
    :math:`z`, so the pad row of the hit is preserved. Crossings beyond
    ``|z| > z_limit`` are dropped.

    Returns
    -------
    pandas.DataFrame
        Columns ``x, y, z, var_rphi, var_z, layer`` ordered by row.
    """
    rng = np.random.default_rng() if rng is None else rng
    rows, s = helix_row_crossings(params, layout)
    pts = params.position_at(s).reshape(-1, 3)
    keep = np.abs(pts[:, 2]) <= z_limit
    rows, pts = rows[keep], pts[keep]

    phi = np.arctan2(pts[:, 1], pts[:, 0])
    drphi = rng.normal(0.0, sigma_rphi, size=rows.size) if sigma_rphi > 0 else np.zeros(rows.size)
    dz = rng.normal(0.0, sigma_z, size=rows.size) if sigma_z > 0 else np.zeros(rows.size)
    x = pts[:, 0] - drphi * np.sin(phi)
    y = pts[:, 1] + drphi * np.cos(phi)
    z = pts[:, 2] + dz
    return pd.DataFrame({
        "x": x, "y": y, "z": z,
        "var_rphi": np.full(rows.size, max(sigma_rphi, 1e-3) ** 2),
        "var_z": np.full(rows.size, max(sigma_z, 1e-3) ** 2),
        "layer": rows,
    })


def make_toy_event(
    layout: PadRowLayout,
    n_tracks: int = 5,
    *,
    radius_range: Tuple[float, float] = (600.0, 5000.0),
    tanl_range: Tuple[float, float] = (-1.0, 1.0),
    sigma_rphi: float = 0.1,
    sigma_z: float = 0.5,
    noise_hits: int = 0,
    z_limit: float = 2750.0,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[pd.DataFrame, List[HelixParameters]]:
    r"""
    Generate a toy event of helices from the origin plus uniform noise.

    Curvature sign and :math:`\phi_0` are drawn uniformly, :math:`|r|`
    log-uniformly in ``radius_range`` and :math:`\tan\lambda` uniformly in
    ``tanl_range``; all tracks start at the origin (:math:`d_0 = z_0 = 0`).
    Noise hits are uniform in the sensitive volume with ``particle_id = 0``.

    Returns
    -------
    hits : pandas.DataFrame
        ``hit_id, x, y, z, var_rphi, var_z, particle_id`` in random order.
    truth : list[HelixParameters]
        Generated helices; ``truth[k]`` belongs to ``particle_id = k + 1``.
    """
    rng = np.random.default_rng() if rng is None else rng
    frames = []
    truth: List[HelixParameters] = []
    lo, hi = math.log(radius_range[0]), math.log(radius_range[1])
    for k in range(n_tracks):
        radius = math.exp(rng.uniform(lo, hi))
        sign = 1.0 if rng.random() < 0.5 else -1.0
        params = HelixParameters(
            omega=sign / radius,
            phi0=float(rng.uniform(-math.pi, math.pi)),
            d0=0.0,
            z0=0.0,
            tan_lambda=float(rng.uniform(*tanl_range)),
        )
        truth.append(params)
        hits = make_helix_hits(params, layout, sigma_rphi=sigma_rphi, sigma_z=sigma_z, z_limit=z_limit, rng=rng)
        frames.append(hits.drop(columns="layer").assign(particle_id=k + 1))

    if noise_hits > 0:
        radii = layout.row_radii()
        r = radii[rng.integers(0, radii.size, size=noise_hits)]
        phi = rng.uniform(-math.pi, math.pi, size=noise_hits)
        frames.append(pd.DataFrame({
            "x": r * np.cos(phi),
            "y": r * np.sin(phi),
            "z": rng.uniform(-z_limit, z_limit, size=noise_hits),
            "var_rphi": np.full(noise_hits, max(sigma_rphi, 1e-3) ** 2),
            "var_z": np.full(noise_hits, max(sigma_z, 1e-3) ** 2),
            "particle_id": np.zeros(noise_hits, dtype=np.int64),
        }))

    if frames:
        hits = pd.concat(frames, ignore_index=True)
    else:
        hits = pd.DataFrame(columns=["x", "y", "z", "var_rphi", "var_z", "particle_id"])
    hits = shuffle_hits(hits, rng=rng)
    hits.insert(0, "hit_id", np.arange(len(hits), dtype=np.int64))
    return hits.astype({"particle_id": "int64"}), truth


def drop_hits(
    hits: pd.DataFrame,
    probability: float,
    *,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    r"""
    Remove each hit independently with probability :math:`p` (pad inefficiency).

    The expected number of removed hits is :math:`pN`; row order of the
    survivors is preserved.

    Raises
    ------
    ValueError
        If ``probability`` is outside ``[0, 1]``.
    """
    if not (0.0 <= probability <= 1.0):
        raise ValueError("probability must be in [0,1].")
    if hits.empty or probability == 0.0:
        return hits.reset_index(drop=True)
    rng = np.random.default_rng() if rng is None else rng
    keep = rng.random(len(hits)) >= probability
    return hits.loc[keep].reset_index(drop=True)


def shuffle_hits(
    hits: pd.DataFrame,
    *,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Random row permutation of a hit table (reconstruction must not depend on input order)."""
    rng = np.random.default_rng() if rng is None else rng
    perm = rng.permutation(len(hits))
    return hits.iloc[perm].reset_index(drop=True)
