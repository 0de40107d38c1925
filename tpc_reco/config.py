from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import orjson as _orjson
except Exception:  # pragma: no cover
    _orjson = None


class FitOrder(Enum):
    """Hit traversal order handed to the fit engine."""
    OUTGOING = "outgoing"   # ascending pad row (inner -> outer)
    INCOMING = "incoming"   # descending pad row (outer -> inner)


class AssignmentStrategy(Enum):
    """How leftover hits are matched to fitted segments."""
    BEST_HIT = "best_hit"       # best matching hit for every track crossing point
    BEST_TRACK = "best_track"   # best matching track for every leftover hit


CONFIG_BLOCK_KEY = "track_finder"


@dataclass(slots=True)
class TrackFinderConfig:
    r"""
    Steering parameters of the segment finder.

    Lengths are in the units of the input hits (millimetres for the default
    geometry), curvatures in inverse length.

    Attributes
    ----------
    distance_cut : float
        Nearest-neighbour merge distance for the initial clustering.
    min_cluster_size : int
        Groups with fewer hits are dissolved after every clustering pass.
    duplicate_row_fraction : float
        A segment is contaminated if more than this fraction of its hits share
        a pad row with another hit of the same segment.
    r_cut, z_gate_margin : float
        Radial gate. Hits with :math:`\rho \le r_{cut}` and
        :math:`|z| \le z_{margin} + r_{cut}` are not clustered; they only enter
        the leftover pool.
    recluster_distance_cut : float
        Merge distance used when contaminated segments are reclustered.
    rows_for_splitting : int
        Width (in pad rows) of the row ranges used by the repair loop.
    split_passes : int
        Number of repair passes.
    split_shift : float
        Fractional shift of the row-range boundaries between passes.
    rejoin_split_segments : bool
        Merge touching split pieces again when the union stays clean.
    n_z_bins, z_min, z_max
        Longitudinal binning of the search window.
    fit_order : str
        ``"outgoing"`` or ``"incoming"``; see :class:`FitOrder`.
    reverse_margin : float
        :math:`|z|` margin of the curler reversal heuristic.
    min_fit_hits : int
        Segments with fewer hits are not handed to the fit engine.
    assignment_strategy : str
        ``"best_hit"`` or ``"best_track"``; see :class:`AssignmentStrategy`.
    include_segment_endpoints : bool
        Add first/last hit of each segment to the leftover pool so that
        collisions with other segments are detected.
    leftover_chi2_cut : float or None
        Fixed :math:`\chi^2` cut for leftover hits. ``None`` selects the
        curvature dependent cut

        .. math::

            \chi^2_{cut}(\omega) = \min\Bigl(c_{max},\;
            c_0\,\bigl[1 + \ln\max(\omega_{p}/|\omega|,\,1)\bigr]\Bigr).

    chi2_cut_base, chi2_cut_max, omega_pivot : float
        :math:`c_0`, :math:`c_{max}` and :math:`\omega_p` above.
    compat_chi2_max : float
        Per-hit :math:`\chi^2` below which a hit of another segment counts as
        compatible with the current track.
    merge_good_fraction : float
        Compatible fraction above which two segments are merged.
    best_track_max_distance : float
        Outlier cut of the best-track strategy.
    merge_segments : bool
        Run the helix-parameter segment merger.
    helix_radius_tolerance, helix_tanl_tolerance, helix_distance_tolerance : float
        Tolerances of :class:`tpc_reco.predicates.HelixDistance`.
    """
    distance_cut: float = 40.0
    min_cluster_size: int = 3
    duplicate_row_fraction: float = 0.01
    r_cut: float = 0.0
    z_gate_margin: float = 500.0
    recluster_distance_cut: float = 20.0
    rows_for_splitting: int = 10
    split_passes: int = 2
    split_shift: float = 0.5
    rejoin_split_segments: bool = True
    n_z_bins: int = 200
    z_min: float = -2750.0
    z_max: float = 2750.0
    fit_order: str = FitOrder.OUTGOING.value
    reverse_margin: float = 3.0
    min_fit_hits: int = 3
    assignment_strategy: str = AssignmentStrategy.BEST_HIT.value
    include_segment_endpoints: bool = True
    leftover_chi2_cut: Optional[float] = None
    chi2_cut_base: float = 20.0
    chi2_cut_max: float = 200.0
    omega_pivot: float = 1.0 / 300.0
    compat_chi2_max: float = 10.0
    merge_good_fraction: float = 0.5
    best_track_max_distance: float = 3.0
    merge_segments: bool = True
    helix_radius_tolerance: float = 0.1
    helix_tanl_tolerance: float = 0.2
    helix_distance_tolerance: float = 0.1

    @property
    def order(self) -> FitOrder:
        return FitOrder(self.fit_order)

    @property
    def strategy(self) -> AssignmentStrategy:
        return AssignmentStrategy(self.assignment_strategy)

    def validate(self) -> "TrackFinderConfig":
        r"""
        Check value ranges.

        Returns
        -------
        TrackFinderConfig
            ``self``, to allow chaining.

        Raises
        ------
        ValueError
            If any parameter is out of range or an enum value is unknown.
        """
        positive = ("distance_cut", "recluster_distance_cut", "chi2_cut_base",
                    "chi2_cut_max", "omega_pivot", "compat_chi2_max")
        for name in positive:
            if not float(getattr(self, name)) > 0.0:
                raise ValueError(f"{name} must be > 0 (got {getattr(self, name)!r}).")
        if self.min_cluster_size < 1:
            raise ValueError("min_cluster_size must be >= 1.")
        if self.min_fit_hits < 3:
            raise ValueError("min_fit_hits must be >= 3 (a helix has five parameters).")
        if not 0.0 <= self.duplicate_row_fraction < 1.0:
            raise ValueError("duplicate_row_fraction must be in [0, 1).")
        if not 0.0 <= self.merge_good_fraction < 1.0:
            raise ValueError("merge_good_fraction must be in [0, 1).")
        if self.rows_for_splitting < 1:
            raise ValueError("rows_for_splitting must be >= 1.")
        if self.split_passes < 0:
            raise ValueError("split_passes must be >= 0.")
        if self.n_z_bins < 1 or not self.z_max > self.z_min:
            raise ValueError("z binning needs n_z_bins >= 1 and z_max > z_min.")
        if self.r_cut < 0.0 or self.reverse_margin < 0.0:
            raise ValueError("r_cut and reverse_margin must be >= 0.")
        if self.leftover_chi2_cut is not None and not self.leftover_chi2_cut > 0.0:
            raise ValueError("leftover_chi2_cut must be > 0 or None.")
        # raise ValueError on unknown enum values
        _ = self.order, self.strategy
        return self

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "TrackFinderConfig":
        r"""
        Build a validated config from a flat mapping or a ``"track_finder"`` block.

        Raises
        ------
        KeyError
            On keys that are not configuration fields.
        ValueError
            On out-of-range values (see :meth:`validate`).
        """
        block = cfg.get(CONFIG_BLOCK_KEY, cfg)
        if not isinstance(block, Mapping):
            raise ValueError(f"'{CONFIG_BLOCK_KEY}' must be a JSON object.")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(block) - known)
        if unknown:
            raise KeyError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**dict(block)).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_path: Path | str | None) -> TrackFinderConfig:
    r"""
    Load a JSON configuration with optional :mod:`orjson` acceleration.

    Parameters
    ----------
    config_path : pathlib.Path, str or None
        Path to the JSON file. ``None`` or a missing file yields the defaults.

    Returns
    -------
    TrackFinderConfig

    Raises
    ------
    ValueError
        If the file cannot be parsed or holds invalid values.
    KeyError
        If the file holds unknown keys.
    """
    if config_path is None:
        return TrackFinderConfig()
    path = Path(config_path)
    if not path.is_file():
        return TrackFinderConfig()
    try:
        if _orjson is not None:
            raw = _orjson.loads(path.read_bytes())
        else:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
    except Exception as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(raw, Mapping):
        raise ValueError(f"{path} must contain a JSON object.")
    return TrackFinderConfig.from_mapping(raw)
