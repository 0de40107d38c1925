from __future__ import annotations

from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from tpc_reco.splitting import DuplicatePadRows


def _with_truth(assignments: pd.DataFrame, truth: pd.DataFrame) -> pd.DataFrame:
    r"""
    Join a ``hit_id -> track_id`` table with ``hit_id -> particle_id`` truth.

    Raises
    ------
    KeyError
        If a required column is missing.
    """
    if not {"hit_id", "track_id"} <= set(assignments.columns):
        raise KeyError("assignments must contain 'hit_id' and 'track_id' columns.")
    if not {"hit_id", "particle_id"} <= set(truth.columns):
        raise KeyError("truth must contain 'hit_id' and 'particle_id' columns.")
    return assignments[["hit_id", "track_id"]].merge(
        truth[["hit_id", "particle_id"]], on="hit_id", how="inner", sort=False
    )


def duplicate_row_tracks(tracks: Sequence, fraction: float = 0.01) -> List[int]:
    """Indices of tracks (anything with ``.hits``) whose hits repeat pad rows above ``fraction``."""
    detector = DuplicatePadRows(fraction)
    return [i for i, t in enumerate(tracks) if detector(list(t.hits))]


def track_purity(assignments: pd.DataFrame, truth: pd.DataFrame) -> pd.DataFrame:
    r"""
    Per-track purity against Monte Carlo truth.

    .. math::

        \text{purity}(t) = \frac{\max_p n_{t,p}}{\sum_p n_{t,p}},

    where :math:`n_{t,p}` counts hits of particle :math:`p` on track :math:`t`.

    Returns
    -------
    pandas.DataFrame
        ``track_id, n_hits, major_particle, major_hits, purity`` sorted by
        ``track_id``.
    """
    df = _with_truth(assignments, truth)
    if df.empty:
        return pd.DataFrame(columns=["track_id", "n_hits", "major_particle", "major_hits", "purity"])
    counts = df.groupby(["track_id", "particle_id"]).size().rename("n").reset_index()
    counts = counts.sort_values(["track_id", "n", "particle_id"], ascending=[True, False, True])
    major = counts.drop_duplicates("track_id").set_index("track_id")
    n_hits = counts.groupby("track_id")["n"].sum()
    out = pd.DataFrame({
        "n_hits": n_hits,
        "major_particle": major["particle_id"],
        "major_hits": major["n"],
    })
    out["purity"] = out["major_hits"] / out["n_hits"]
    out.index.name = "track_id"
    return out.reset_index()


def find_impure_tracks(assignments: pd.DataFrame, truth: pd.DataFrame, min_purity: float = 0.99) -> List[int]:
    """Track ids whose majority particle owns less than ``min_purity`` of the hits."""
    pur = track_purity(assignments, truth)
    return pur.loc[pur["purity"] < min_purity, "track_id"].astype(int).tolist()


def find_split_tracks(
    assignments: pd.DataFrame,
    truth: pd.DataFrame,
    share_range: Tuple[float, float] = (0.03, 0.95),
) -> Dict[int, List[int]]:
    r"""
    Particles whose reconstructed hits are spread over several tracks.

    For a particle :math:`p` seen on more than one track, the share of track
    :math:`t` is :math:`n_{t,p} / \sum_{t'} n_{t',p}`. A track with a share
    strictly inside ``share_range`` counts as a split piece of :math:`p`.
    Noise (``particle_id == 0``) is ignored.

    Returns
    -------
    dict[int, list[int]]
        ``particle_id -> track ids`` of the split pieces (only non-empty lists).
    """
    lo, hi = share_range
    df = _with_truth(assignments, truth)
    df = df[df["particle_id"] != 0]
    if df.empty:
        return {}
    counts = df.groupby(["particle_id", "track_id"]).size().rename("n").reset_index()
    counts["share"] = counts["n"] / counts.groupby("particle_id")["n"].transform("sum")
    multi = counts.groupby("particle_id")["track_id"].transform("nunique") > 1
    split = counts[multi & (counts["share"] > lo) & (counts["share"] < hi)]
    return {int(pid): sorted(int(t) for t in g["track_id"]) for pid, g in split.groupby("particle_id")}


def hit_efficiency(assignments: pd.DataFrame, truth: pd.DataFrame) -> float:
    """Fraction of non-noise truth hits that ended up on any track."""
    signal = truth.loc[truth["particle_id"] != 0, "hit_id"]
    if signal.empty:
        return 0.0
    return float(np.isin(signal.to_numpy(), assignments["hit_id"].to_numpy()).mean())


def summarize_event(
    assignments: pd.DataFrame,
    truth: pd.DataFrame,
    tracks: Sequence = (),
    *,
    min_purity: float = 0.99,
    duplicate_fraction: float = 0.01,
) -> Mapping[str, float]:
    r"""
    Collect the truth checks of one event into a flat dict.

    Keys: ``n_tracks``, ``n_particles``, ``hit_efficiency``, ``mean_purity``,
    ``n_impure``, ``n_split_particles``, ``n_duplicate_row_tracks``.
    """
    pur = track_purity(assignments, truth)
    n_particles = int(truth.loc[truth["particle_id"] != 0, "particle_id"].nunique())
    return {
        "n_tracks": int(assignments["track_id"].nunique()) if not assignments.empty else 0,
        "n_particles": n_particles,
        "hit_efficiency": hit_efficiency(assignments, truth),
        "mean_purity": float(pur["purity"].mean()) if not pur.empty else float("nan"),
        "n_impure": len(find_impure_tracks(assignments, truth, min_purity)),
        "n_split_particles": len(find_split_tracks(assignments, truth)),
        "n_duplicate_row_tracks": len(duplicate_row_tracks(tracks, duplicate_fraction)),
    }
