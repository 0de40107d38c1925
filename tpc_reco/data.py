from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Mapping, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: Sequence[str] = ("hit_id", "x", "y", "z")
VARIANCE_COLUMNS: Sequence[str] = ("var_rphi", "var_z")

DEFAULT_VAR_RPHI = 0.01
DEFAULT_VAR_Z = 0.25


def validate_hits(frame: pd.DataFrame) -> pd.DataFrame:
    r"""
    Check a hit table and bring it into the canonical column layout.

    Parameters
    ----------
    frame : :class:`pandas.DataFrame`
        Must hold ``hit_id, x, y, z``. Position variances are taken from
        ``var_rphi, var_z`` if present; otherwise they are derived from a
        covariance layout ``cov_xx, cov_yy, cov_zz`` as

        .. math::

            \sigma^2_{r\phi} = \mathrm{cov}_{xx} + \mathrm{cov}_{yy}, \qquad
            \sigma^2_z = \mathrm{cov}_{zz}.

        Without either, the defaults ``var_rphi=0.01`` and ``var_z=0.25``
        (:math:`\sigma_{r\phi} = 0.1`, :math:`\sigma_z = 0.5`) are used and a
        warning is logged.

    Returns
    -------
    :class:`pandas.DataFrame`
        A copy with float64 ``x, y, z, var_rphi, var_z`` and int64 ``hit_id``;
        extra columns are kept.

    Raises
    ------
    KeyError
        If a required column is missing.
    ValueError
        If positions are not finite, variances are not strictly positive,
        or ``hit_id`` is not unique.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise KeyError(f"Hit table is missing columns: {', '.join(missing)}")

    out = frame.copy()
    out = out.astype({"hit_id": "int64", "x": "float64", "y": "float64", "z": "float64"})

    if not all(c in out.columns for c in VARIANCE_COLUMNS):
        if all(c in out.columns for c in ("cov_xx", "cov_yy", "cov_zz")):
            out["var_rphi"] = out["cov_xx"].astype("float64") + out["cov_yy"].astype("float64")
            out["var_z"] = out["cov_zz"].astype("float64")
        else:
            logger.warning("No hit variances given; using var_rphi=%g, var_z=%g",
                           DEFAULT_VAR_RPHI, DEFAULT_VAR_Z)
            out["var_rphi"] = DEFAULT_VAR_RPHI
            out["var_z"] = DEFAULT_VAR_Z
    out = out.astype({"var_rphi": "float64", "var_z": "float64"})

    xyz = out[["x", "y", "z"]].to_numpy(copy=False)
    if not np.isfinite(xyz).all():
        raise ValueError("Hit positions must be finite.")
    var = out[list(VARIANCE_COLUMNS)].to_numpy(copy=False)
    if not (np.isfinite(var).all() and (var > 0.0).all()):
        raise ValueError("Hit variances must be finite and > 0.")
    if out["hit_id"].duplicated().any():
        raise ValueError("hit_id values must be unique within an event.")
    return out.reset_index(drop=True)


def read_event_csv(path: str | Path) -> pd.DataFrame:
    r"""
    Read one event from a CSV file.

    Validation is left to the consumer (:func:`merge_collections`) so that a
    malformed file is reported per collection. Plain ``x,y,z`` dumps without a
    ``hit_id`` column get hits numbered by row.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    """
    path = Path(path)
    frame = pd.read_csv(path)
    if "hit_id" not in frame.columns:
        frame.insert(0, "hit_id", np.arange(len(frame), dtype=np.int64))
    logger.info("Read %d hits from %s", len(frame), path.name)
    return frame


def merge_collections(collections: Mapping[str, pd.DataFrame]) -> tuple[pd.DataFrame, Dict[str, str]]:
    r"""
    Validate and concatenate named hit collections into one event table.

    A collection that fails validation is skipped; its error message is
    returned so the caller can report it. The concatenated table gets a
    ``collection`` column naming the source of each hit.

    Returns
    -------
    hits : :class:`pandas.DataFrame`
        Validated hits of all good collections (possibly empty).
    errors : dict[str, str]
        ``collection name -> error message`` for skipped collections.
    """
    parts = []
    errors: Dict[str, str] = {}
    for name, frame in collections.items():
        if frame is None:
            errors[name] = "collection is missing"
            logger.error("Hit collection %r is missing; skipping it", name)
            continue
        try:
            part = validate_hits(frame)
        except (KeyError, ValueError) as e:
            errors[name] = str(e)
            logger.error("Hit collection %r is malformed (%s); skipping it", name, e)
            continue
        parts.append(part.assign(collection=name))

    if not parts:
        empty = pd.DataFrame({
            "hit_id": pd.Series(dtype="int64"),
            "x": pd.Series(dtype="float64"),
            "y": pd.Series(dtype="float64"),
            "z": pd.Series(dtype="float64"),
            "var_rphi": pd.Series(dtype="float64"),
            "var_z": pd.Series(dtype="float64"),
            "collection": pd.Series(dtype="object"),
        })
        return empty, errors

    hits = pd.concat(parts, ignore_index=True, sort=False)
    if hits["hit_id"].duplicated().any():
        # hit ids only have to be unique per collection; renumber the merged table
        logger.warning("hit_id clashes between collections; renumbering merged hits")
        hits = hits.assign(source_hit_id=hits["hit_id"], hit_id=np.arange(len(hits), dtype=np.int64))
    return hits, errors
