#!/usr/bin/env python3
r"""
TPC track finder runner (headless-safe).

Reads one event per CSV file (or generates toy helix events), runs the
nearest-neighbour segment finder and logs per-event summaries. When the input
carries a ``particle_id`` column, truth-based quality checks are logged too.

Typical usage:

.. code-block:: bash

   tpc-reco -f events/ -n 10 --config config.json
   tpc-reco --toy 3 --n-tracks 20 --seed 1 --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from glob import glob
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

import numpy as np
import pandas as pd

import tpc_reco.data as tpc_data
import tpc_reco.metrics as tpc_metrics
from tpc_reco.config import load_config
from tpc_reco.geometry import UniformPadRowLayout
from tpc_reco.pipeline import PipelineObserver, TrackFinder
from tpc_reco.profiling import prof
from tpc_reco.utils import make_toy_event


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Key options:

    - ``--file``: CSV event, directory of CSVs or glob.
    - ``--toy``: generate this many toy events instead of reading files.
    - ``--r-inner/--r-outer/--n-rows``: uniform pad-row geometry.
    - ``--plot``: draw segments and tracks of each event.
    - ``--profile``: cProfile around the reconstruction loop.
    """
    p = argparse.ArgumentParser(description="Run the TPC nearest-neighbour track finder on event(s).")
    p.add_argument("-f", "--file", type=str, default=None,
                   help="Hit CSV (one event), a directory containing *.csv, or a glob (e.g. data/event_*.csv).")
    p.add_argument("-n", "--n-events", type=int, default=1,
                   help=("Number of events to run. For a directory or glob take the first N matches "
                         "(natural order); for a single file continue through its siblings. Default: 1."))
    p.add_argument("--config", type=str, default="config.json",
                   help="JSON config with a 'track_finder' block (default: config.json; missing file = defaults).")
    p.add_argument("--toy", type=int, default=0,
                   help="Generate this many toy events instead of reading --file.")
    p.add_argument("--n-tracks", type=int, default=10,
                   help="Helices per toy event (default: 10).")
    p.add_argument("--noise", type=int, default=0,
                   help="Uniform noise hits per toy event (default: 0).")
    p.add_argument("--seed", type=int, default=None,
                   help="Random seed for toy events.")
    p.add_argument("--r-inner", type=float, default=390.0, help="Inner radius of the pad plane in mm.")
    p.add_argument("--r-outer", type=float, default=1740.0, help="Outer radius of the pad plane in mm.")
    p.add_argument("--n-rows", type=int, default=224, help="Number of pad rows.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show segment/track plots (default: False).")
    p.add_argument("--no-plot", dest="plot", action="store_false",
                   help="Disable plotting.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the reconstruction loop.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps;
    ``verbose`` selects ``DEBUG`` instead of ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend when plotting is disabled.

    Must run before :mod:`matplotlib.pyplot` is imported anywhere.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def _natural_key(path: Path):
    """Natural sort key (split digits) so event_2 comes before event_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str, n_events: int) -> List[Path]:
    """
    Turn --file into a list of up to n_events .csv paths.

    Supports a single file, a directory (``*.csv`` inside) and glob patterns.
    For a single file with n_events>1 the following siblings are taken too.
    """
    n = max(1, int(n_events))
    p = Path(file_arg)

    if any(ch in file_arg for ch in "*?[]"):
        return sorted((Path(x) for x in glob(file_arg)), key=_natural_key)[:n]

    if p.is_dir():
        return sorted(p.glob("*.csv"), key=_natural_key)[:n]

    if p.is_file():
        sibs = sorted(p.parent.glob("*.csv"), key=_natural_key)
        if p in sibs:
            i = sibs.index(p)
            return sibs[i:i + n]
        return [p]
    return [p]


def _iter_events(args, layout) -> Iterator[Tuple[str, Dict[str, pd.DataFrame]]]:
    if args.toy > 0:
        rng = np.random.default_rng(args.seed)
        for k in range(args.toy):
            hits, _ = make_toy_event(layout, args.n_tracks, noise_hits=args.noise, rng=rng)
            yield f"toy_{k}", {"toy": hits}
        return

    if args.file is None:
        raise SystemExit("Either --file or --toy is required.")
    paths = _resolve_event_paths(args.file, args.n_events)
    if not paths:
        raise FileNotFoundError(f"No events found for --file={args.file}")
    for path in paths:
        yield path.name, {path.stem: tpc_data.read_event_csv(path)}


def _log_truth_checks(name: str, result, collections) -> None:
    frames = [f for f in collections.values() if isinstance(f, pd.DataFrame) and "particle_id" in f.columns]
    if not frames:
        return
    truth = pd.concat(frames, ignore_index=True)[["hit_id", "particle_id"]]
    summary = tpc_metrics.summarize_event(result.assignments(), truth, result.merged_tracks)
    logging.info(
        "Event %s truth: %d particles | efficiency=%.1f%% | mean purity=%.3f | impure=%d | split=%d | dup-row=%d",
        name, summary["n_particles"], 100.0 * summary["hit_efficiency"], summary["mean_purity"],
        summary["n_impure"], summary["n_split_particles"], summary["n_duplicate_row_tracks"],
    )


def main() -> None:
    r"""
    End-to-end runner: **config → events → reconstruct → summarize**.

    1. Parse CLI (:func:`build_parser`), set up logging (:func:`setup_logging`).
    2. Enforce headless plotting unless ``--plot`` (:func:`apply_plotting_guard`).
    3. Load the finder configuration (:func:`tpc_reco.config.load_config`).
    4. Reconstruct every event; a failing event is logged and skipped.
    5. Log per-event and aggregate summaries.
    """
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg_path = Path(args.config)
    if cfg_path.is_file():
        logging.info("Reading config from %s", cfg_path)
    else:
        logging.info("No config at %s; using defaults", cfg_path)
    config = load_config(cfg_path)

    layout = UniformPadRowLayout(args.r_inner, args.r_outer, args.n_rows)
    observer: PipelineObserver | None = None
    if args.plot:
        import tpc_reco.plotting as tpc_plot  # noqa: WPS433
        observer = tpc_plot.PlottingObserver(max_events=1)

    finder = TrackFinder(layout, config, observer=observer)

    n_failed = 0
    with prof(args.profile, out_path=args.profile_out):
        for name, collections in _iter_events(args, layout):
            logging.info("=== Event %d: %s ===", finder.n_events, name)
            try:
                result = finder.process_event(collections)
            except Exception:
                n_failed += 1
                logging.exception("Event %s failed; skipping it", name)
                continue
            for coll, err in result.errors.items():
                logging.warning("Event %s: collection %s skipped (%s)", name, coll, err)
            _log_truth_checks(name, result, collections)

    logging.info("Processed %d events, %d tracks in total (%d events failed)",
                 finder.n_events, finder.n_tracks, n_failed)


if __name__ == "__main__":
    main()
