import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from tpc_reco.fitting import HelixParameters
from tpc_reco.hit_pool import Hit, hit_positions
from tpc_reco.pipeline import EventResult, PipelineObserver
from tpc_reco.segments import Segment

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Closing every figure keeps batch runs over many events from accumulating
    memory. ``fig.tight_layout()`` failures are ignored.
    """
    try:
        fig.tight_layout()
    except Exception:
        pass
    if do_show:
        plt.show()
    plt.close(fig)


def _hit_lists(items: Sequence) -> List[Sequence[Hit]]:
    return [list(it.hits) if hasattr(it, "hits") else list(it) for it in items]


def plot_segments_xy(segments: Sequence, *, title: str = "Segments (x-y)", show: bool = True, ax=None):
    r"""
    Scatter the hits of every segment in the transverse plane, one colour per segment.

    Parameters
    ----------
    segments : sequence
        :class:`~tpc_reco.segments.Segment` objects, tracks (anything with
        ``.hits``) or plain hit lists.
    show : bool
        Show and close the figure (ignored when ``ax`` is given).
    ax : matplotlib.axes.Axes, optional
        Draw into an existing axes instead of a new figure.

    Returns
    -------
    matplotlib.axes.Axes
    """
    own = ax is None
    if own:
        fig, ax = plt.subplots(figsize=(9, 9))
    for hits in _hit_lists(segments):
        if not hits:
            continue
        xyz = hit_positions(hits)
        ax.scatter(xyz[:, 0], xyz[:, 1], s=4)
    ax.set_xlabel("x (mm)")
    ax.set_ylabel("y (mm)")
    ax.set_aspect("equal", adjustable="datalim")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    if own:
        _show_and_close(fig, do_show=show)
    return ax


def plot_segments_rz(segments: Sequence, *, title: str = "Segments (z-r)", show: bool = True, ax=None):
    r"""
    Segments in :math:`(z, r)` with :math:`r=\sqrt{x^2+y^2}`; see :func:`plot_segments_xy`.
    """
    own = ax is None
    if own:
        fig, ax = plt.subplots(figsize=(12, 6))
    for hits in _hit_lists(segments):
        if not hits:
            continue
        xyz = hit_positions(hits)
        ax.scatter(xyz[:, 2], np.hypot(xyz[:, 0], xyz[:, 1]), s=4)
    ax.set_xlabel("z (mm)")
    ax.set_ylabel("r (mm)")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    if own:
        _show_and_close(fig, do_show=show)
    return ax


def plot_helices_xy(params: Sequence[HelixParameters], *, ax, n_points: int = 200) -> None:
    """Overlay fitted circles on an x-y axes."""
    t = np.linspace(0.0, 2.0 * np.pi, n_points)
    for p in params:
        r = abs(p.radius)
        if not np.isfinite(r):
            continue
        xc, yc = p.center
        ax.plot(xc + r * np.cos(t), yc + r * np.sin(t), linewidth=0.6, alpha=0.5)


def plot_timing_summary(timings: Mapping[str, float], *, title: str = "Stage timing", show: bool = True) -> None:
    r"""
    Horizontal bar chart of per-stage wall-clock times (seconds).

    Non-finite or non-positive entries are skipped; bars are sorted longest first.
    """
    items = sorted(((k, float(v)) for k, v in timings.items() if np.isfinite(v) and v > 0.0),
                   key=lambda kv: kv[1], reverse=True)
    if not items:
        return
    labels, secs = zip(*items)
    fig, ax = plt.subplots(figsize=(8, max(3.0, 0.5 * len(labels) + 1.0)))
    y = np.arange(len(labels))
    ax.barh(y, np.asarray(secs) * 1e3)
    ax.set_yticks(y)
    ax.set_yticklabels(labels)
    ax.invert_yaxis()
    ax.set_xlabel("time (ms)")
    ax.set_title(title)
    _show_and_close(fig, do_show=show)


class PlottingObserver(PipelineObserver):
    r"""
    Matplotlib implementation of the pipeline hooks.

    Segments of the selected stages are drawn in :math:`x\text{-}y` and
    :math:`z\text{-}r`; the final tracks are drawn with their fitted circles.

    Parameters
    ----------
    stages : sequence of str
        Segment stages to draw (``"clustered"``, ``"repaired"``, ``"reconciled"``).
    show : bool
        Call ``plt.show()``; ``False`` only builds and closes the figures.
    max_events : int or None
        Stop plotting after this many events.
    """

    def __init__(self, stages: Sequence[str] = ("clustered", "reconciled"), *, show: bool = True,
                 max_events: Optional[int] = None) -> None:
        self.stages = tuple(stages)
        self.show = show
        self.max_events = max_events
        self.n_plotted = 0
        self.figures: Dict[str, int] = {}

    def _active(self) -> bool:
        return self.max_events is None or self.n_plotted < self.max_events

    def on_segments(self, stage: str, segments: Sequence[Segment]) -> None:
        if stage not in self.stages or not self._active():
            return
        fig, (ax0, ax1) = plt.subplots(1, 2, figsize=(16, 7))
        plot_segments_xy(segments, title=f"{stage}: {len(segments)} segments (x-y)", ax=ax0)
        plot_segments_rz(segments, title=f"{stage} (z-r)", ax=ax1)
        self.figures[stage] = self.figures.get(stage, 0) + 1
        _show_and_close(fig, do_show=self.show)

    def on_tracks(self, stage: str, tracks: Sequence) -> None:
        if stage != "merged" or not self._active():
            return
        fig, ax = plt.subplots(figsize=(9, 9))
        plot_segments_xy(tracks, title=f"{len(tracks)} tracks", ax=ax)
        plot_helices_xy([t.params for t in tracks], ax=ax)
        self.figures[stage] = self.figures.get(stage, 0) + 1
        _show_and_close(fig, do_show=self.show)

    def on_event(self, result: EventResult) -> None:
        if self._active():
            logger.debug("Plotted event %d", result.event_number)
        self.n_plotted += 1
