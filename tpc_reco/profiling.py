from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Union

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
    "file": pstats.SortKey.FILENAME,
    "line": pstats.SortKey.LINE,
}


def _resolve_sort_key(sort: Union[str, pstats.SortKey]) -> pstats.SortKey:
    """Map a string alias (``"tottime"``, ``"cumtime"``, ...) to a :class:`pstats.SortKey`."""
    if isinstance(sort, pstats.SortKey):
        return sort
    return _SORT_KEYS.get(str(sort).lower(), pstats.SortKey.TIME)


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    dump_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Iterator[Optional[cProfile.Profile]]:
    r"""
    Optional :mod:`cProfile` section around a block of reconstruction code.

    Parameters
    ----------
    enable : bool, default: False
        If ``False`` the context is a no-op and yields ``None``.
    sort : str or pstats.SortKey, default: ``"tottime"``
        Sort criterion of the text report.
    limit : int or None, default: 25
        Rows in the text report (``None`` for all).
    out_path : str or None
        Write the text report to this file instead of logging/printing it.
    dump_path : str or None
        Also write binary ``.pstats`` data (for snakeviz, gprof2dot, ...).
    logger : logging.Logger or None
        Emit the report through ``logger.info`` when ``out_path`` is not set.

    Examples
    --------
    >>> with prof(True, sort="cumtime", out_path="prof.txt"):
    ...     finder.process_event(hits)
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        elapsed = time.perf_counter() - t0

        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s).strip_dirs().sort_stats(_resolve_sort_key(sort))
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n" + s.getvalue()

        if dump_path:
            ps.dump_stats(dump_path)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")


class StageTimer:
    r"""
    Wall-clock accumulator for named pipeline stages.

    >>> timer = StageTimer()
    >>> with timer("cluster"):
    ...     pass
    >>> sorted(timer.timings)
    ['cluster']

    Re-entering a stage adds to its total.
    """

    __slots__ = ("timings",)

    def __init__(self) -> None:
        self.timings: Dict[str, float] = {}

    @contextmanager
    def __call__(self, stage: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.timings[stage] = self.timings.get(stage, 0.0) + (time.perf_counter() - t0)

    @property
    def total(self) -> float:
        return sum(self.timings.values())

    def summary(self) -> str:
        parts = ", ".join(f"{k}={v * 1e3:.1f}ms" for k, v in self.timings.items())
        return f"total={self.total * 1e3:.1f}ms ({parts})" if parts else "total=0.0ms"
