"""Per-frame timing of an :class:`~lensremap.UndistortFilter` (no optional deps)."""

from __future__ import annotations

import gc
import sys
import time
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass

import numpy as np

from lensremap import FlowReturn, FrameBuffer, UndistortFilter


def _iter_with_progress(n: int, *, desc: str) -> Iterable[int]:
    """Iterate ``range(n)``, with a tqdm bar when tqdm is installed."""
    try:
        from tqdm import tqdm  # type: ignore[import-not-found]
    except ImportError:
        return range(n)
    return tqdm(range(n), desc=desc, leave=False, dynamic_ncols=True)


@dataclass(frozen=True)
class FrameTimings:
    total_s: float
    mean_ms: float
    min_ms: float
    max_ms: float
    p50_ms: float
    p95_ms: float
    fps: float

    @classmethod
    def from_samples(cls, samples_s: np.ndarray) -> FrameTimings:
        samples_ms = samples_s * 1000.0
        total_s = float(np.sum(samples_s))
        return cls(
            total_s=total_s,
            mean_ms=float(np.mean(samples_ms)),
            min_ms=float(np.min(samples_ms)),
            max_ms=float(np.max(samples_ms)),
            p50_ms=float(np.percentile(samples_ms, 50)),
            p95_ms=float(np.percentile(samples_ms, 95)),
            fps=float(samples_s.size / total_s) if total_s > 0 else float("inf"),
        )


def peak_rss_mb() -> float | None:
    """Peak resident set size of this process in MiB, if the platform reports it."""
    try:
        import resource  # pylint: disable=import-outside-toplevel
    except ImportError:
        return None
    maxrss = int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    if maxrss <= 0:
        return None
    # Linux reports KiB, macOS bytes.
    nbytes = maxrss if sys.platform == "darwin" else maxrss * 1024
    return nbytes / (1024 * 1024)


def benchmark_filter(
    filt: UndistortFilter,
    frames: Sequence[FrameBuffer],
    *,
    iterations: int,
    warmup: int,
    progress_desc: str = "frames",
) -> dict[str, object]:
    """Time ``transform_frame_ip`` over `frames`, cycling through them.

    The filter must already be negotiated for the geometry of `frames`.
    Frames are corrected in place, so later iterations see already
    corrected content; that does not change the work done per frame.

    """
    if iterations <= 0:
        raise ValueError("iterations must be > 0")
    if warmup < 0:
        raise ValueError("warmup must be >= 0")

    gc.collect()
    allocations_before = filt.buffers.allocation_count

    for idx in range(warmup):
        filt.transform_frame_ip(frames[idx % len(frames)])

    samples = np.empty(iterations, dtype=np.float64)
    statuses: dict[str, int] = {}
    for idx in _iter_with_progress(iterations, desc=progress_desc):
        frame = frames[idx % len(frames)]
        start = time.perf_counter()
        status = filt.transform_frame_ip(frame)
        samples[idx] = time.perf_counter() - start
        statuses[status.value] = statuses.get(status.value, 0) + 1

    result: dict[str, object] = asdict(FrameTimings.from_samples(samples))
    result.update(
        {
            "iterations": int(iterations),
            "warmup": int(warmup),
            "statuses": statuses,
            "all_ok": statuses.get(FlowReturn.OK.value, 0) == iterations,
            "allocations_during_run": filt.buffers.allocation_count - allocations_before,
            "bypass": filt.bypass,
            "peak_rss_mb": peak_rss_mb(),
        }
    )
    return result
