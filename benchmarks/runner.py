#!/usr/bin/env python3
"""lensremap benchmark runner.

Run from the repository root:
    python -m benchmarks.runner --platform cpu
"""

from __future__ import annotations

import argparse
import datetime as _dt
import json
import logging
import platform as _platform
from pathlib import Path
from typing import Any

import cv2
import numpy as np

import lensremap
from benchmarks.config import BENCHMARK_CONFIGS, CASES
from benchmarks.platforms import cpu, nvidia_cuda
from lensremap import FrameBuffer, UndistortFilter, VideoInfo

_LOGGER = logging.getLogger(__name__)


def _system_info(platform_name: str) -> dict[str, object]:
    info: dict[str, object] = {
        "platform": _platform.system(),
        "platform_release": _platform.release(),
        "architecture": _platform.machine(),
        "processor": _platform.processor(),
        "python_version": _platform.python_version(),
        "numpy_version": np.__version__,
        "opencv_version": cv2.__version__,
        "lensremap_version": lensremap.__version__,
        "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
    }
    if platform_name == "nvidia":
        info.update(nvidia_cuda.extra_system_info())
    return info


def _config_key(cfg: tuple[int, int, str]) -> str:
    width, height, fmt = cfg
    return f"{width}x{height}_{fmt}"


def _generate_frames(cfg: tuple[int, int, str], *, count: int, seed: int) -> list[FrameBuffer]:
    width, height, fmt = cfg
    info = VideoInfo(width, height, fmt)
    nbytes = sum(rows * row_bytes for rows, row_bytes in info.plane_shapes())
    rng = np.random.default_rng(seed)
    return [
        FrameBuffer.wrap(rng.integers(0, 256, size=nbytes, dtype=np.uint8), info)
        for _ in range(count)
    ]


def _run_case(
    case_name: str,
    cfg: tuple[int, int, str],
    *,
    iterations: int,
    warmup: int,
    seed: int,
) -> dict[str, Any]:
    width, height, _ = cfg
    frames = _generate_frames(cfg, count=4, seed=seed)
    with UndistortFilter(CASES[case_name](width, height)) as filt:
        if not filt.set_info(frames[0].info):
            return {"error": "set_info failed, see log"}
        return cpu.benchmark_filter(
            filt,
            frames,
            iterations=iterations,
            warmup=warmup,
            progress_desc=f"{case_name} {_config_key(cfg)}",
        )


def run_benchmarks(
    *,
    platform_name: str,
    output_dir: Path,
    iterations: int,
    warmup: int,
    seed: int,
    case_filter: set[str] | None,
    config_filter: set[str] | None,
    fail_fast: bool,
    label: str | None,
) -> dict[str, Any]:
    results: dict[str, Any] = {
        "system_info": _system_info(platform_name),
        "platform": platform_name,
        "label": label or platform_name,
        "params": {"iterations": iterations, "warmup": warmup, "seed": seed},
        "benchmarks": {},
    }

    case_names = [name for name in CASES if case_filter is None or name in case_filter]
    configs = [
        cfg for cfg in BENCHMARK_CONFIGS if config_filter is None or _config_key(cfg) in config_filter
    ]
    total = len(case_names) * len(configs)

    idx = 0
    for case_name in case_names:
        results["benchmarks"][case_name] = {}
        for cfg in configs:
            idx += 1
            cfg_key = _config_key(cfg)
            print(f"[{idx}/{total}] {case_name} {cfg_key}", flush=True)
            try:
                metrics = _run_case(
                    case_name, cfg, iterations=iterations, warmup=warmup, seed=seed
                )
            except Exception as exc:
                results["benchmarks"][case_name][cfg_key] = {"error": repr(exc)}
                if fail_fast:
                    raise
                _LOGGER.warning("Benchmark %s %s failed: %r", case_name, cfg_key, exc)
            else:
                results["benchmarks"][case_name][cfg_key] = metrics

    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = _dt.date.today().isoformat()
    out_path = output_dir / f"{platform_name}_{stamp}.json"
    out_path.write_text(json.dumps(results, indent=2, sort_keys=True), encoding="utf-8")
    print(f"Wrote {out_path}")
    return results


def _split(value: str) -> set[str] | None:
    parts = {part.strip() for part in value.split(",") if part.strip()}
    return parts or None


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--platform", choices=["cpu", "nvidia"], default="cpu")
    parser.add_argument("--output", type=Path, default=Path("benchmarks/results"))
    parser.add_argument("--iterations", type=int, default=50)
    parser.add_argument("--warmup", type=int, default=3)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument(
        "--cases",
        type=str,
        default="",
        help="Comma-separated case names; empty means all.",
    )
    parser.add_argument(
        "--configs",
        type=str,
        default="",
        help="Comma-separated config keys (e.g. 1280x720_NV12); empty means all.",
    )
    parser.add_argument("--list-cases", action="store_true")
    parser.add_argument("--list-configs", action="store_true")
    parser.add_argument("--fail-fast", action="store_true")
    parser.add_argument("--label", type=str, default="")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if args.list_cases:
        for name in CASES:
            print(name)
        return

    if args.list_configs:
        for cfg in BENCHMARK_CONFIGS:
            print(_config_key(cfg))
        return

    run_benchmarks(
        platform_name=args.platform,
        output_dir=args.output,
        iterations=args.iterations,
        warmup=args.warmup,
        seed=args.seed,
        case_filter=_split(args.cases),
        config_filter=_split(args.configs),
        fail_fast=args.fail_fast,
        label=args.label.strip() or None,
    )


if __name__ == "__main__":
    main()
