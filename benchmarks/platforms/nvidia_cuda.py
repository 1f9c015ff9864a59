"""NVIDIA metadata for benchmark reports.

Only ``nvidia-smi`` is queried here; CuPy is probed through
:mod:`lensremap.cuda`, which imports it lazily.
"""

from __future__ import annotations

import shutil
import subprocess


def get_nvidia_smi_info() -> dict[str, object] | None:
    """Query name, driver and memory of the first GPU via nvidia-smi."""
    if shutil.which("nvidia-smi") is None:
        return None
    try:
        result = subprocess.run(
            [
                "nvidia-smi",
                "--query-gpu=name,driver_version,memory.total",
                "--format=csv,noheader",
            ],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None

    lines = (result.stdout or "").strip().splitlines()
    if not lines:
        return None
    parts = [p.strip() for p in lines[0].split(",")]
    if len(parts) < 3:
        return None
    name, driver_version, memory_total = parts[:3]
    return {"name": name, "driver_version": driver_version, "memory_total": memory_total}


def extra_system_info() -> dict[str, object]:
    from lensremap.cuda import is_available

    info: dict[str, object] = {"cuda_accelerator_available": is_available()}
    gpu = get_nvidia_smi_info()
    if gpu is not None:
        info["nvidia_gpu"] = gpu
    return info
