from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Protocol

from lensremap.frames import FrameBuffer, VideoInfo


class FlowReturn(enum.Enum):
    """Per-frame status reported back to the host pipeline."""

    OK = "ok"
    DROP = "drop"
    ERROR = "error"


@dataclass
class RemapStats:
    """Counters shared by the remappers of one filter instance."""

    frames: int = 0
    corrected: int = 0
    bypassed: int = 0
    accelerator_failures: int = 0
    dropped: int = 0
    errors: int = 0

    def reset(self) -> None:
        self.frames = 0
        self.corrected = 0
        self.bypassed = 0
        self.accelerator_failures = 0
        self.dropped = 0
        self.errors = 0


class Remapper(Protocol):
    """Protocol implemented by frame remapping strategies."""

    @property
    def info(self) -> VideoInfo | None:
        ...

    def prepare(self, info: VideoInfo) -> None:
        ...

    def apply(self, frame: FrameBuffer) -> FlowReturn:
        ...

    def release(self) -> None:
        ...


class IdentityRemapper:
    """Bypass strategy: frames pass through untouched."""

    def __init__(self, stats: RemapStats | None = None) -> None:
        self.stats = stats if stats is not None else RemapStats()
        self._info: VideoInfo | None = None

    @property
    def info(self) -> VideoInfo | None:
        return self._info

    def prepare(self, info: VideoInfo) -> None:
        self._info = info

    def apply(self, frame: FrameBuffer) -> FlowReturn:
        if self._info is not None:
            frame.check(self._info)
        self.stats.bypassed += 1
        return FlowReturn.OK

    def release(self) -> None:
        self._info = None
