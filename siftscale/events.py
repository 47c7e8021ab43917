"""Progress notifications emitted while the pyramid is being built.

Events are observational only. They are delivered on the coordinating
thread, one at a time, in the order tiles finish.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import numpy as np

from .image import ChunkBoundary


@dataclass(frozen=True)
class BlurredChunk:
    octave: int
    scale: int
    boundary: ChunkBoundary
    data: np.ndarray = field(repr=False, compare=False)


@dataclass(frozen=True)
class BlurredImage:
    octave: int
    scale: int
    blur_level: float
    image: np.ndarray = field(repr=False, compare=False)


@dataclass(frozen=True)
class DoGChunk:
    octave: int
    scale: int
    boundary: ChunkBoundary
    data: np.ndarray = field(repr=False, compare=False)


@dataclass(frozen=True)
class DoGImage:
    octave: int
    scale: int
    blur_level: float
    image: np.ndarray = field(repr=False, compare=False)


@dataclass(frozen=True)
class KeypointMarker:
    octave: int
    scale: int
    x: int
    y: int
    is_low_contrast: bool


ProgressEvent = Union[BlurredChunk, BlurredImage, DoGChunk, DoGImage, KeypointMarker]
ProgressCallback = Callable[[ProgressEvent], None]


def emit(progress: Optional[ProgressCallback], event: ProgressEvent) -> None:
    if progress is not None:
        progress(event)
