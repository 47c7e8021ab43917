from __future__ import annotations

import logging
import threading
from typing import Optional

import numba

from .events import DoGChunk, DoGImage, ProgressCallback, emit
from .gaussian import freeze
from .image import ChunkBoundary, allocate, chunk_boundaries, dimensions
from .params import SiftParams
from .structures import DifferenceOfGaussians, ScaleLevel, ScaleSpace
from .tiles import TileExecutor, borrowed, check_cancelled

logger = logging.getLogger(__name__)


@numba.njit(cache=True, nogil=True)
def dog_diff_kernel(lower, upper, out, x1, y1, x2, y2):
    for y in range(y1, y2):
        for x in range(x1, x2):
            out[y, x] = upper[y, x] - lower[y, x]


def validate_scale_space(scale_space: ScaleSpace) -> None:
    if len(scale_space) == 0:
        raise ValueError("scale space has no octaves")
    n_levels = len(scale_space[0])
    if n_levels < 2:
        raise ValueError(f"octaves need at least 2 levels, got {n_levels}")
    for o, octave in enumerate(scale_space):
        if len(octave) != n_levels:
            raise ValueError(
                f"octave {o} has {len(octave)} levels, expected {n_levels}"
            )
        shape = dimensions(octave[0].image)
        for s in range(1, n_levels):
            if octave[s].image.shape != shape:
                raise ValueError(
                    f"octave {o} level {s} has shape {octave[s].image.shape},"
                    f" expected {shape}"
                )
            if not octave[s].blur_level > octave[s - 1].blur_level:
                raise ValueError(
                    f"octave {o}: blur levels must strictly increase"
                    f" ({octave[s - 1].blur_level} -> {octave[s].blur_level})"
                )


def compute_dog(
    octave: tuple[ScaleLevel, ...],
    octave_index: int,
    chunk_size: int,
    executor: TileExecutor,
    *,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> tuple[ScaleLevel, ...]:
    rows, columns = dimensions(octave[0].image)
    boundaries = chunk_boundaries(columns, rows, chunk_size)
    levels = []
    for s in range(1, len(octave)):
        check_cancelled(cancel)
        lower, upper = octave[s - 1], octave[s]
        out = allocate(rows, columns)

        def on_chunk(b: ChunkBoundary, _, s=s - 1, out=out) -> None:
            emit(progress, DoGChunk(octave_index, s, b, out[b.region]))

        executor.map(
            lambda b: dog_diff_kernel(
                lower.image, upper.image, out, b.x1, b.y1, b.x2, b.y2
            ),
            boundaries,
            cancel=cancel,
            on_done=on_chunk if progress is not None else None,
        )
        level = ScaleLevel(lower.blur_level, freeze(out))
        levels.append(level)
        emit(progress, DoGImage(octave_index, s - 1, level.blur_level, level.image))
    return tuple(levels)


def build_dog(
    scale_space: ScaleSpace,
    params: SiftParams,
    *,
    executor: Optional[TileExecutor] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> DifferenceOfGaussians:
    """Pixelwise difference of adjacent Gaussian levels, octave by octave."""
    validate_scale_space(scale_space)
    octaves = []
    with borrowed(executor, params.max_workers) as ex:
        for o, octave in enumerate(scale_space):
            octaves.append(
                compute_dog(
                    octave,
                    o,
                    params.chunk_size,
                    ex,
                    progress=progress,
                    cancel=cancel,
                )
            )
            logger.debug("octave %d: %d DoG images", o, len(octaves[-1]))
    return DifferenceOfGaussians(tuple(octaves))
