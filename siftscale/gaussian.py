from __future__ import annotations

import logging
import math
import threading
from typing import Optional

import numba
import numpy as np

from .events import BlurredChunk, BlurredImage, ProgressCallback, emit
from .image import (
    ChunkBoundary,
    allocate,
    as_image,
    chunk_boundaries,
    dimensions,
    downsample2x,
    upsample2x,
)
from .params import SiftParams, incremental_sigma
from .structures import ScaleLevel, ScaleSpace
from .tiles import TileExecutor, borrowed, check_cancelled

logger = logging.getLogger(__name__)


def kernel_radius(sigma: float) -> int:
    # three standard deviations, rounded half up
    return int(math.floor(3.0 * sigma + 0.5))


def gaussian_symm_kernel(sigma: float) -> tuple[np.ndarray, int]:
    """Right half ``g[0..radius]`` of a normalised 1D Gaussian."""
    if not sigma > 0.0:
        raise ValueError(f"gaussian sigma must be positive, got {sigma}")
    radius = kernel_radius(sigma)
    i = np.arange(radius + 1, dtype=np.float64)
    g = np.exp(-0.5 * i * i / (sigma * sigma))
    g /= g[0] + 2.0 * g[1:].sum()
    return g, radius


@numba.njit(cache=True, nogil=True)
def clamp(i, n):
    if i < 0:
        return 0
    if i >= n:
        return n - 1
    return i


@numba.njit(cache=True, nogil=True)
def gauss_v(src, dst, g, radius, x1, y1, x2, y2):
    h = src.shape[0]
    for y in range(y1, y2):
        for x in range(x1, x2):
            acc = src[y, x] * g[0]
            for k in range(1, radius + 1):
                acc += g[k] * (src[clamp(y - k, h), x] + src[clamp(y + k, h), x])
            dst[y, x] = acc


@numba.njit(cache=True, nogil=True)
def gauss_h(src, dst, g, radius, x1, y1, x2, y2):
    w = src.shape[1]
    for y in range(y1, y2):
        for x in range(x1, x2):
            acc = src[y, x] * g[0]
            for k in range(1, radius + 1):
                acc += g[k] * (src[y, clamp(x - k, w)] + src[y, clamp(x + k, w)])
            dst[y, x] = acc


def gaussian_blur(
    img_in: np.ndarray,
    img_out: np.ndarray,
    scratch: np.ndarray,
    sigma: float,
    boundaries: list[ChunkBoundary],
    executor: TileExecutor,
    *,
    cancel: Optional[threading.Event] = None,
    on_chunk=None,
) -> None:
    """Separable, edge-clamped blur of ``img_in`` into ``img_out``.

    The vertical pass finishes on every tile before the horizontal pass
    starts, so each output pixel is computed the same way whatever the
    tiling.
    """
    g, radius = gaussian_symm_kernel(sigma)
    executor.map(
        lambda b: gauss_v(img_in, scratch, g, radius, b.x1, b.y1, b.x2, b.y2),
        boundaries,
        cancel=cancel,
    )
    executor.map(
        lambda b: gauss_h(scratch, img_out, g, radius, b.x1, b.y1, b.x2, b.y2),
        boundaries,
        cancel=cancel,
        on_done=on_chunk,
    )


def freeze(image: np.ndarray) -> np.ndarray:
    image.flags.writeable = False
    return image


def set_seed(image: np.ndarray) -> np.ndarray:
    return upsample2x(as_image(image))


def set_first_scale(prev_octave, params: SiftParams) -> ScaleLevel:
    src = prev_octave[params.n_spo]
    return ScaleLevel(src.blur_level, freeze(downsample2x(src.image)))


def compute_gss(
    base: np.ndarray,
    octave_index: int,
    params: SiftParams,
    executor: TileExecutor,
    *,
    first: Optional[ScaleLevel] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> tuple[ScaleLevel, ...]:
    """Blur levels of one octave.

    ``base`` is the image the first blur starts from. For octave 0 that is
    the upsampled seed at ``sigma_in``; later octaves pass their downsampled
    ``first`` level, which is kept as slot 0 unchanged.
    """
    rows, columns = dimensions(base)
    boundaries = chunk_boundaries(columns, rows, params.chunk_size)
    scratch = allocate(rows, columns)

    levels: list[ScaleLevel] = []
    if first is not None:
        levels.append(first)
        emit(progress, BlurredImage(octave_index, 0, first.blur_level, first.image))
        prev_image, prev_sigma = first.image, first.blur_level
    else:
        prev_image, prev_sigma = base, params.sigma_in

    for scale_index in range(len(levels), params.n_gss):
        check_cancelled(cancel)
        target = params.blur_level(octave_index, scale_index)
        sigma = incremental_sigma(target, prev_sigma)
        out = allocate(rows, columns)

        def on_chunk(b: ChunkBoundary, _, s=scale_index, out=out) -> None:
            emit(progress, BlurredChunk(octave_index, s, b, out[b.region]))

        gaussian_blur(
            prev_image,
            out,
            scratch,
            sigma,
            boundaries,
            executor,
            cancel=cancel,
            on_chunk=on_chunk if progress is not None else None,
        )
        level = ScaleLevel(target, freeze(out))
        levels.append(level)
        emit(progress, BlurredImage(octave_index, scale_index, target, level.image))
        logger.debug(
            "octave %d scale %d: sigma %.4f (+%.4f), %dx%d, %d tiles",
            octave_index,
            scale_index,
            target,
            sigma,
            rows,
            columns,
            len(boundaries),
        )
        prev_image, prev_sigma = level.image, target
    return tuple(levels)


def build_scale_space(
    image: np.ndarray,
    params: SiftParams,
    *,
    executor: Optional[TileExecutor] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> ScaleSpace:
    """Gaussian pyramid of ``params.n_oct`` octaves of ``n_spo + 3`` levels."""
    seed = set_seed(image)
    rows, columns = dimensions(seed)
    if min(rows, columns) >> (params.n_oct - 1) == 0:
        raise ValueError(
            f"{params.n_oct} octaves need a larger image than"
            f" {image.shape[0]}x{image.shape[1]}"
        )
    octaves: list[tuple[ScaleLevel, ...]] = []
    with borrowed(executor, params.max_workers) as ex:
        for o in range(params.n_oct):
            if o == 0:
                levels = compute_gss(
                    seed, o, params, ex, progress=progress, cancel=cancel
                )
            else:
                first = set_first_scale(octaves[o - 1], params)
                levels = compute_gss(
                    first.image,
                    o,
                    params,
                    ex,
                    first=first,
                    progress=progress,
                    cancel=cancel,
                )
            octaves.append(levels)
    logger.debug(
        "scale space: %d octaves, base %s", len(octaves), octaves[0][0].image.shape
    )
    return ScaleSpace(tuple(octaves))
