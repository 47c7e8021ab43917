from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence

import numba
import numpy as np

from .events import KeypointMarker, ProgressCallback, emit
from .image import chunk_boundaries, clip_boundary, dimensions
from .params import PREFILTER_RATIO, SiftParams, contrast_threshold
from .structures import DifferenceOfGaussians, Extremum, ExtremaResult, ScaleExtrema
from .tiles import TileExecutor, borrowed, check_cancelled

logger = logging.getLogger(__name__)

NOT_EXTREMUM = 0
CANDIDATE = 1
LOW_CONTRAST = 2

DEFAULT_CHUNK_SIZE = 32


@numba.njit(cache=True, nogil=True)
def find_extrema_kernel(below, center, above, labels, threshold, x1, y1, x2, y2):
    for y in range(y1, y2):
        for x in range(x1, x2):
            v = center[y, x]
            is_max = True
            is_min = True
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    n = below[y + dy, x + dx]
                    if n >= v:
                        is_max = False
                    if n <= v:
                        is_min = False
                    n = above[y + dy, x + dx]
                    if n >= v:
                        is_max = False
                    if n <= v:
                        is_min = False
                    if dy != 0 or dx != 0:
                        n = center[y + dy, x + dx]
                        if n >= v:
                            is_max = False
                        if n <= v:
                            is_min = False
                    if not is_max and not is_min:
                        break
                if not is_max and not is_min:
                    break
            if is_max or is_min:
                if abs(v) >= threshold:
                    labels[y, x] = CANDIDATE
                else:
                    labels[y, x] = LOW_CONTRAST


def _check_triplet(triplet: Sequence[np.ndarray]) -> tuple[int, int]:
    if len(triplet) != 3:
        raise ValueError(f"expected a DoG triplet, got {len(triplet)} images")
    shape = dimensions(triplet[0])
    for im in triplet[1:]:
        if dimensions(im) != shape:
            raise ValueError(
                f"DoG triplet shapes differ: {[t.shape for t in triplet]}"
            )
    return shape


def label_extrema(
    triplet: Sequence[np.ndarray],
    threshold: float,
    chunk_size: int,
    executor: TileExecutor,
    *,
    cancel: Optional[threading.Event] = None,
) -> np.ndarray:
    """Label every interior pixel of the centre image as candidate, low
    contrast or neither. Border pixels are never labelled."""
    rows, columns = _check_triplet(triplet)
    labels = np.zeros((rows, columns), dtype=np.int8)
    if rows < 3 or columns < 3:
        return labels
    below, center, above = triplet
    tiles = [
        t
        for t in (
            clip_boundary(b, 1, 1, columns - 1, rows - 1)
            for b in chunk_boundaries(columns, rows, chunk_size)
        )
        if not t.is_empty()
    ]
    executor.map(
        lambda b: find_extrema_kernel(
            below, center, above, labels, threshold, b.x1, b.y1, b.x2, b.y2
        ),
        tiles,
        cancel=cancel,
    )
    return labels


def _collect(labels: np.ndarray, center: np.ndarray, label: int) -> list[Extremum]:
    ys, xs = np.nonzero(labels == label)
    return [
        Extremum(x=int(x), y=int(y), value=float(center[y, x])) for y, x in zip(ys, xs)
    ]


def detect_extrema(
    triplet: Sequence[np.ndarray],
    n_spo: int,
    *,
    params: Optional[SiftParams] = None,
    executor: Optional[TileExecutor] = None,
    cancel: Optional[threading.Event] = None,
) -> ExtremaResult:
    """Find strict 26-neighbour extrema of ``triplet[1]``.

    Extrema whose magnitude reaches 0.8 of the scale-normalised contrast
    threshold are candidates; the rest are returned as ``rejected`` for
    diagnostics. Both lists are in row-major order.
    """
    if params is not None:
        threshold = params.prefilter_threshold
        chunk_size = params.chunk_size
        max_workers = params.max_workers
    else:
        threshold = PREFILTER_RATIO * contrast_threshold(n_spo)
        chunk_size = DEFAULT_CHUNK_SIZE
        max_workers = None
    with borrowed(executor, max_workers) as ex:
        labels = label_extrema(triplet, threshold, chunk_size, ex, cancel=cancel)
    center = triplet[1]
    return ExtremaResult(
        candidates=_collect(labels, center, CANDIDATE),
        rejected=_collect(labels, center, LOW_CONTRAST),
    )


def detect_octave_extrema(
    dog: DifferenceOfGaussians,
    params: SiftParams,
    *,
    executor: Optional[TileExecutor] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> list[list[ScaleExtrema]]:
    """Run the detector on every centre scale ``1 .. n_dog - 2`` of every octave."""
    out = []
    with borrowed(executor, params.max_workers) as ex:
        for o, octave in enumerate(dog):
            if len(octave) < 3:
                raise ValueError(
                    f"octave {o} has {len(octave)} DoG images, need at least 3"
                )
            per_scale = []
            for s in range(1, len(octave) - 1):
                check_cancelled(cancel)
                triplet = (octave[s - 1].image, octave[s].image, octave[s + 1].image)
                result = detect_extrema(
                    triplet, params.n_spo, params=params, executor=ex, cancel=cancel
                )
                for e in result.rejected:
                    emit(progress, KeypointMarker(o, s, e.x, e.y, True))
                for e in result.candidates:
                    emit(progress, KeypointMarker(o, s, e.x, e.y, False))
                logger.debug(
                    "octave %d scale %d: %d candidates, %d low contrast",
                    o,
                    s,
                    len(result.candidates),
                    len(result.rejected),
                )
                per_scale.append(
                    ScaleExtrema(o, s, result.candidates, result.rejected)
                )
            out.append(per_scale)
    return out
