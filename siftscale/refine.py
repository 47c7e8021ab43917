"""Sub-pixel refinement of discrete DoG extrema.

Each candidate is moved by Newton steps on the local quadratic model of the
DoG until the offset falls inside the current sample, then filtered on the
interpolated contrast and on the principal-curvature (edge) ratio.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Optional

import numba
import numpy as np

from .matrix import det2, det3, dot, inverse3, mat_vec, minor, scalar_multiply, trace
from .params import SiftParams
from .structures import (
    DifferenceOfGaussians,
    RefinedKeypoint,
    RefinementReport,
    RefinementStatus,
    ScaleExtrema,
)
from .tiles import TileExecutor, borrowed, check_cancelled

logger = logging.getLogger(__name__)

CONVERGED = int(RefinementStatus.CONVERGED)
OUT_OF_BOUNDS = int(RefinementStatus.OUT_OF_BOUNDS)
LOW_CONTRAST = int(RefinementStatus.LOW_CONTRAST)
EDGE = int(RefinementStatus.EDGE)
NO_CONVERGENCE = int(RefinementStatus.NO_CONVERGENCE)


@numba.njit(cache=True, nogil=True)
def gradient_3d(dog, s, m, n):
    g = np.empty(3, dtype=np.float64)
    g[0] = 0.5 * (dog[s + 1, m, n] - dog[s - 1, m, n])
    g[1] = 0.5 * (dog[s, m + 1, n] - dog[s, m - 1, n])
    g[2] = 0.5 * (dog[s, m, n + 1] - dog[s, m, n - 1])
    return g


@numba.njit(cache=True, nogil=True)
def hessian_3d(dog, s, m, n):
    H = np.empty((3, 3), dtype=np.float64)
    v2 = 2.0 * dog[s, m, n]
    H[0, 0] = dog[s + 1, m, n] + dog[s - 1, m, n] - v2
    H[1, 1] = dog[s, m + 1, n] + dog[s, m - 1, n] - v2
    H[2, 2] = dog[s, m, n + 1] + dog[s, m, n - 1] - v2
    H[0, 1] = 0.25 * (
        dog[s + 1, m + 1, n]
        - dog[s + 1, m - 1, n]
        - dog[s - 1, m + 1, n]
        + dog[s - 1, m - 1, n]
    )
    H[0, 2] = 0.25 * (
        dog[s + 1, m, n + 1]
        - dog[s + 1, m, n - 1]
        - dog[s - 1, m, n + 1]
        + dog[s - 1, m, n - 1]
    )
    H[1, 2] = 0.25 * (
        dog[s, m + 1, n + 1]
        - dog[s, m + 1, n - 1]
        - dog[s, m - 1, n + 1]
        + dog[s, m - 1, n - 1]
    )
    H[1, 0] = H[0, 1]
    H[2, 0] = H[0, 2]
    H[2, 1] = H[1, 2]
    return H


@numba.njit(cache=True, nogil=True)
def refine_one(
    dog, s, m, n, max_iterations, max_offset, contrast_thresh, edge_thresh, det_eps
):
    """Returns ``(status, s, m, n, a_s, a_m, a_n, value, iterations)``."""
    n_scales, h, w = dog.shape
    alpha = np.zeros(3, dtype=np.float64)
    for it in range(max_iterations):
        g = gradient_3d(dog, s, m, n)
        H = hessian_3d(dog, s, m, n)
        if abs(det3(H)) <= det_eps:
            return NO_CONVERGENCE, s, m, n, alpha[0], alpha[1], alpha[2], 0.0, it + 1

        alpha = mat_vec(scalar_multiply(inverse3(H), -1.0), g)
        finite = True
        for i in range(3):
            if not math.isfinite(alpha[i]):
                finite = False
        if not finite:
            return NO_CONVERGENCE, s, m, n, 0.0, 0.0, 0.0, 0.0, it + 1

        if (
            abs(alpha[0]) < max_offset
            and abs(alpha[1]) < max_offset
            and abs(alpha[2]) < max_offset
        ):
            value = dog[s, m, n] + 0.5 * dot(alpha, g)
            if abs(value) < contrast_thresh:
                return LOW_CONTRAST, s, m, n, alpha[0], alpha[1], alpha[2], value, it + 1
            H_mn = minor(H, 0, 0)
            det = det2(H_mn)
            tr = trace(H_mn)
            # det < 0 gives a negative ratio, which passes
            if det == 0.0 or tr * tr / det > edge_thresh:
                return EDGE, s, m, n, alpha[0], alpha[1], alpha[2], value, it + 1
            return CONVERGED, s, m, n, alpha[0], alpha[1], alpha[2], value, it + 1

        s = int(math.floor(s + alpha[0] + 0.5))
        m = int(math.floor(m + alpha[1] + 0.5))
        n = int(math.floor(n + alpha[2] + 0.5))
        if not (1 <= s < n_scales - 1 and 1 <= m < h - 1 and 1 <= n < w - 1):
            return OUT_OF_BOUNDS, s, m, n, alpha[0], alpha[1], alpha[2], 0.0, it + 1
    return (
        NO_CONVERGENCE,
        s,
        m,
        n,
        alpha[0],
        alpha[1],
        alpha[2],
        0.0,
        max_iterations,
    )


@numba.njit(cache=True, nogil=True)
def refine_kernel(
    dog,
    s0,
    ys,
    xs,
    int_buf,
    float_buf,
    max_iterations,
    max_offset,
    contrast_thresh,
    edge_thresh,
    det_eps,
):
    for i in range(ys.shape[0]):
        status, s, m, n, a_s, a_m, a_n, value, iterations = refine_one(
            dog,
            s0,
            ys[i],
            xs[i],
            max_iterations,
            max_offset,
            contrast_thresh,
            edge_thresh,
            det_eps,
        )
        int_buf[i, 0] = status
        int_buf[i, 1] = s
        int_buf[i, 2] = m
        int_buf[i, 3] = n
        int_buf[i, 4] = iterations
        float_buf[i, 0] = a_s
        float_buf[i, 1] = a_m
        float_buf[i, 2] = a_n
        float_buf[i, 3] = value


@dataclass(frozen=True)
class RefinementOutcome:
    status: RefinementStatus
    scale_level: int
    local_y: int
    local_x: int
    offset: tuple[float, float, float]
    value: float
    iterations: int
    keypoint: Optional[RefinedKeypoint] = None


def to_keypoint(
    octave: int,
    s: int,
    m: int,
    n: int,
    offset: tuple[float, float, float],
    value: float,
    params: SiftParams,
) -> RefinedKeypoint:
    a_s, a_m, a_n = offset
    interpixel = 2.0 ** (octave - 1)
    return RefinedKeypoint(
        octave=octave,
        scale_level=s,
        local_x=n,
        local_y=m,
        absolute_x=interpixel * (a_n + n),
        absolute_y=interpixel * (a_m + m),
        absolute_sigma=(interpixel / params.delta_min)
        * params.sigma_min
        * 2.0 ** ((a_s + s) / params.n_spo),
        interpolated_value=value,
    )


def _outcome(octave, row_int, row_float, params: SiftParams) -> RefinementOutcome:
    status = RefinementStatus(int(row_int[0]))
    s, m, n, iterations = (int(v) for v in row_int[1:5])
    offset = (float(row_float[0]), float(row_float[1]), float(row_float[2]))
    value = float(row_float[3])
    keypoint = None
    if status is RefinementStatus.CONVERGED:
        keypoint = to_keypoint(octave, s, m, n, offset, value, params)
    return RefinementOutcome(status, s, m, n, offset, value, iterations, keypoint)


def _run_batch(
    dog: np.ndarray, scale: int, ys: np.ndarray, xs: np.ndarray, params: SiftParams
) -> tuple[np.ndarray, np.ndarray]:
    int_buf = np.empty((ys.shape[0], 5), dtype=np.int64)
    float_buf = np.empty((ys.shape[0], 4), dtype=np.float64)
    refine_kernel(
        dog,
        scale,
        ys,
        xs,
        int_buf,
        float_buf,
        params.max_iterations,
        params.max_offset,
        params.contrast_threshold,
        params.edge_threshold,
        params.det_epsilon,
    )
    return int_buf, float_buf


def _check_start(dog: np.ndarray, s: int, m: int, n: int) -> None:
    n_scales, h, w = dog.shape
    if not (1 <= s < n_scales - 1 and 1 <= m < h - 1 and 1 <= n < w - 1):
        raise ValueError(
            f"candidate (s={s}, y={m}, x={n}) is outside the interior of a"
            f" {dog.shape} DoG octave"
        )


def refine_candidate(
    dog: np.ndarray, octave: int, s: int, m: int, n: int, params: SiftParams
) -> RefinementOutcome:
    """Refine one candidate at scale ``s``, row ``m``, column ``n``.

    ``dog`` is the octave's DoG images stacked as ``(n_dog, rows, cols)``.
    """
    if dog.ndim != 3:
        raise ValueError(f"expected a stacked DoG octave, got shape {dog.shape}")
    _check_start(dog, s, m, n)
    stack = np.ascontiguousarray(dog, dtype=np.float64)
    int_buf, float_buf = _run_batch(
        stack,
        s,
        np.array([m], dtype=np.int64),
        np.array([n], dtype=np.int64),
        params,
    )
    return _outcome(octave, int_buf[0], float_buf[0], params)


def refine_keypoints(
    dog: DifferenceOfGaussians,
    extrema: list[list[ScaleExtrema]],
    params: SiftParams,
    *,
    executor: Optional[TileExecutor] = None,
    cancel: Optional[threading.Event] = None,
) -> RefinementReport:
    """Refine every candidate, one batch per (octave, scale).

    Keypoints come out in (octave, scale, candidate) order whatever order
    the batches finish in.
    """
    if len(extrema) > len(dog):
        raise ValueError(
            f"extrema for {len(extrema)} octaves but only {len(dog)} DoG octaves"
        )
    stacks: dict[int, np.ndarray] = {}
    batches = []
    for o, per_scale in enumerate(extrema):
        for group in per_scale:
            if group.octave != o:
                raise ValueError(f"extrema group for octave {group.octave} listed at {o}")
            if not group.candidates:
                continue
            if o not in stacks:
                stacks[o] = dog.stack(o).astype(np.float64)
            ys = np.array([e.y for e in group.candidates], dtype=np.int64)
            xs = np.array([e.x for e in group.candidates], dtype=np.int64)
            for m, n in zip(ys, xs):
                _check_start(stacks[o], group.scale, int(m), int(n))
            batches.append((o, group.scale, ys, xs))

    check_cancelled(cancel)
    with borrowed(executor, params.max_workers) as ex:
        results = ex.map(
            lambda b: _run_batch(stacks[b[0]], b[1], b[2], b[3], params),
            batches,
            cancel=cancel,
        )

    report = RefinementReport()
    for (o, scale, ys, xs), (int_buf, float_buf) in zip(batches, results):
        for i in range(int_buf.shape[0]):
            outcome = _outcome(o, int_buf[i], float_buf[i], params)
            report.counts[outcome.status] += 1
            if outcome.keypoint is not None:
                report.keypoints.append(outcome.keypoint)
            else:
                logger.debug(
                    "candidate octave %d scale %d (x=%d, y=%d) discarded: %s"
                    " after %d iterations",
                    o,
                    scale,
                    xs[i],
                    ys[i],
                    outcome.status.name,
                    outcome.iterations,
                )
    return report


def count_by_status(report: RefinementReport) -> Counter:
    return Counter({status.name: report.counts[status] for status in RefinementStatus})
