from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .dog import build_dog
from .events import ProgressCallback
from .extrema import detect_octave_extrema
from .gaussian import build_scale_space
from .image import as_image
from .params import SiftParams
from .refine import count_by_status, refine_keypoints
from .structures import (
    DifferenceOfGaussians,
    RefinedKeypoint,
    RefinementReport,
    ScaleExtrema,
    ScaleSpace,
)
from .tiles import TileExecutor, check_cancelled

logger = logging.getLogger(__name__)


@dataclass
class SiftResult:
    scale_space: ScaleSpace
    dog: DifferenceOfGaussians
    extrema: list[list[ScaleExtrema]]
    report: RefinementReport = field(default_factory=RefinementReport)

    @property
    def keypoints(self) -> list[RefinedKeypoint]:
        return self.report.keypoints

    def n_candidates(self) -> int:
        return sum(len(g.candidates) for per_scale in self.extrema for g in per_scale)

    def n_low_contrast(self) -> int:
        return sum(len(g.rejected) for per_scale in self.extrema for g in per_scale)


def compute(
    img: np.ndarray,
    params: SiftParams,
    executor: TileExecutor,
    *,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[threading.Event] = None,
) -> SiftResult:
    """Run the four stages in order; each consumes the previous complete output."""
    scale_space = build_scale_space(
        img, params, executor=executor, progress=progress, cancel=cancel
    )
    check_cancelled(cancel)
    dog = build_dog(
        scale_space, params, executor=executor, progress=progress, cancel=cancel
    )
    check_cancelled(cancel)
    extrema = detect_octave_extrema(
        dog, params, executor=executor, progress=progress, cancel=cancel
    )
    check_cancelled(cancel)
    report = refine_keypoints(dog, extrema, params, executor=executor, cancel=cancel)

    result = SiftResult(scale_space, dog, extrema, report)
    logger.info(
        "%d octaves: %d candidates (%d low contrast dropped), %d keypoints; %s",
        len(scale_space),
        result.n_candidates(),
        result.n_low_contrast(),
        len(report.keypoints),
        dict(count_by_status(report)),
    )
    return result


class Sift:
    def __init__(self, params: SiftParams):
        self.params = params
        self._executor = TileExecutor(params.max_workers)

    def __enter__(self) -> "Sift":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown()

    def compute(
        self,
        img: np.ndarray,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SiftResult:
        img = as_image(img)
        return compute(img, self.params, self._executor, progress=progress, cancel=cancel)

    def scale_space(self, img: np.ndarray, **kwargs) -> ScaleSpace:
        return build_scale_space(img, self.params, executor=self._executor, **kwargs)

    def difference_of_gaussians(
        self, scale_space: ScaleSpace, **kwargs
    ) -> DifferenceOfGaussians:
        return build_dog(scale_space, self.params, executor=self._executor, **kwargs)

    def extrema(self, dog: DifferenceOfGaussians, **kwargs) -> list[list[ScaleExtrema]]:
        return detect_octave_extrema(dog, self.params, executor=self._executor, **kwargs)

    def refine(
        self, dog: DifferenceOfGaussians, extrema: list[list[ScaleExtrema]], **kwargs
    ) -> RefinementReport:
        return refine_keypoints(
            dog, extrema, self.params, executor=self._executor, **kwargs
        )
