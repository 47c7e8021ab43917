from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

C_DOG = 0.015
C_EDGE = 10.0
MAX_OFFSET = 0.6
MAX_ITERATIONS = 5
PREFILTER_RATIO = 0.8


@dataclass
class SiftParams:
    n_oct: int = 5
    n_spo: int = 3
    sigma_min: float = 0.8
    sigma_in: float = 0.5
    chunk_size: int = 32
    delta_min: float = 0.5

    C_dog: float = C_DOG
    C_edge: float = C_EDGE
    max_offset: float = MAX_OFFSET
    max_iterations: int = MAX_ITERATIONS
    prefilter_ratio: float = PREFILTER_RATIO
    det_epsilon: float = 1e-12

    max_workers: int | None = None

    contrast_threshold: float = field(init=False)
    sigmas: np.ndarray = field(init=False, repr=False, compare=False)
    inc_sigmas: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._validate()
        self.contrast_threshold = self._scale_invariant_C_dog()
        self.sigmas = self._make_sigmas()
        self.inc_sigmas = self._make_sigma_increments()

    @property
    def n_gss(self) -> int:
        return self.n_spo + 3

    @property
    def n_dog(self) -> int:
        return self.n_spo + 2

    @property
    def edge_threshold(self) -> float:
        return (self.C_edge + 1.0) * (self.C_edge + 1.0) / self.C_edge

    @property
    def prefilter_threshold(self) -> float:
        return self.prefilter_ratio * self.contrast_threshold

    def _validate(self) -> None:
        if self.n_oct < 1:
            raise ValueError(f"n_oct must be >= 1, got {self.n_oct}")
        if self.n_spo < 1:
            raise ValueError(f"n_spo must be >= 1, got {self.n_spo}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0.0 < self.delta_min <= 1.0:
            raise ValueError(f"delta_min must be in (0, 1], got {self.delta_min}")
        if self.sigma_in < 0.0:
            raise ValueError(f"sigma_in must be >= 0, got {self.sigma_in}")
        if self.sigma_min <= self.sigma_in:
            raise ValueError(
                f"sigma_min ({self.sigma_min}) must exceed sigma_in ({self.sigma_in});"
                " the blur schedule would not increase"
            )
        if self.C_edge <= 0.0:
            raise ValueError(f"C_edge must be positive, got {self.C_edge}")
        if self.max_iterations < 1:
            raise ValueError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")

    def _scale_invariant_C_dog(self) -> float:
        return contrast_threshold(self.n_spo, self.C_dog)

    def _make_sigmas(self) -> np.ndarray:
        # octave o > 0 starts at the blur level of slot n_spo of octave o - 1
        k = 2.0 ** (1.0 / self.n_spo)
        sig = np.empty((self.n_oct, self.n_gss), dtype=np.float64)
        base = self.sigma_min
        for o in range(self.n_oct):
            if o > 0:
                base = sig[o - 1, self.n_spo]
            sig[o] = base * k ** np.arange(self.n_gss, dtype=np.float64)
        return sig

    def _make_sigma_increments(self) -> np.ndarray:
        sig = self.sigmas
        inc = np.zeros_like(sig)
        for o in range(self.n_oct):
            for s in range(self.n_gss):
                if o > 0 and s == 0:
                    continue
                if o == 0 and s == 0:
                    base = self.sigma_in
                else:
                    base = sig[o, s - 1]
                inc[o, s] = incremental_sigma(float(sig[o, s]), float(base))
        return inc

    def blur_level(self, octave: int, scale: int) -> float:
        return float(self.sigmas[octave, scale])


def contrast_threshold(n_spo: int, C_dog: float = C_DOG) -> float:
    """``C_dog`` is tuned for 3 scales per octave; rescale it for ``n_spo``."""
    kn = 2.0 ** (1.0 / n_spo)
    k3 = 2.0 ** (1.0 / 3.0)
    return (kn - 1.0) / (k3 - 1.0) * C_dog


def incremental_sigma(target: float, base: float) -> float:
    diff2 = target * target - base * base
    if not diff2 > 0.0:
        raise ValueError(
            f"cannot blur from sigma {base} down to sigma {target};"
            " blur levels must strictly increase"
        )
    return math.sqrt(diff2)
