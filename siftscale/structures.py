from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class ScaleLevel:
    blur_level: float
    image: np.ndarray = field(repr=False, compare=False)


Octave = tuple[ScaleLevel, ...]


@dataclass(frozen=True)
class ScaleSpace:
    octaves: tuple[Octave, ...]

    def __len__(self) -> int:
        return len(self.octaves)

    def __getitem__(self, o: int) -> Octave:
        return self.octaves[o]

    def __iter__(self):
        return iter(self.octaves)


@dataclass(frozen=True)
class DifferenceOfGaussians:
    octaves: tuple[Octave, ...]

    def __len__(self) -> int:
        return len(self.octaves)

    def __getitem__(self, o: int) -> Octave:
        return self.octaves[o]

    def __iter__(self):
        return iter(self.octaves)

    def stack(self, o: int) -> np.ndarray:
        """Copy octave ``o`` into a ``(n_dog, rows, cols)`` array."""
        return np.stack([level.image for level in self.octaves[o]], axis=0)


@dataclass(frozen=True)
class Extremum:
    x: int
    y: int
    value: float


@dataclass
class ExtremaResult:
    candidates: list[Extremum] = field(default_factory=list)
    rejected: list[Extremum] = field(default_factory=list)


@dataclass
class ScaleExtrema:
    octave: int
    scale: int
    candidates: list[Extremum] = field(default_factory=list)
    rejected: list[Extremum] = field(default_factory=list)


@dataclass(frozen=True)
class RefinedKeypoint:
    octave: int
    scale_level: int
    local_x: int
    local_y: int
    absolute_x: float
    absolute_y: float
    absolute_sigma: float
    interpolated_value: float


class RefinementStatus(enum.IntEnum):
    CONVERGED = 0
    OUT_OF_BOUNDS = 1
    LOW_CONTRAST = 2
    EDGE = 3
    NO_CONVERGENCE = 4


@dataclass
class RefinementReport:
    keypoints: list[RefinedKeypoint] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    @property
    def n_candidates(self) -> int:
        return sum(self.counts.values())

    def discarded(self) -> dict[RefinementStatus, int]:
        return {
            status: self.counts[status]
            for status in RefinementStatus
            if status is not RefinementStatus.CONVERGED
        }
