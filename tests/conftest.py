from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from siftscale.params import SiftParams  # noqa: E402
from siftscale.tiles import TileExecutor  # noqa: E402


def gaussian_blob(
    shape: tuple[int, int], cy: float, cx: float, sigma: float, amp: float = 1.0
) -> np.ndarray:
    y, x = np.mgrid[0 : shape[0], 0 : shape[1]].astype(np.float64)
    r2 = (y - cy) ** 2 + (x - cx) ** 2
    return amp * np.exp(-0.5 * r2 / (sigma * sigma))


def quadratic_dog(
    shape: tuple[int, int, int],
    peak: tuple[float, float, float],
    A: np.ndarray,
    top: float = 1.0,
) -> np.ndarray:
    """``top - 0.5 * d^T A d`` sampled on an (s, m, n) grid, ``d = p - peak``."""
    s, m, n = np.mgrid[0 : shape[0], 0 : shape[1], 0 : shape[2]].astype(np.float64)
    d = np.stack([s - peak[0], m - peak[1], n - peak[2]], axis=-1)
    quad = np.einsum("...i,ij,...j->...", d, np.asarray(A, dtype=np.float64), d)
    return top - 0.5 * quad


@pytest.fixture(scope="session")
def executor():
    ex = TileExecutor(max_workers=4)
    yield ex
    ex.shutdown()


@pytest.fixture
def small_params() -> SiftParams:
    return SiftParams(n_oct=1, n_spo=3, sigma_min=0.8, sigma_in=0.5, chunk_size=8)


@pytest.fixture
def pyramid_params() -> SiftParams:
    return SiftParams(n_oct=3, n_spo=3, sigma_min=0.8, sigma_in=0.5, chunk_size=16)


@pytest.fixture(scope="session")
def blob_image() -> np.ndarray:
    img = 0.1 + gaussian_blob((40, 48), 17.3, 22.6, 3.0, amp=0.8)
    img += gaussian_blob((40, 48), 8.4, 9.1, 1.5, amp=-0.05)
    return img.astype(np.float32)
