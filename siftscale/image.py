from __future__ import annotations

from pathlib import Path
from typing import Iterable, NamedTuple

import cv2
import numpy as np

W709_BGR = np.array(
    [0.072192315360734, 0.715168678767756, 0.212639005871510], dtype=np.float32
)
IMAGE_DTYPE = np.float32


class ChunkBoundary(NamedTuple):
    """Half-open tile rectangle ``[x1, x2) x [y1, y2)``."""

    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def region(self) -> tuple[slice, slice]:
        return slice(self.y1, self.y2), slice(self.x1, self.x2)

    def is_empty(self) -> bool:
        return self.x2 <= self.x1 or self.y2 <= self.y1


def allocate(rows: int, columns: int) -> np.ndarray:
    return np.zeros((rows, columns), dtype=IMAGE_DTYPE)


def dimensions(image: np.ndarray) -> tuple[int, int]:
    if image.ndim != 2:
        raise ValueError(f"expected a 2D image, got shape {image.shape}")
    rows, columns = image.shape
    return int(rows), int(columns)


def as_image(image: np.ndarray) -> np.ndarray:
    dimensions(image)
    return np.ascontiguousarray(image, dtype=IMAGE_DTYPE)


def upsample2x(image: np.ndarray) -> np.ndarray:
    """Nearest-neighbour 2x upsample, ``out[y, x] = image[y // 2, x // 2]``."""
    dimensions(image)
    return np.ascontiguousarray(np.repeat(np.repeat(image, 2, axis=0), 2, axis=1))


def downsample2x(image: np.ndarray) -> np.ndarray:
    """Keep every other sample, ``out[y, x] = image[2y, 2x]``; dims floor-halve."""
    rows, columns = dimensions(image)
    h, w = rows // 2, columns // 2
    if h == 0 or w == 0:
        raise ValueError(f"cannot downsample an image of shape {image.shape}")
    return np.ascontiguousarray(image[0 : 2 * h : 2, 0 : 2 * w : 2])


def chunk_boundaries(width: int, height: int, chunk_size: int) -> list[ChunkBoundary]:
    """Tile a ``width x height`` image into ``chunk_size`` squares.

    Tiles are listed column by column (x outer, y inner). The last tile of
    each row/column is clipped to the image, so the tiles cover every pixel
    exactly once.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if width < 0 or height < 0:
        raise ValueError(f"invalid image size {width}x{height}")
    out = []
    for x in range(0, width, chunk_size):
        x2 = min(x + chunk_size, width)
        for y in range(0, height, chunk_size):
            y2 = min(y + chunk_size, height)
            out.append(ChunkBoundary(x, y, x2, y2))
    check_partition(out, width, height)
    return out


def clip_boundary(
    boundary: ChunkBoundary, x1: int, y1: int, x2: int, y2: int
) -> ChunkBoundary:
    return ChunkBoundary(
        max(boundary.x1, x1),
        max(boundary.y1, y1),
        min(boundary.x2, x2),
        min(boundary.y2, y2),
    )


def check_partition(
    boundaries: Iterable[ChunkBoundary], width: int, height: int
) -> None:
    """Raise ``ValueError`` unless ``boundaries`` tile the image exactly."""
    cover = np.zeros((height, width), dtype=np.int32)
    for b in boundaries:
        if b.x1 < 0 or b.y1 < 0 or b.x2 > width or b.y2 > height:
            raise ValueError(f"tile {b} lies outside a {width}x{height} image")
        cover[b.region] += 1
    if not np.all(cover == 1):
        raise ValueError("tiles leave gaps or overlap")


def read_gray_bt709(path: str | Path) -> np.ndarray:
    im = cv2.imdecode(np.fromfile(str(path), np.uint8), cv2.IMREAD_COLOR)
    if im is None:
        raise ValueError(f"could not decode image: {path}")
    return (im.astype(np.float32) * W709_BGR).sum(axis=2) / 256.0


def normalize_image(image: np.ndarray) -> np.ndarray:
    lo = float(image.min())
    hi = float(image.max())
    if hi <= lo:
        return np.zeros_like(image, dtype=np.float32)
    return ((image - lo) / (hi - lo)).astype(np.float32)


def draw_keypoints(
    img: np.ndarray,
    keypoints,
    *,
    magnify: float = 1.0,
    color=(0, 0, 255),
    thick: int = 1,
) -> np.ndarray:
    if img.dtype != np.uint8:
        img = np.clip(normalize_image(img) * 255.0, 0, 255).astype(np.uint8)
    out = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR) if img.ndim == 2 else img.copy()
    for kp in keypoints:
        ctr = (int(round(kp.absolute_x)), int(round(kp.absolute_y)))
        radius = max(int(round(kp.absolute_sigma * magnify)), 1)
        cv2.circle(out, ctr, radius, color, thick, lineType=cv2.LINE_AA)
    return out
