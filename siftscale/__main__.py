from __future__ import annotations

import argparse
import logging
import sys

import cv2

from .image import draw_keypoints, read_gray_bt709
from .params import SiftParams
from .pipeline import Sift


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="siftscale", description="Detect SIFT keypoints in an image."
    )
    p.add_argument("image", help="input image (any format OpenCV can decode)")
    p.add_argument("--octaves", type=int, default=5)
    p.add_argument("--scales", type=int, default=3, help="scales per octave")
    p.add_argument("--sigma-min", type=float, default=0.8)
    p.add_argument("--sigma-in", type=float, default=0.5)
    p.add_argument("--chunk-size", type=int, default=32)
    p.add_argument("--workers", type=int, default=None)
    p.add_argument("--draw", metavar="OUT", help="write the image with keypoints")
    p.add_argument("-v", "--verbose", action="count", default=0)
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        params = SiftParams(
            n_oct=args.octaves,
            n_spo=args.scales,
            sigma_min=args.sigma_min,
            sigma_in=args.sigma_in,
            chunk_size=args.chunk_size,
            max_workers=args.workers,
        )
        img = read_gray_bt709(args.image)
    except (OSError, ValueError) as e:
        print(f"siftscale: {e}", file=sys.stderr)
        return 2

    with Sift(params) as sift:
        result = sift.compute(img)

    for kp in result.keypoints:
        print(
            f"{kp.absolute_x:.3f} {kp.absolute_y:.3f} {kp.absolute_sigma:.4f}"
            f" {kp.interpolated_value:.6f} {kp.octave} {kp.scale_level}"
        )
    counts = ", ".join(
        f"{status.name.lower()}={n}" for status, n in sorted(result.report.counts.items())
    )
    print(f"# {len(result.keypoints)} keypoints ({counts})", file=sys.stderr)

    if args.draw:
        cv2.imwrite(args.draw, draw_keypoints(img, result.keypoints))
    return 0


if __name__ == "__main__":
    sys.exit(main())
