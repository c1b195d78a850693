"""Basic image handling and radial-tangential lens undistortion."""
from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image

FX, FY, CX, CY = 458.654, 457.296, 367.215, 248.375


@dataclass(frozen=True)
class Distortion:
    """Radial (k1, k2) and tangential (p1, p2) distortion coefficients."""

    k1: float = -0.28340811
    k2: float = 0.07395907
    p1: float = 0.00019359
    p2: float = 1.76187114e-05


def distort_point(x, y, distortion: Distortion):
    """Distorted normalized coordinates of the undistorted point ``(x, y)``."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    r2 = x * x + y * y
    radial = 1.0 + distortion.k1 * r2 + distortion.k2 * r2 * r2
    xd = x * radial + 2.0 * distortion.p1 * x * y + distortion.p2 * (r2 + 2.0 * x * x)
    yd = y * radial + distortion.p1 * (r2 + 2.0 * y * y) + 2.0 * distortion.p2 * x * y
    if xd.ndim == 0:
        return float(xd), float(yd)
    return xd, yd


def undistort(image, distortion: Distortion = Distortion(), fx=FX, fy=FY, cx=CX, cy=CY) -> np.ndarray:
    """Undistorted copy of ``image`` by nearest-neighbour lookup; unmapped pixels are zero."""
    img = np.asarray(image)
    if img.ndim not in (2, 3):
        raise ValueError("image must be a 2D or 3D array")
    rows, cols = img.shape[:2]
    v, u = np.mgrid[0:rows, 0:cols].astype(float)
    xd, yd = distort_point((u - cx) / fx, (v - cy) / fy, distortion)
    ud = fx * xd + cx
    vd = fy * yd + cy
    valid = (ud >= 0) & (vd >= 0) & (ud < cols) & (vd < rows)
    out = np.zeros_like(img)
    out[valid] = img[vd[valid].astype(int), ud[valid].astype(int)]
    return out


def load_image(path, grayscale: bool = False) -> np.ndarray:
    """Image file as an array: 2D for grayscale, otherwise height x width x 3 RGB."""
    with Image.open(path) as img:
        return np.array(img.convert("L" if grayscale else "RGB"))


def describe_image(image) -> dict:
    """Width, height and channel count of an image array."""
    img = np.asarray(image)
    if img.ndim == 2:
        channels = 1
    elif img.ndim == 3:
        channels = img.shape[2]
    else:
        raise ValueError("image must be a 2D or 3D array")
    return {"width": img.shape[1], "height": img.shape[0], "channels": channels}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Inspect an image and optionally undistort it.")
    parser.add_argument("image")
    parser.add_argument("--undistort", metavar="OUTPUT", default=None)
    args = parser.parse_args(argv)

    if not Path(args.image).is_file():
        print(f"file {args.image} does not exist.")
        return 1
    image = load_image(args.image)
    info = describe_image(image)
    print(f"width {info['width']}, height {info['height']}, channels {info['channels']}")
    if image.dtype != np.uint8 or info["channels"] not in (1, 3):
        print("please provide a colour or grayscale image.")
        return 1
    if args.undistort:
        gray = load_image(args.image, grayscale=True)
        Image.fromarray(undistort(gray)).save(args.undistort)
        print(f"undistorted image written to {args.undistort}")
    return 0