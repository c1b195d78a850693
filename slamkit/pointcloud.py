"""Building coloured point clouds from RGB-D and stereo images, and filtering them."""
from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image
from scipy.spatial import cKDTree

from .imaging import load_image
from .lie import SE3

_POSE_FIELDS = 7


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole camera intrinsics."""

    fx: float
    fy: float
    cx: float
    cy: float


def read_poses(path, count: int) -> list[SE3]:
    """Read ``count`` poses stored as ``tx ty tz qx qy qz qw``."""
    tokens = Path(path).read_text(encoding="utf-8").split()
    needed = count * _POSE_FIELDS
    if len(tokens) < needed:
        raise ValueError(f"{path}: expected {needed} numbers for {count} poses, got {len(tokens)}")
    values = np.array([float(t) for t in tokens[:needed]]).reshape(count, _POSE_FIELDS)
    return [
        SE3.from_quaternion((qw, qx, qy, qz), (tx, ty, tz))
        for tx, ty, tz, qx, qy, qz, qw in values
    ]


def rgbd_to_points(color, depth, pose: SE3, intrinsics: Intrinsics, depth_scale: float) -> np.ndarray:
    """World points ``x y z r g b`` for every pixel with a non-zero depth.

    ``color`` is an RGB image; pixels are taken row by row.
    """
    rgb = np.asarray(color)
    dep = np.asarray(depth)
    if dep.ndim != 2:
        raise ValueError("depth must be a 2D array")
    if rgb.shape[:2] != dep.shape or rgb.ndim != 3 or rgb.shape[2] < 3:
        raise ValueError("color must be an RGB image of the same size as depth")
    if depth_scale <= 0:
        raise ValueError("depth_scale must be positive")
    v, u = np.nonzero(dep)
    z = dep[v, u].astype(float) / depth_scale
    x = (u - intrinsics.cx) * z / intrinsics.fx
    y = (v - intrinsics.cy) * z / intrinsics.fy
    world = pose * np.column_stack([x, y, z])
    colours = rgb[v, u, :3].astype(float)
    return np.column_stack([world, colours]) if len(z) else np.zeros((0, 6))


def disparity_to_points(left, disparity, intrinsics: Intrinsics, baseline: float,
                        max_disparity: float = 96.0) -> np.ndarray:
    """Points ``x y z intensity`` from a disparity map; disparities outside (0, max) are skipped."""
    gray = np.asarray(left)
    disp = np.asarray(disparity, dtype=float)
    if gray.shape != disp.shape or disp.ndim != 2:
        raise ValueError("left and disparity must be 2D arrays of the same shape")
    v, u = np.nonzero((disp > 0.0) & (disp < max_disparity))
    d = disp[v, u]
    z = intrinsics.fx * baseline / d
    x = (u - intrinsics.cx) / intrinsics.fx * z
    y = (v - intrinsics.cy) / intrinsics.fy * z
    intensity = gray[v, u].astype(float) / 255.0
    return np.column_stack([x, y, z, intensity]) if len(d) else np.zeros((0, 4))


def statistical_outlier_removal(points, mean_k: int = 50, std_mul: float = 1.0) -> np.ndarray:
    """Drop points whose mean distance to their ``mean_k`` neighbours is unusually large."""
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must be an N x (3 or more) array")
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    n = len(pts)
    if n < 3:
        return pts.copy()
    k = min(mean_k, n - 1)
    distances, _ = cKDTree(pts[:, :3]).query(pts[:, :3], k=k + 1)
    mean_distances = distances[:, 1:].mean(axis=1)
    mean = mean_distances.mean()
    std = mean_distances.std(ddof=1)
    return pts[mean_distances <= mean + std_mul * std]


def voxel_filter(points, leaf_size: float) -> np.ndarray:
    """Replace the points in each cubic voxel of side ``leaf_size`` by their average."""
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must be an N x (3 or more) array")
    if leaf_size <= 0:
        raise ValueError("leaf_size must be positive")
    if len(pts) == 0:
        return pts.copy()
    keys = np.floor(pts[:, :3] / leaf_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), pts.shape[1]))
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]


def _write_pcd(path, points: np.ndarray) -> None:
    n = len(points)
    record = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])
    data = np.zeros(n, dtype=record)
    data["x"], data["y"], data["z"] = points[:, 0], points[:, 1], points[:, 2]
    rgb = np.clip(np.rint(points[:, 3:6]), 0, 255).astype(np.uint32)
    data["rgb"] = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\nFIELDS x y z rgb\nSIZE 4 4 4 4\nTYPE F F F U\nCOUNT 1 1 1 1\n"
        f"WIDTH {n}\nHEIGHT 1\nVIEWPOINT 0 0 0 1 0 0 0\nPOINTS {n}\nDATA binary\n"
    )
    with open(path, "wb") as handle:
        handle.write(header.encode("ascii"))
        handle.write(data.tobytes())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Join RGB-D frames into one filtered point cloud.")
    parser.add_argument("--data-dir", default="./data")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--depth-ext", default="png")
    parser.add_argument("--fx", type=float, default=481.2)
    parser.add_argument("--fy", type=float, default=-480.0)
    parser.add_argument("--cx", type=float, default=319.5)
    parser.add_argument("--cy", type=float, default=239.5)
    parser.add_argument("--depth-scale", type=float, default=5000.0)
    parser.add_argument("--resolution", type=float, default=0.03)
    parser.add_argument("--output", default="map.pcd")
    args = parser.parse_args(argv)

    data_dir = Path(args.data_dir)
    try:
        poses = read_poses(data_dir / "pose.txt", args.count)
    except FileNotFoundError:
        print("cannot find pose file")
        return 1
    intrinsics = Intrinsics(args.fx, args.fy, args.cx, args.cy)
    print("converting images to a point cloud ...")
    clouds = []
    for i, pose in enumerate(poses, start=1):
        print(f"converting image: {i}")
        color = load_image(data_dir / "color" / f"{i}.png")
        with Image.open(data_dir / "depth" / f"{i}.{args.depth_ext}") as img:
            depth = np.array(img)
        current = rgbd_to_points(color, depth, pose, intrinsics, args.depth_scale)
        clouds.append(statistical_outlier_removal(current, 50, 1.0))
    cloud = np.vstack(clouds) if clouds else np.zeros((0, 6))
    print(f"the point cloud has {len(cloud)} points.")
    cloud = voxel_filter(cloud, args.resolution)
    print(f"after filtering, the point cloud has {len(cloud)} points.")
    _write_pcd(args.output, cloud)
    return 0