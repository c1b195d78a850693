"""Geometric algorithms: linear triangulation and point conversion."""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .lie import SE3

_QUALITY_RATIO = 1e-2


def triangulation(poses: Sequence[SE3], points) -> Optional[np.ndarray]:
    """Triangulate a world point from normalized-plane observations by SVD.

    ``poses`` are world-to-camera transforms and ``points`` the matching
    observations ``(x, y, 1)``. Returns the point, or ``None`` when the
    smallest singular value is not small enough against the next one.
    """
    poses = list(poses)
    obs = [np.asarray(p, dtype=float) for p in points]
    if len(poses) < 2:
        raise ValueError("at least two poses are needed")
    if len(obs) != len(poses):
        raise ValueError("poses and points must have the same length")
    rows = []
    for pose, pt in zip(poses, obs):
        m = pose.matrix3x4()
        rows.append(pt[0] * m[2] - m[0])
        rows.append(pt[1] * m[2] - m[1])
    a = np.array(rows)
    _, singular, vh = np.linalg.svd(a, full_matrices=False)
    v = vh[3]
    if v[3] == 0.0:
        return None
    pt_world = v[:3] / v[3]
    if singular[2] == 0.0:
        return None
    if singular[3] / singular[2] < _QUALITY_RATIO:
        return pt_world
    return None


def to_vec2(point) -> np.ndarray:
    """2-vector of a point with ``x``/``y`` attributes or a two-element sequence."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([float(point.x), float(point.y)])
    arr = np.asarray(point, dtype=float)
    if arr.shape != (2,):
        raise ValueError(f"point must have two coordinates, got shape {arr.shape}")
    return arr.copy()