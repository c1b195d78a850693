"""Pinhole stereo camera model and coordinate conversions."""
from __future__ import annotations

import numpy as np

from .lie import SE3


class Camera:
    """A pinhole camera with its extrinsic pose relative to the stereo rig."""

    def __init__(self, fx: float = 0.0, fy: float = 0.0, cx: float = 0.0, cy: float = 0.0,
                 baseline: float = 0.0, pose: SE3 | None = None):
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.baseline = float(baseline)
        self.pose = pose if pose is not None else SE3()
        self.pose_inv = self.pose.inverse()

    def intrinsic_matrix(self) -> np.ndarray:
        """3x3 intrinsic matrix K."""
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]])

    def world2camera(self, p_w, t_c_w: SE3) -> np.ndarray:
        return self.pose * (t_c_w * np.asarray(p_w, dtype=float))

    def camera2world(self, p_c, t_c_w: SE3) -> np.ndarray:
        return t_c_w.inverse() * (self.pose_inv * np.asarray(p_c, dtype=float))

    def camera2pixel(self, p_c) -> np.ndarray:
        p = np.asarray(p_c, dtype=float)
        return np.array([self.fx * p[0] / p[2] + self.cx, self.fy * p[1] / p[2] + self.cy])

    def pixel2camera(self, p_p, depth: float = 1.0) -> np.ndarray:
        p = np.asarray(p_p, dtype=float)
        return np.array(
            [(p[0] - self.cx) * depth / self.fx, (p[1] - self.cy) * depth / self.fy, depth]
        )

    def world2pixel(self, p_w, t_c_w: SE3) -> np.ndarray:
        return self.camera2pixel(self.world2camera(p_w, t_c_w))

    def pixel2world(self, p_p, t_c_w: SE3, depth: float = 1.0) -> np.ndarray:
        return self.camera2world(self.pixel2camera(p_p, depth), t_c_w)

    def __repr__(self) -> str:
        return (
            f"Camera(fx={self.fx}, fy={self.fy}, cx={self.cx}, cy={self.cy}, "
            f"baseline={self.baseline})"
        )