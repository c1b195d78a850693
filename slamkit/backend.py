"""Sliding-window bundle adjustment over keyframe poses and landmarks.

The backend runs in its own thread and optimises the map's active keyframes
and landmarks each time the map is updated.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from .camera import Camera
from .lie import SE3
from .slam_map import Feature, Frame, Map, MapPoint

_log = logging.getLogger(__name__)

CHI2_THRESHOLD = 5.991
_TAU = 1e-5
_MAX_TRIALS = 10
_THRESHOLD_ROUNDS = 5
_INLIER_RATIO = 0.5


def project(k, pose: SE3, point) -> np.ndarray:
    """Pixel of a world point seen by a camera with pose ``pose`` and intrinsics ``k``."""
    pixel = np.asarray(k, dtype=float) @ (pose * np.asarray(point, dtype=float))
    return (pixel / pixel[2])[:2]


def pose_jacobian(k, pos_cam) -> np.ndarray:
    """2x6 Jacobian of the reprojection error with respect to a left pose update."""
    k = np.asarray(k, dtype=float)
    fx, fy = k[0, 0], k[1, 1]
    x, y, z = (float(v) for v in pos_cam)
    zinv = 1.0 / (z + 1e-18)
    zinv2 = zinv * zinv
    return np.array([
        [-fx * zinv, 0.0, fx * x * zinv2, fx * x * y * zinv2, -fx - fx * x * x * zinv2, fx * y * zinv],
        [0.0, -fy * zinv, fy * y * zinv2, fy + fy * y * y * zinv2, -fy * x * y * zinv2, -fy * x * zinv],
    ])


def huber_weight(chi2: float, delta: float) -> float:
    """Weight a Huber kernel with threshold ``delta`` gives an error of squared norm ``chi2``."""
    if delta <= 0:
        raise ValueError("delta must be positive")
    if chi2 <= delta * delta:
        return 1.0
    return delta / math.sqrt(chi2)


def _huber_cost(chi2: float, delta: float) -> float:
    if chi2 <= delta * delta:
        return chi2
    return 2.0 * math.sqrt(chi2) * delta - delta * delta


@dataclass
class _Observation:
    pose: int
    landmark: int
    extrinsic: SE3
    measurement: np.ndarray
    feature: Feature


def _reorthonormalize(pose: SE3) -> SE3:
    return SE3.from_quaternion(pose.unit_quaternion(), pose.translation)


class _Problem:
    def __init__(self, k, poses, points, observations, delta):
        self.k = k
        self.poses = poses
        self.points = points
        self.observations = observations
        self.delta = delta
        self.pose_size = 6 * len(poses)
        self.size = self.pose_size + 3 * len(points)

    def error(self, obs: _Observation) -> np.ndarray:
        pose = obs.extrinsic * self.poses[obs.pose]
        return obs.measurement - project(self.k, pose, self.points[obs.landmark])

    def chi2s(self) -> list[float]:
        return [float(e @ e) for e in (self.error(o) for o in self.observations)]

    def cost(self) -> float:
        return sum(_huber_cost(c, self.delta) for c in self.chi2s())

    def linear_system(self):
        rows, cols, vals = [], [], []
        b = np.zeros(self.size)
        for obs in self.observations:
            pose = self.poses[obs.pose]
            point = self.points[obs.landmark]
            pos_cam = obs.extrinsic * (pose * point)
            e = obs.measurement - project(self.k, obs.extrinsic * pose, point)
            w = huber_weight(float(e @ e), self.delta)
            ji = pose_jacobian(self.k, pos_cam)
            jj = ji[:, :3] @ obs.extrinsic.matrix()[:3, :3] @ pose.matrix()[:3, :3]
            blocks = [(6 * obs.pose, ji), (self.pose_size + 3 * obs.landmark, jj)]
            for a, ja in blocks:
                b[a:a + ja.shape[1]] -= w * (ja.T @ e)
                for c, jc in blocks:
                    block = w * (ja.T @ jc)
                    r, cc = np.indices(block.shape)
                    rows.append((a + r).ravel())
                    cols.append((c + cc).ravel())
                    vals.append(block.ravel())
        h = sparse.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.size, self.size),
        ).tocsr()
        return h, b

    def apply(self, dx: np.ndarray) -> None:
        self.poses = [
            _reorthonormalize(SE3.exp(dx[6 * i:6 * i + 6]) * pose)
            for i, pose in enumerate(self.poses)
        ]
        self.points = self.points + dx[self.pose_size:].reshape(-1, 3)

    def optimize(self, iterations: int) -> None:
        if not self.observations or iterations <= 0:
            return
        identity = sparse.identity(self.size, format="csr")
        lam = None
        nu = 2.0
        for _ in range(iterations):
            h, b = self.linear_system()
            cost = self.cost()
            if lam is None:
                lam = _TAU * max(float(h.diagonal().max()), 1e-12)
            saved = (self.poses, self.points)
            accepted = False
            for _trial in range(_MAX_TRIALS):
                with np.errstate(all="ignore"):
                    dx = np.asarray(spsolve((h + lam * identity).tocsc(), b)).reshape(-1)
                if np.all(np.isfinite(dx)):
                    self.apply(dx)
                    new_cost = self.cost()
                    if math.isfinite(new_cost) and new_cost < cost:
                        predicted = float(dx @ (lam * dx + b))
                        rho = (cost - new_cost) / predicted if predicted > 0 else 1.0
                        lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                        nu = 2.0
                        accepted = True
                        break
                    self.poses, self.points = saved
                lam *= nu
                nu *= 2.0
            if not accepted:
                break


def bundle_adjust(keyframes: dict[int, Frame], landmarks: dict[int, MapPoint],
                  left: Camera, right: Camera, iterations: int = 10) -> tuple[int, int]:
    """Optimise keyframe poses and landmark positions in place.

    Observations whose error stays above a threshold (raised while fewer than
    half of them are inliers) are marked as outliers and detached from their
    landmarks. Returns the outlier and inlier counts.
    """
    kf_ids = list(keyframes)
    pose_index = {kf_id: i for i, kf_id in enumerate(kf_ids)}
    poses = [keyframes[kf_id].pose for kf_id in kf_ids]
    landmark_index: dict[int, int] = {}
    points: list[np.ndarray] = []
    observations: list[_Observation] = []

    for lm_id, mp in landmarks.items():
        if mp.is_outlier:
            continue
        for feat in mp.observations():
            frame = feat.frame
            if feat.is_outlier or frame is None:
                continue
            if frame.keyframe_id not in pose_index:
                raise KeyError(f"observation from keyframe {frame.keyframe_id} not being optimised")
            if lm_id not in landmark_index:
                landmark_index[lm_id] = len(points)
                points.append(mp.pos)
            extrinsic = left.pose if feat.is_on_left_image else right.pose
            observations.append(_Observation(
                pose_index[frame.keyframe_id], landmark_index[lm_id], extrinsic,
                np.array(feat.position, dtype=float), feat,
            ))

    chi2_th = CHI2_THRESHOLD
    problem = _Problem(left.intrinsic_matrix(), poses,
                       np.array(points, dtype=float).reshape(-1, 3), observations, chi2_th)
    problem.optimize(iterations)
    chi2s = problem.chi2s()

    cnt_outlier = cnt_inlier = 0
    for _ in range(_THRESHOLD_ROUNDS):
        cnt_outlier = sum(1 for c in chi2s if c > chi2_th)
        cnt_inlier = len(chi2s) - cnt_outlier
        ratio = cnt_inlier / len(chi2s) if chi2s else math.nan
        if ratio > _INLIER_RATIO:
            break
        chi2_th *= 2

    for obs, chi2 in zip(observations, chi2s):
        feat = obs.feature
        if chi2 > chi2_th:
            feat.is_outlier = True
            mp = feat.map_point
            if mp is not None:
                mp.remove_observation(feat)
        else:
            feat.is_outlier = False

    _log.info("Outlier/Inlier in optimization: %d/%d", cnt_outlier, cnt_inlier)

    for kf_id, i in pose_index.items():
        keyframes[kf_id].pose = problem.poses[i]
    for lm_id, i in landmark_index.items():
        landmarks[lm_id].pos = problem.points[i]
    return cnt_outlier, cnt_inlier


class Backend:
    """Optimisation thread that runs bundle adjustment when the map is updated."""

    def __init__(self, slam_map: Optional[Map] = None, left: Optional[Camera] = None,
                 right: Optional[Camera] = None):
        self.map = slam_map
        self.left = left
        self.right = right
        self.optimizations = 0
        self._cond = threading.Condition()
        self._running = True
        self._pending = False
        self._thread = threading.Thread(target=self._loop, name="backend", daemon=True)
        self._thread.start()

    def update_map(self) -> None:
        """Ask the thread to optimise the active part of the map."""
        with self._cond:
            self._pending = True
            self._cond.notify()

    def stop(self) -> None:
        """Finish pending work and end the thread."""
        with self._cond:
            self._running = False
            self._cond.notify()
        self._thread.join()

    def optimize(self, keyframes, landmarks) -> tuple[int, int]:
        if self.left is None or self.right is None:
            raise RuntimeError("cameras have not been set")
        return bundle_adjust(keyframes, landmarks, self.left, self.right)

    def _loop(self) -> None:
        while True:
            with self._cond:
                while self._running and not self._pending:
                    self._cond.wait()
                if not self._pending:
                    return
                self._pending = False
                if self.map is None:
                    continue
                try:
                    self.optimize(self.map.active_keyframes(), self.map.active_map_points())
                    self.optimizations += 1
                except Exception:
                    _log.exception("backend optimisation failed")