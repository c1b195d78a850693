"""Rotations, quaternions, Euler angles and rigid transforms on plain arrays.

Quaternions are arrays ordered ``(w, x, y, z)`` with the real part first.
Printed quaternions list their coefficients as ``x, y, z, w``.
"""
from __future__ import annotations

import math

import numpy as np

_ZERO_NORM = 1e-15


def _as_vector(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def _as_matrix(value, rows: int, cols: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (rows, cols):
        raise ValueError(f"{name} must have shape ({rows}, {cols}), got {arr.shape}")
    return arr


def normalize_quaternion(q) -> np.ndarray:
    """Return ``q`` scaled to unit length."""
    arr = _as_vector(q, 4, "quaternion")
    norm = float(np.linalg.norm(arr))
    if norm < _ZERO_NORM:
        raise ValueError("cannot normalize a zero quaternion")
    return arr / norm


def angle_axis_to_matrix(angle: float, axis) -> np.ndarray:
    """Rotation matrix for a rotation of ``angle`` radians about ``axis``."""
    ax = _as_vector(axis, 3, "axis")
    norm = float(np.linalg.norm(ax))
    if norm < _ZERO_NORM:
        raise ValueError("rotation axis must be non-zero")
    x, y, z = ax / norm
    c, s = math.cos(angle), math.sin(angle)
    one_c = 1.0 - c
    return np.array(
        [
            [c + x * x * one_c, x * y * one_c - z * s, x * z * one_c + y * s],
            [y * x * one_c + z * s, c + y * y * one_c, y * z * one_c - x * s],
            [z * x * one_c - y * s, z * y * one_c + x * s, c + z * z * one_c],
        ]
    )


def matrix_to_quaternion(rotation) -> np.ndarray:
    """Quaternion ``(w, x, y, z)`` of a rotation matrix."""
    m = _as_matrix(rotation, 3, 3, "rotation")
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return np.array(
            [w, (m[2, 1] - m[1, 2]) * t, (m[0, 2] - m[2, 0]) * t, (m[1, 0] - m[0, 1]) * t]
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    xyz = np.zeros(3)
    xyz[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    xyz[j] = (m[j, i] + m[i, j]) * t
    xyz[k] = (m[k, i] + m[i, k]) * t
    return np.array([w, *xyz])


def quaternion_to_matrix(q) -> np.ndarray:
    """Rotation matrix of a quaternion ``(w, x, y, z)``; the quaternion is normalized first."""
    w, x, y, z = normalize_quaternion(q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def quaternion_multiply(a, b) -> np.ndarray:
    """Hamilton product ``a * b``."""
    aw, ax, ay, az = _as_vector(a, 4, "a")
    bw, bx, by, bz = _as_vector(b, 4, "b")
    return np.array(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ]
    )


def quaternion_inverse(q) -> np.ndarray:
    """Multiplicative inverse of a quaternion."""
    arr = _as_vector(q, 4, "quaternion")
    norm2 = float(arr @ arr)
    if norm2 < _ZERO_NORM**2:
        raise ValueError("a zero quaternion has no inverse")
    return np.array([arr[0], -arr[1], -arr[2], -arr[3]]) / norm2


def rotate_by_quaternion(q, v) -> np.ndarray:
    """Rotate vector ``v`` by the rotation that ``q`` represents."""
    return quaternion_to_matrix(q) @ _as_vector(v, 3, "vector")


def euler_angles(rotation, a0: int, a1: int, a2: int) -> np.ndarray:
    """Euler angles about axes ``a0, a1, a2`` such that R = R_a0 * R_a1 * R_a2.

    The first angle lies in [0, pi]; the other two in [-pi, pi].
    """
    for axis in (a0, a1, a2):
        if axis not in (0, 1, 2):
            raise ValueError(f"axis index must be 0, 1 or 2, got {axis}")
    if a0 == a1 or a1 == a2:
        raise ValueError("consecutive Euler axes must differ")
    m = _as_matrix(rotation, 3, 3, "rotation")
    odd = 0 if (a0 + 1) % 3 == a1 else 1
    i = a0
    j = (a0 + 1 + odd) % 3
    k = (a0 + 2 - odd) % 3
    res = np.zeros(3)

    def _needs_flip(angle: float) -> bool:
        return (odd and angle < 0.0) or ((not odd) and angle > 0.0)

    def _flip(angle: float) -> float:
        return angle - math.pi if angle > 0.0 else angle + math.pi

    if a0 == a2:
        res[0] = math.atan2(m[j, i], m[k, i])
        s2 = math.hypot(m[j, i], m[k, i])
        if _needs_flip(res[0]):
            res[0] = _flip(res[0])
            res[1] = -math.atan2(s2, m[i, i])
        else:
            res[1] = math.atan2(s2, m[i, i])
        s1, c1 = math.sin(res[0]), math.cos(res[0])
        res[2] = math.atan2(c1 * m[j, k] - s1 * m[k, k], c1 * m[j, j] - s1 * m[k, j])
    else:
        res[0] = math.atan2(m[j, k], m[k, k])
        c2 = math.hypot(m[i, i], m[i, j])
        if _needs_flip(res[0]):
            res[0] = _flip(res[0])
            res[1] = math.atan2(-m[i, k], -c2)
        else:
            res[1] = math.atan2(-m[i, k], c2)
        s1, c1 = math.sin(res[0]), math.cos(res[0])
        res[2] = math.atan2(s1 * m[k, i] - c1 * m[j, i], c1 * m[j, j] - s1 * m[k, j])
    if not odd:
        res = -res
    return res


def make_isometry(rotation, translation) -> np.ndarray:
    """4x4 homogeneous transform that rotates by ``rotation`` then translates."""
    transform = np.eye(4)
    transform[:3, :3] = _as_matrix(rotation, 3, 3, "rotation")
    transform[:3, 3] = _as_vector(translation, 3, "translation")
    return transform


def _invert_isometry(transform: np.ndarray) -> np.ndarray:
    rot_t = transform[:3, :3].T
    return make_isometry(rot_t, -rot_t @ transform[:3, 3])


def transform_point(isometry, point) -> np.ndarray:
    """Apply a 4x4 rigid transform to a 3D point."""
    t = _as_matrix(isometry, 4, 4, "isometry")
    return t[:3, :3] @ _as_vector(point, 3, "point") + t[:3, 3]


def coordinate_transform(q1, t1, q2, t2, p1) -> np.ndarray:
    """Map ``p1``, seen from frame 1, into frame 2.

    Both frames are given as world-to-frame poses (quaternion, translation).
    """
    world_to_1 = make_isometry(quaternion_to_matrix(q1), t1)
    world_to_2 = make_isometry(quaternion_to_matrix(q2), t2)
    return transform_point(world_to_2 @ _invert_isometry(world_to_1), p1)


def _short(value: float) -> str:
    return f"{value:g}"


def format_rotation(rotation) -> str:
    """Render a rotation matrix as ``=[a,b,c],[d,e,f],[g,h,i]`` with two decimals."""
    m = _as_matrix(rotation, 3, 3, "rotation")
    rows = ("[" + ",".join(f"{v:.2f}" for v in row) + "]" for row in m)
    return "=" + ",".join(rows)


def format_translation(translation) -> str:
    """Render a 3-vector as ``=[x,y,z]``."""
    t = _as_vector(translation, 3, "translation")
    return "=[" + ",".join(_short(v) for v in t) + "]"


def format_quaternion(q) -> str:
    """Render a quaternion ``(w, x, y, z)`` as ``=[x,y,z,w]``."""
    w, x, y, z = _as_vector(q, 4, "quaternion")
    return "=[" + ",".join(_short(v) for v in (x, y, z, w)) + "]"