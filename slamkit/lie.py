"""The groups SO(3) and SE(3) with their exponential and logarithm maps.

Tangent vectors of SE(3) are ordered translation first, rotation second:
``xi = (rho, phi)``.
"""
from __future__ import annotations

import math

import numpy as np

from .geometry import matrix_to_quaternion, normalize_quaternion, quaternion_to_matrix

_SMALL_ANGLE = 1e-10
_ORTHO_TOL = 1e-6


def _as_vector(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def _as_matrix(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size, size):
        raise ValueError(f"{name} must have shape ({size}, {size}), got {arr.shape}")
    return arr


def hat(omega) -> np.ndarray:
    """Skew-symmetric matrix of a 3-vector."""
    w = _as_vector(omega, 3, "omega")
    return np.array(
        [
            [0.0, -w[2], w[1]],
            [w[2], 0.0, -w[0]],
            [-w[1], w[0], 0.0],
        ]
    )


def vee(matrix) -> np.ndarray:
    """3-vector of a skew-symmetric matrix."""
    m = _as_matrix(matrix, 3, "matrix")
    return np.array([m[2, 1], m[0, 2], m[1, 0]])


def se3_hat(xi) -> np.ndarray:
    """4x4 matrix form of a twist ``(rho, phi)``."""
    v = _as_vector(xi, 6, "xi")
    out = np.zeros((4, 4))
    out[:3, :3] = hat(v[3:])
    out[:3, 3] = v[:3]
    return out


def se3_vee(matrix) -> np.ndarray:
    """Twist ``(rho, phi)`` of a 4x4 se(3) matrix."""
    m = _as_matrix(matrix, 4, "matrix")
    return np.concatenate([m[:3, 3], vee(m[:3, :3])])


def _left_jacobian(phi: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(phi))
    k = hat(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * k + (k @ k) / 6.0
    return (
        np.eye(3)
        + (1.0 - math.cos(theta)) / theta**2 * k
        + (theta - math.sin(theta)) / theta**3 * (k @ k)
    )


class SO3:
    """A 3D rotation."""

    __slots__ = ("matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            m = np.eye(3)
        else:
            m = np.array(_as_matrix(matrix, 3, "matrix"), dtype=float)
            if not np.allclose(m.T @ m, np.eye(3), atol=_ORTHO_TOL) or np.linalg.det(m) <= 0:
                raise ValueError("matrix is not a rotation matrix")
        self.matrix = m

    @classmethod
    def from_quaternion(cls, q) -> "SO3":
        """Rotation of a quaternion ``(w, x, y, z)``; it is normalized first."""
        return cls(quaternion_to_matrix(q))

    @classmethod
    def exp(cls, omega) -> "SO3":
        """Exponential map from a rotation vector."""
        w = _as_vector(omega, 3, "omega")
        theta = float(np.linalg.norm(w))
        k = hat(w)
        if theta < _SMALL_ANGLE:
            return cls(np.eye(3) + k + 0.5 * (k @ k))
        return cls(
            np.eye(3)
            + math.sin(theta) / theta * k
            + (1.0 - math.cos(theta)) / theta**2 * (k @ k)
        )

    def log(self) -> np.ndarray:
        """Rotation vector of this rotation, with angle in [0, pi]."""
        q = self.unit_quaternion()
        if q[0] < 0:
            q = -q
        w, v = q[0], q[1:]
        n = float(np.linalg.norm(v))
        if n < _SMALL_ANGLE:
            factor = 2.0 / w - (2.0 / 3.0) * n * n / w**3
        else:
            factor = 2.0 * math.atan2(n, w) / n
        return factor * v

    def inverse(self) -> "SO3":
        return SO3(self.matrix.T)

    def unit_quaternion(self) -> np.ndarray:
        """Unit quaternion ``(w, x, y, z)`` of this rotation."""
        return normalize_quaternion(matrix_to_quaternion(self.matrix))

    def __mul__(self, other):
        if isinstance(other, SO3):
            return SO3(self.matrix @ other.matrix)
        points = np.asarray(other, dtype=float)
        if points.ndim == 0 or points.shape[-1] != 3:
            raise ValueError("can only rotate arrays whose last dimension is 3")
        return points @ self.matrix.T

    def __repr__(self) -> str:
        return f"SO3({self.matrix.tolist()!r})"


class SE3:
    """A rigid motion: rotation followed by translation."""

    __slots__ = ("rotation", "translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            self.rotation = SO3()
        elif isinstance(rotation, SO3):
            self.rotation = rotation
        else:
            self.rotation = SO3(rotation)
        if translation is None:
            self.translation = np.zeros(3)
        else:
            self.translation = np.array(_as_vector(translation, 3, "translation"))

    @classmethod
    def from_quaternion(cls, q, translation=None) -> "SE3":
        return cls(SO3.from_quaternion(q), translation)

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Exponential map from a twist ``(rho, phi)``."""
        v = _as_vector(xi, 6, "xi")
        rho, phi = v[:3], v[3:]
        return cls(SO3.exp(phi), _left_jacobian(phi) @ rho)

    def log(self) -> np.ndarray:
        """Twist ``(rho, phi)`` of this motion."""
        phi = self.rotation.log()
        rho = np.linalg.solve(_left_jacobian(phi), self.translation)
        return np.concatenate([rho, phi])

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.rotation.matrix

    def inverse(self) -> "SE3":
        rot_inv = self.rotation.inverse()
        return SE3(rot_inv, -(rot_inv.matrix @ self.translation))

    def matrix(self) -> np.ndarray:
        """4x4 homogeneous matrix."""
        out = np.eye(4)
        out[:3, :3] = self.rotation.matrix
        out[:3, 3] = self.translation
        return out

    def matrix3x4(self) -> np.ndarray:
        """Top three rows of the homogeneous matrix."""
        return self.matrix()[:3, :]

    def adjoint(self) -> np.ndarray:
        """6x6 adjoint acting on twists ``(rho, phi)``."""
        r = self.rotation.matrix
        out = np.zeros((6, 6))
        out[:3, :3] = r
        out[:3, 3:] = hat(self.translation) @ r
        out[3:, 3:] = r
        return out

    def unit_quaternion(self) -> np.ndarray:
        return self.rotation.unit_quaternion()

    def __mul__(self, other):
        if isinstance(other, SE3):
            return SE3(
                self.rotation * other.rotation,
                self.rotation.matrix @ other.translation + self.translation,
            )
        points = np.asarray(other, dtype=float)
        if points.ndim == 0 or points.shape[-1] != 3:
            raise ValueError("can only transform arrays whose last dimension is 3")
        return points @ self.rotation.matrix.T + self.translation

    def __repr__(self) -> str:
        return f"SE3({self.rotation.matrix.tolist()!r}, {self.translation.tolist()!r})"