import math

import numpy as np
import pytest

from slamkit.geometry import angle_axis_to_matrix, matrix_to_quaternion
from slamkit.lie import SE3, SO3, hat, se3_hat, se3_vee, vee

RNG = np.random.default_rng(7)


def _rot_z(angle):
    return angle_axis_to_matrix(angle, [0, 0, 1])


def test_hat_is_cross_product_and_vee_inverts():
    a = np.array([0.3, -1.2, 2.0])
    b = np.array([1.5, 0.4, -0.7])
    assert np.allclose(hat(a) @ b, np.cross(a, b))
    assert np.allclose(hat(a), -hat(a).T)
    assert np.allclose(vee(hat(a)), a)


def test_se3_hat_vee_round_trip():
    xi = np.array([0.1, 0.2, 0.3, -0.4, 0.5, -0.6])
    m = se3_hat(xi)
    assert m.shape == (4, 4)
    assert np.allclose(m[3], 0.0)
    assert np.allclose(se3_vee(m), xi)


def test_bad_shapes_raise():
    with pytest.raises(ValueError):
        hat([1, 2])
    with pytest.raises(ValueError):
        se3_vee(np.eye(3))


def test_so3_from_matrix_and_quaternion_agree():
    r = _rot_z(math.pi / 2)
    q = matrix_to_quaternion(r)
    assert np.allclose(SO3(r).matrix, SO3.from_quaternion(q).matrix)


def test_so3_log_of_quarter_turn():
    so3 = SO3(_rot_z(math.pi / 2)).log()
    assert np.allclose(so3, [0.0, 0.0, math.pi / 2])
    assert np.allclose(vee(hat(so3)), so3)


@pytest.mark.parametrize("seed", range(5))
def test_so3_exp_log_round_trip(seed):
    rng = np.random.default_rng(seed)
    axis = rng.normal(size=3)
    omega = axis / np.linalg.norm(axis) * rng.uniform(0.0, 3.0)
    assert np.allclose(SO3.exp(omega).log(), omega, atol=1e-9)


def test_so3_exp_zero_is_identity_and_small_update_close():
    assert np.allclose(SO3.exp(np.zeros(3)).matrix, np.eye(3))
    r = SO3(_rot_z(math.pi / 2))
    updated = SO3.exp([1e-4, 0, 0]) * r
    assert np.allclose(updated.matrix, r.matrix, atol=2e-4)
    assert not np.allclose(updated.matrix, r.matrix, atol=1e-6)


def test_so3_inverse_and_rotation_of_points():
    r = SO3.exp([0.2, -0.1, 0.7])
    assert np.allclose((r * r.inverse()).matrix, np.eye(3))
    pts = RNG.normal(size=(4, 3))
    rotated = r * pts
    assert np.allclose(np.linalg.norm(rotated, axis=1), np.linalg.norm(pts, axis=1))
    assert np.allclose(r.inverse() * rotated, pts)


def test_so3_quaternion_round_trip():
    r = SO3.exp([0.4, 0.3, -1.1])
    assert np.allclose(SO3.from_quaternion(r.unit_quaternion()).matrix, r.matrix)
    assert math.isclose(np.linalg.norm(r.unit_quaternion()), 1.0)


def test_so3_rejects_non_rotation():
    with pytest.raises(ValueError):
        SO3(2 * np.eye(3))
    with pytest.raises(ValueError):
        SO3.from_quaternion([0, 0, 0, 0])


def test_se3_log_matches_sophus_example():
    t = SE3(_rot_z(math.pi / 2), [1, 0, 0])
    se3 = t.log()
    expected = [math.pi / 4, -math.pi / 4, 0.0, 0.0, 0.0, math.pi / 2]
    assert np.allclose(se3, expected)
    assert np.allclose(se3_vee(se3_hat(se3)), se3)


def test_se3_from_rt_equals_from_qt():
    r = _rot_z(math.pi / 2)
    a = SE3(r, [1, 0, 0])
    b = SE3.from_quaternion(matrix_to_quaternion(r), [1, 0, 0])
    assert np.allclose(a.matrix(), b.matrix())


@pytest.mark.parametrize("seed", range(5))
def test_se3_exp_log_round_trip(seed):
    rng = np.random.default_rng(seed + 100)
    xi = np.concatenate([rng.normal(size=3), rng.uniform(-0.9, 0.9, size=3)])
    assert np.allclose(SE3.exp(xi).log(), xi, atol=1e-9)


def test_se3_inverse_and_point_transform():
    t = SE3.exp([0.5, -0.2, 1.0, 0.3, 0.1, -0.2])
    assert np.allclose((t * t.inverse()).matrix(), np.eye(4))
    p = np.array([0.3, 0.7, -1.2])
    homogeneous = t.matrix() @ np.append(p, 1.0)
    assert np.allclose(t * p, homogeneous[:3])
    assert np.allclose(t.matrix3x4(), t.matrix()[:3])


def test_se3_adjoint_conjugates_exponential():
    t = SE3.exp([0.2, 0.4, -0.1, 0.5, -0.3, 0.2])
    xi = np.array([0.01, -0.02, 0.03, 0.02, 0.01, -0.01])
    lhs = t * SE3.exp(xi) * t.inverse()
    rhs = SE3.exp(t.adjoint() @ xi)
    assert np.allclose(lhs.matrix(), rhs.matrix())


def test_se3_small_update_stays_close():
    t = SE3(_rot_z(math.pi / 2), [1, 0, 0])
    update = np.zeros(6)
    update[0] = 1e-4
    moved = SE3.exp(update) * t
    assert np.allclose(moved.translation - t.translation, [1e-4, 0, 0])
    assert np.allclose(moved.rotation_matrix, t.rotation_matrix)