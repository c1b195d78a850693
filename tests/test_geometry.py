import math

import numpy as np
import pytest

from slamkit.geometry import (
    angle_axis_to_matrix,
    coordinate_transform,
    euler_angles,
    format_quaternion,
    format_rotation,
    format_translation,
    make_isometry,
    matrix_to_quaternion,
    normalize_quaternion,
    quaternion_inverse,
    quaternion_multiply,
    quaternion_to_matrix,
    rotate_by_quaternion,
    transform_point,
)


def test_angle_axis_rotates_x_about_z():
    r = angle_axis_to_matrix(math.pi / 4, [0, 0, 1])
    assert np.allclose(r.T @ r, np.eye(3))
    assert math.isclose(np.linalg.det(r), 1.0)
    assert np.allclose(r @ [1, 0, 0], [math.cos(math.pi / 4), math.sin(math.pi / 4), 0])


def test_angle_axis_zero_axis_raises():
    with pytest.raises(ValueError):
        angle_axis_to_matrix(1.0, [0, 0, 0])


@pytest.mark.parametrize(
    "angle,axis",
    [(0.3, [1, 2, 3]), (math.pi, [1, 0, 0]), (2.5, [0, -1, 1]), (0.0, [0, 0, 1])],
)
def test_quaternion_matrix_round_trip(angle, axis):
    r = angle_axis_to_matrix(angle, axis)
    q = matrix_to_quaternion(r)
    assert math.isclose(np.linalg.norm(q), 1.0)
    assert np.allclose(quaternion_to_matrix(q), r)


def test_rotation_by_quaternion_matches_sandwich_product():
    r = angle_axis_to_matrix(math.pi / 4, [0, 0, 1])
    q = matrix_to_quaternion(r)
    v = np.array([1.0, 0.0, 0.0])
    rotated = rotate_by_quaternion(q, v)
    assert np.allclose(rotated, r @ v)
    sandwich = quaternion_multiply(
        quaternion_multiply(q, [0, *v]), quaternion_inverse(q)
    )
    assert np.allclose(sandwich[1:], rotated)
    assert math.isclose(sandwich[0], 0.0, abs_tol=1e-12)


def test_quaternion_inverse_gives_identity():
    q = np.array([0.35, 0.2, 0.3, 0.1])
    prod = quaternion_multiply(q, quaternion_inverse(q))
    assert np.allclose(prod, [1, 0, 0, 0])


def test_normalize_zero_quaternion_raises():
    with pytest.raises(ValueError):
        normalize_quaternion([0, 0, 0, 0])


def test_euler_angles_of_yaw_only():
    r = angle_axis_to_matrix(math.pi / 4, [0, 0, 1])
    assert np.allclose(euler_angles(r, 2, 1, 0), [math.pi / 4, 0, 0])


def _axis(i):
    v = np.zeros(3)
    v[i] = 1.0
    return v


@pytest.mark.parametrize(
    "axes,angles",
    [
        ((2, 1, 0), (0.4, -0.7, 1.1)),
        ((2, 1, 0), (-2.0, 0.3, -2.9)),
        ((0, 1, 2), (1.2, 0.5, -0.4)),
        ((2, 0, 2), (0.6, 1.0, -0.8)),
        ((1, 2, 1), (-1.5, 2.2, 0.3)),
    ],
)
def test_euler_angles_reconstruct_rotation(axes, angles):
    r = np.eye(3)
    for axis, angle in zip(axes, angles):
        r = r @ angle_axis_to_matrix(angle, _axis(axis))
    got = euler_angles(r, *axes)
    back = np.eye(3)
    for axis, angle in zip(axes, got):
        back = back @ angle_axis_to_matrix(angle, _axis(axis))
    assert np.allclose(back, r)


def test_euler_angles_invalid_axes():
    with pytest.raises(ValueError):
        euler_angles(np.eye(3), 2, 2, 0)
    with pytest.raises(ValueError):
        euler_angles(np.eye(3), 3, 1, 0)


def test_isometry_transforms_point():
    r = angle_axis_to_matrix(math.pi / 4, [0, 0, 1])
    t = make_isometry(r, [1, 3, 4])
    assert np.allclose(t[3], [0, 0, 0, 1])
    v = np.array([1.0, 0.0, 0.0])
    assert np.allclose(transform_point(t, v), r @ v + [1, 3, 4])


def test_coordinate_transform_worked_example():
    p2 = coordinate_transform(
        [0.35, 0.2, 0.3, 0.1], [0.3, 0.1, 0.1],
        [-0.5, 0.4, -0.1, 0.2], [-0.1, 0.5, 0.3],
        [0.5, 0, 0.2],
    )
    assert np.allclose(p2, [-0.0309731, 0.73499, 0.296108], atol=1e-5)


def test_coordinate_transform_same_frame_is_identity():
    q = [0.35, 0.2, 0.3, 0.1]
    t = [0.3, 0.1, 0.1]
    p = np.array([0.5, 0.0, 0.2])
    assert np.allclose(coordinate_transform(q, t, q, t, p), p)


def test_format_rotation_identity():
    assert format_rotation(np.eye(3)) == "=[1.00,0.00,0.00],[0.00,1.00,0.00],[0.00,0.00,1.00]"


def test_format_translation_and_quaternion_order():
    assert format_translation([1, 0, 0.5]) == "=[1,0,0.5]"
    assert format_quaternion([1, 0, 0, 0]) == "=[0,0,0,1]"