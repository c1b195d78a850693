import numpy as np
import pytest

from slamkit.backend import Backend, bundle_adjust, huber_weight, pose_jacobian, project
from slamkit.camera import Camera
from slamkit.lie import SE3
from slamkit.slam_map import Feature, Frame, Map, MapPoint

FX, FY, CX, CY = 400.0, 400.0, 320.0, 240.0
IDENTITY_Q = (1.0, 0.0, 0.0, 0.0)


def _cameras():
    left = Camera(FX, FY, CX, CY, 0.0, SE3())
    right = Camera(FX, FY, CX, CY, 0.5, SE3.from_quaternion(IDENTITY_Q, (-0.5, 0.0, 0.0)))
    return left, right


def _scene(n_points=15, n_frames=3, outlier=False):
    rng = np.random.default_rng(7)
    left, right = _cameras()
    k = left.intrinsic_matrix()
    truth = np.column_stack([
        rng.uniform(-2, 2, n_points), rng.uniform(-1, 1, n_points), rng.uniform(6, 10, n_points)
    ])
    offsets = [(0.0, 0.0, 0.0), (-0.4, 0.05, 0.1), (-0.8, -0.05, 0.2)][:n_frames]
    frames = []
    for i, t in enumerate(offsets):
        frame = Frame(frame_id=i, pose=SE3.from_quaternion(IDENTITY_Q, t))
        frame.keyframe_id = i
        frames.append(frame)
    points = []
    for j, p in enumerate(truth):
        mp = MapPoint(point_id=j, position=p + rng.normal(0, 0.05, 3))
        points.append(mp)
        for frame in frames:
            for cam, on_left in ((left, True), (right, False)):
                pixel = project(k, cam.pose * frame.pose, p)
                feat = Feature(frame, pixel, is_on_left_image=on_left)
                feat.map_point = mp
                (frame.features_left if on_left else frame.features_right).append(feat)
                mp.add_observation(feat)
    bad = None
    if outlier:
        bad = frames[0].features_left[0]
        bad.position = bad.position + np.array([80.0, -60.0])
    return left, right, frames, points, bad


def _max_residual(left, right, frames, points, skip=None):
    k = left.intrinsic_matrix()
    worst = 0.0
    for mp in points:
        for feat in mp.observations():
            if feat is skip:
                continue
            cam = left if feat.is_on_left_image else right
            err = feat.position - project(k, cam.pose * feat.frame.pose, mp.pos)
            worst = max(worst, float(np.linalg.norm(err)))
    return worst


def test_project_matches_camera():
    left, _ = _cameras()
    pose = SE3.from_quaternion((0.9, 0.1, -0.2, 0.1), (0.3, -0.2, 0.5))
    point = np.array([0.4, -0.3, 5.0])
    np.testing.assert_allclose(
        project(left.intrinsic_matrix(), pose, point), left.world2pixel(point, pose), atol=1e-9
    )


def test_pose_jacobian_matches_numeric_derivative():
    left, _ = _cameras()
    k = left.intrinsic_matrix()
    pose = SE3.from_quaternion((0.95, 0.05, 0.2, -0.1), (0.2, 0.1, 0.3))
    point = np.array([0.5, -0.4, 6.0])
    measurement = project(k, pose, point)

    def error(delta):
        return measurement - project(k, SE3.exp(delta) * pose, point)

    step = 1e-6
    numeric = np.column_stack([
        (error(step * e) - error(-step * e)) / (2 * step) for e in np.eye(6)
    ])
    analytic = pose_jacobian(k, pose * point)
    np.testing.assert_allclose(analytic, numeric, rtol=1e-4, atol=1e-4)


def test_huber_weight():
    assert huber_weight(4.0, 5.991) == 1.0
    delta = 3.0
    assert huber_weight(4 * delta * delta, delta) == pytest.approx(0.5)
    with pytest.raises(ValueError):
        huber_weight(1.0, 0.0)


def test_bundle_adjust_converges():
    left, right, frames, points, _ = _scene()
    before = _max_residual(left, right, frames, points)
    keyframes = {f.keyframe_id: f for f in frames}
    landmarks = {mp.id: mp for mp in points}
    outliers, inliers = bundle_adjust(keyframes, landmarks, left, right)
    assert (outliers, inliers) == (0, len(points) * len(frames) * 2)
    after = _max_residual(left, right, frames, points)
    assert after < before
    assert after < 1e-3
    assert all(not f.is_outlier for frame in frames for f in frame.features_left)


def test_bundle_adjust_rejects_outlier():
    left, right, frames, points, bad = _scene(outlier=True)
    keyframes = {f.keyframe_id: f for f in frames}
    landmarks = {mp.id: mp for mp in points}
    outliers, inliers = bundle_adjust(keyframes, landmarks, left, right)
    assert outliers == 1
    assert inliers == len(points) * len(frames) * 2 - 1
    assert bad.is_outlier
    assert bad.map_point is None
    assert points[0].observed_times == len(frames) * 2 - 1
    assert bad not in points[0].observations()


def test_bundle_adjust_unknown_keyframe():
    left, right, frames, points, _ = _scene(n_frames=2)
    keyframes = {frames[0].keyframe_id: frames[0]}
    with pytest.raises(KeyError):
        bundle_adjust(keyframes, {mp.id: mp for mp in points}, left, right)


def test_backend_thread_optimizes_map():
    left, right, frames, points, _ = _scene()
    slam_map = Map()
    for frame in frames:
        slam_map.insert_keyframe(frame)
    for mp in points:
        slam_map.insert_map_point(mp)
    backend = Backend(slam_map, left, right)
    backend.update_map()
    backend.stop()
    assert backend.optimizations == 1
    assert _max_residual(left, right, frames, points) < 1e-3


def test_backend_stop_without_update():
    left, right = _cameras()
    backend = Backend(Map(), left, right)
    backend.stop()
    assert backend.optimizations == 0


def test_backend_optimize_without_cameras():
    backend = Backend()
    try:
        with pytest.raises(RuntimeError):
            backend.optimize({}, {})
    finally:
        backend.stop()