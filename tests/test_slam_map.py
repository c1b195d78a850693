import gc

import numpy as np
import pytest

from slamkit.lie import SE3
from slamkit.slam_map import Feature, Frame, Map, MapPoint


def _keyframe_at(x):
    frame = Frame.create()
    frame.pose = SE3(None, [float(x), 0.0, 0.0])
    frame.set_keyframe()
    return frame


def test_frame_ids_increase():
    first = Frame.create()
    second = Frame.create()
    assert second.id == first.id + 1
    assert not first.is_keyframe


def test_set_keyframe_assigns_consecutive_ids():
    a = Frame.create()
    b = Frame.create()
    a.set_keyframe()
    b.set_keyframe()
    assert a.is_keyframe and b.is_keyframe
    assert b.keyframe_id == a.keyframe_id + 1


def test_frame_pose_round_trip():
    frame = Frame.create()
    pose = SE3.exp([1.0, 2.0, 3.0, 0.1, 0.2, 0.3])
    frame.pose = pose
    np.testing.assert_allclose(frame.pose.matrix(), pose.matrix())


def test_map_point_ids_increase():
    a = MapPoint.create()
    b = MapPoint.create()
    assert b.id == a.id + 1


def test_map_point_position_validation():
    mp = MapPoint.create()
    mp.pos = [1.0, 2.0, 3.0]
    np.testing.assert_allclose(mp.pos, [1.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        mp.pos = [1.0, 2.0]


def test_feature_links_weakly():
    frame = Frame.create()
    feature = Feature(frame, (3.0, 4.0))
    assert feature.frame is frame
    np.testing.assert_allclose(feature.position, [3.0, 4.0])
    mp = MapPoint.create()
    feature.map_point = mp
    assert feature.map_point is mp
    del mp
    gc.collect()
    assert feature.map_point is None


def test_add_and_remove_observation():
    frame = Frame.create()
    feature = Feature(frame, (1.0, 1.0))
    other = Feature(frame, (2.0, 2.0))
    mp = MapPoint.create()
    feature.map_point = mp
    mp.add_observation(feature)
    mp.add_observation(other)
    assert mp.observed_times == 2
    mp.remove_observation(feature)
    assert mp.observed_times == 1
    assert feature.map_point is None
    assert mp.observations() == [other]


def test_remove_unknown_observation_changes_nothing():
    mp = MapPoint.create()
    observed = Feature(None, (0.0, 0.0))
    mp.add_observation(observed)
    mp.remove_observation(Feature(None, (1.0, 1.0)))
    assert mp.observed_times == 1
    assert mp.observations() == [observed]


def test_observations_skip_dead_features():
    mp = MapPoint.create()
    feature = Feature(None, (0.0, 0.0))
    mp.add_observation(feature)
    del feature
    gc.collect()
    assert mp.observations() == []


def test_insert_map_point_replaces_same_id():
    slam_map = Map()
    a = MapPoint(5)
    b = MapPoint(5)
    slam_map.insert_map_point(a)
    slam_map.insert_map_point(b)
    assert slam_map.all_map_points() == {5: b}
    assert slam_map.active_map_points() == {5: b}


def test_window_removes_farthest_keyframe():
    slam_map = Map()
    frames = [_keyframe_at(x) for x in range(7)]
    for frame in frames:
        slam_map.insert_keyframe(frame)
    current = _keyframe_at(10)
    slam_map.insert_keyframe(current)
    active = slam_map.active_keyframes()
    assert len(active) == slam_map.num_active_keyframes
    assert frames[0].keyframe_id not in active
    assert current.keyframe_id in active
    assert len(slam_map.all_keyframes()) == 8


def test_window_removes_nearest_keyframe_when_close():
    slam_map = Map()
    frames = [_keyframe_at(x) for x in range(7)]
    for frame in frames:
        slam_map.insert_keyframe(frame)
    current = _keyframe_at(6.1)
    slam_map.insert_keyframe(current)
    active = slam_map.active_keyframes()
    assert frames[6].keyframe_id not in active
    assert frames[0].keyframe_id in active


def test_removed_keyframe_releases_landmarks():
    slam_map = Map()
    frames = [_keyframe_at(x) for x in range(7)]
    mp = MapPoint.create()
    feature = Feature(frames[0], (10.0, 10.0))
    feature.map_point = mp
    mp.add_observation(feature)
    frames[0].features_left.append(feature)
    frames[0].features_right.append(None)
    slam_map.insert_map_point(mp)
    for frame in frames:
        slam_map.insert_keyframe(frame)
    slam_map.insert_keyframe(_keyframe_at(10))
    assert mp.observed_times == 0
    assert feature.map_point is None
    assert mp.id not in slam_map.active_map_points()
    assert mp.id in slam_map.all_map_points()


def test_clean_map_counts_removed_landmarks():
    slam_map = Map()
    observed = MapPoint.create()
    observed.add_observation(Feature(None, (0.0, 0.0)))
    lonely = MapPoint.create()
    slam_map.insert_map_point(observed)
    slam_map.insert_map_point(lonely)
    assert slam_map.clean_map() == 1
    assert list(slam_map.active_map_points()) == [observed.id]