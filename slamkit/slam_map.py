"""Frames, features, map points and the map of a stereo visual odometry."""
from __future__ import annotations

import itertools
import logging
import threading
import weakref
from typing import Optional

import numpy as np

from .lie import SE3

_log = logging.getLogger(__name__)

_MIN_DISTANCE_THRESHOLD = 0.2


class Feature:
    """A 2D keypoint in a frame, linked to a map point once triangulated.

    The frame and map point are held weakly.
    """

    def __init__(self, frame: Optional["Frame"] = None, position=(0.0, 0.0),
                 is_on_left_image: bool = True):
        pos = np.array(position, dtype=float)
        if pos.shape != (2,):
            raise ValueError(f"position must have shape (2,), got {pos.shape}")
        self.position = pos
        self._frame = weakref.ref(frame) if frame is not None else None
        self._map_point: Optional[weakref.ref] = None
        self.is_outlier = False
        self.is_on_left_image = is_on_left_image

    @property
    def frame(self) -> Optional["Frame"]:
        return self._frame() if self._frame is not None else None

    @property
    def map_point(self) -> Optional["MapPoint"]:
        return self._map_point() if self._map_point is not None else None

    @map_point.setter
    def map_point(self, value: Optional["MapPoint"]) -> None:
        self._map_point = weakref.ref(value) if value is not None else None


class Frame:
    """A stereo frame with its pose (world to camera) and extracted features."""

    _ids = itertools.count()
    _keyframe_ids = itertools.count()

    def __init__(self, frame_id: int = 0, time_stamp: float = 0.0, pose: Optional[SE3] = None,
                 left_img=None, right_img=None):
        self.id = frame_id
        self.keyframe_id = 0
        self.is_keyframe = False
        self.time_stamp = time_stamp
        self._pose = pose if pose is not None else SE3()
        self._pose_lock = threading.Lock()
        self.left_img = left_img
        self.right_img = right_img
        self.features_left: list[Feature] = []
        self.features_right: list[Optional[Feature]] = []

    @property
    def pose(self) -> SE3:
        with self._pose_lock:
            return self._pose

    @pose.setter
    def pose(self, value: SE3) -> None:
        with self._pose_lock:
            self._pose = value

    @classmethod
    def create(cls) -> "Frame":
        """New frame with the next frame id."""
        return cls(frame_id=next(Frame._ids))

    def set_keyframe(self) -> None:
        """Mark as keyframe and give it the next keyframe id."""
        self.is_keyframe = True
        self.keyframe_id = next(Frame._keyframe_ids)

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, keyframe_id={self.keyframe_id}, is_keyframe={self.is_keyframe})"


class MapPoint:
    """A landmark in the world with the features observing it."""

    _ids = itertools.count()

    def __init__(self, point_id: int = 0, position=None):
        self.id = point_id
        self.is_outlier = False
        self._pos = np.zeros(3) if position is None else np.array(position, dtype=float)
        self._lock = threading.Lock()
        self.observed_times = 0
        self._observations: list[weakref.ref] = []

    @property
    def pos(self) -> np.ndarray:
        with self._lock:
            return self._pos.copy()

    @pos.setter
    def pos(self, value) -> None:
        arr = np.array(value, dtype=float)
        if arr.shape != (3,):
            raise ValueError(f"position must have shape (3,), got {arr.shape}")
        with self._lock:
            self._pos = arr

    @classmethod
    def create(cls) -> "MapPoint":
        """New map point with the next landmark id."""
        return cls(point_id=next(MapPoint._ids))

    def add_observation(self, feature: Feature) -> None:
        with self._lock:
            self._observations.append(weakref.ref(feature))
            self.observed_times += 1

    def remove_observation(self, feature: Feature) -> None:
        """Forget ``feature``; its link to this map point is cleared."""
        with self._lock:
            for i, ref in enumerate(self._observations):
                if ref() is feature:
                    del self._observations[i]
                    feature.map_point = None
                    self.observed_times -= 1
                    break

    def observations(self) -> list[Feature]:
        """Observing features that still exist."""
        with self._lock:
            return [f for f in (ref() for ref in self._observations) if f is not None]

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, observed_times={self.observed_times})"


class Map:
    """Keyframes and landmarks, with a sliding window of active keyframes."""

    def __init__(self, num_active_keyframes: int = 7):
        self.num_active_keyframes = num_active_keyframes
        self._lock = threading.RLock()
        self._landmarks: dict[int, MapPoint] = {}
        self._active_landmarks: dict[int, MapPoint] = {}
        self._keyframes: dict[int, Frame] = {}
        self._active_keyframes: dict[int, Frame] = {}
        self.current_frame: Optional[Frame] = None

    def insert_keyframe(self, frame: Frame) -> None:
        """Add a keyframe; the window drops one keyframe when it overflows."""
        with self._lock:
            self.current_frame = frame
            self._keyframes[frame.keyframe_id] = frame
            self._active_keyframes[frame.keyframe_id] = frame
            if len(self._active_keyframes) > self.num_active_keyframes:
                self._remove_old_keyframe()

    def insert_map_point(self, map_point: MapPoint) -> None:
        with self._lock:
            self._landmarks[map_point.id] = map_point
            self._active_landmarks[map_point.id] = map_point

    def all_map_points(self) -> dict[int, MapPoint]:
        with self._lock:
            return dict(self._landmarks)

    def all_keyframes(self) -> dict[int, Frame]:
        with self._lock:
            return dict(self._keyframes)

    def active_map_points(self) -> dict[int, MapPoint]:
        with self._lock:
            return dict(self._active_landmarks)

    def active_keyframes(self) -> dict[int, Frame]:
        with self._lock:
            return dict(self._active_keyframes)

    def _remove_old_keyframe(self) -> None:
        current = self.current_frame
        if current is None:
            return
        max_dis, min_dis = 0.0, 9999.0
        max_kf_id = min_kf_id = 0
        twc = current.pose.inverse()
        for kf_id, kf in self._active_keyframes.items():
            if kf is current:
                continue
            dis = float(np.linalg.norm((kf.pose * twc).log()))
            if dis > max_dis:
                max_dis, max_kf_id = dis, kf_id
            if dis < min_dis:
                min_dis, min_kf_id = dis, kf_id

        chosen = min_kf_id if min_dis < _MIN_DISTANCE_THRESHOLD else max_kf_id
        frame_to_remove = self._keyframes[chosen]
        _log.info("remove keyframe %s", frame_to_remove.keyframe_id)
        self._active_keyframes.pop(frame_to_remove.keyframe_id, None)
        for feat in [*frame_to_remove.features_left, *frame_to_remove.features_right]:
            if feat is None:
                continue
            mp = feat.map_point
            if mp is not None:
                mp.remove_observation(feat)
        self.clean_map()

    def clean_map(self) -> int:
        """Drop active landmarks that nothing observes; returns how many were dropped."""
        with self._lock:
            unobserved = [k for k, mp in self._active_landmarks.items() if mp.observed_times == 0]
            for key in unobserved:
                del self._active_landmarks[key]
        _log.info("Removed %d active landmarks", len(unobserved))
        return len(unobserved)