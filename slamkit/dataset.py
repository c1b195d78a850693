"""Stereo sequences laid out as a KITTI odometry sequence directory."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import numpy as np

from .camera import Camera
from .imaging import load_image
from .lie import SE3
from .slam_map import Frame

_log = logging.getLogger(__name__)

_CAMERA_COUNT = 4
_PROJECTION_FIELDS = 12
_IMAGE_SCALE = 0.5
_IDENTITY_QUATERNION = (1.0, 0.0, 0.0, 0.0)


def parse_calibration(text: str) -> list[Camera]:
    """Cameras from the text of a ``calib.txt`` file.

    Each camera is a name such as ``P0:`` followed by its 3x4 projection
    matrix, row by row. The intrinsics are halved to match the images,
    which are read at half resolution.
    """
    tokens = text.split()
    record = 1 + _PROJECTION_FIELDS
    cameras = []
    for i in range(_CAMERA_COUNT):
        chunk = tokens[i * record:(i + 1) * record]
        if len(chunk) < record:
            raise ValueError(f"calibration holds fewer than {_CAMERA_COUNT} cameras")
        try:
            projection = np.array([float(v) for v in chunk[1:]]).reshape(3, 4)
        except ValueError as exc:
            raise ValueError(f"camera {i}: {exc}") from exc
        k = projection[:, :3]
        t = np.linalg.inv(k) @ projection[:, 3]
        k = k * _IMAGE_SCALE
        cameras.append(
            Camera(k[0, 0], k[1, 1], k[0, 2], k[1, 2], float(np.linalg.norm(t)),
                   SE3.from_quaternion(_IDENTITY_QUATERNION, t))
        )
    return cameras


def _half_size(image: np.ndarray) -> np.ndarray:
    rows = round(image.shape[0] * _IMAGE_SCALE)
    cols = round(image.shape[1] * _IMAGE_SCALE)
    return image[0:2 * rows:2, 0:2 * cols:2].copy()


class Dataset:
    """A sequence with ``calib.txt`` and ``image_0``/``image_1`` stereo images."""

    def __init__(self, dataset_path):
        self.path = Path(dataset_path)
        self.current_image_index = 0
        self.cameras: list[Camera] = []

    def load_calibration(self) -> list[Camera]:
        """Read the camera intrinsics and extrinsics and restart at the first image."""
        calib = self.path / "calib.txt"
        if not calib.is_file():
            raise FileNotFoundError(f"cannot find {calib}!")
        self.cameras = parse_calibration(calib.read_text(encoding="utf-8"))
        for i, camera in enumerate(self.cameras):
            _log.info("Camera %d extrinsics: %s", i, camera.pose.translation)
        self.current_image_index = 0
        return self.cameras

    def next_frame(self) -> Optional[Frame]:
        """Next stereo pair at half resolution, or ``None`` when no more images exist."""
        index = self.current_image_index
        try:
            left = load_image(self.path / "image_0" / f"{index:06d}.png", grayscale=True)
            right = load_image(self.path / "image_1" / f"{index:06d}.png", grayscale=True)
        except OSError:
            _log.warning("cannot find images at index %d", index)
            return None
        frame = Frame.create()
        frame.left_img = _half_size(left)
        frame.right_img = _half_size(right)
        self.current_image_index += 1
        return frame

    def camera(self, camera_id: int) -> Camera:
        if not 0 <= camera_id < len(self.cameras):
            raise IndexError(f"no camera with id {camera_id}")
        return self.cameras[camera_id]