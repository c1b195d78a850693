# slamkit

A pure-Python toolkit of visual SLAM building blocks, built on NumPy, SciPy,
Pillow and PyYAML.

## What is in it

- **Lie groups** (`slamkit.lie`): `SO3` and `SE3` with `exp`, `log`,
  `inverse`, composition with `*` (also applied to points), `adjoint`,
  `matrix`, `matrix3x4` and `unit_quaternion`, plus `hat`/`vee` and
  `se3_hat`/`se3_vee`. Twists are ordered translation first, rotation second.
- **Rigid-body geometry** (`slamkit.geometry`): angle-axis to matrix,
  quaternion conversion, multiplication and inversion (quaternions are
  `(w, x, y, z)`), Euler angles about any axis order, 4x4 isometries,
  `coordinate_transform` between two posed frames, and text formatting of
  rotations, translations and quaternions.
- **Trajectories** (`slamkit.trajectory`): `parse_trajectory` and
  `read_trajectory` for lines of `time tx ty tz qx qy qz qw`, and
  `absolute_trajectory_rmse` between an estimate and ground truth.
- **Images** (`slamkit.imaging`): `load_image`, `describe_image`, the
  `Distortion` coefficients, `distort_point` and nearest-neighbour
  `undistort`.
- **Point clouds** (`slamkit.pointcloud`): `Intrinsics`, `read_poses`,
  `rgbd_to_points` (RGB-D back-projection into world points with colour),
  `disparity_to_points` (stereo), `statistical_outlier_removal` and
  `voxel_filter`.
- **Dense monocular depth** (`slamkit.dense_mono`): a per-pixel `DepthMap`
  refined by epipolar search with NCC matching (`epipolar_search`, `ncc`),
  triangulation and Gaussian fusion (`update_depth_filter`, `update`), and
  `evaluate_depth`.
- **Pose graphs** (`slamkit.pose_graph`): `PoseGraph.read` / `write` for
  `VERTEX_SE3:QUAT` / `EDGE_SE3:QUAT` text, `total_error` and
  Levenberg-Marquardt `optimize` with vertex 0 held fixed.
- **Stereo map pieces**:
  - `slamkit.algorithm`: SVD `triangulation` from normalized-plane
    observations, and `to_vec2`.
  - `slamkit.camera`: a pinhole `Camera` with world/camera/pixel conversions.
  - `slamkit.config`: `Config.load` for YAML parameter files (a leading
    `%YAML:1.0` line and `opencv-matrix` nodes are accepted), with
    `set_parameter_file` and `get` for a process-wide current file.
  - `slamkit.slam_map`: `Feature`, `Frame`, `MapPoint` and a `Map` keeping a
    sliding window of active keyframes.
  - `slamkit.dataset`: `Dataset` reading a KITTI-style sequence
    (`calib.txt`, `image_0`, `image_1`) at half resolution, and
    `parse_calibration`.
  - `slamkit.backend`: `bundle_adjust` over keyframe poses and landmarks with
    a Huber kernel and outlier marking, and a threaded `Backend` that runs it
    each time `update_map` is called.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Library use

```python
import numpy as np
from slamkit.lie import SE3
from slamkit.camera import Camera

xi = np.array([1e-4, 0.0, 0.0, 0.0, 0.0, 0.1])
pose = SE3.exp(xi)
print(pose.matrix())
print(pose.log())                        # recovers xi
print((pose * pose.inverse()).matrix())  # identity

camera = Camera(481.2, -480.0, 319.5, 239.5, 0.0, SE3())
pixel = camera.world2pixel(np.array([0.1, 0.2, 2.0]), pose)
```

## Commands

| Command | What it does |
| --- | --- |
| `slamkit-trajectory-error [GROUNDTRUTH] [ESTIMATED]` | Prints the RMSE between two trajectory files (defaults `./example/groundtruth.txt` and `./example/estimated.txt`). |
| `slamkit-undistort IMAGE [--undistort OUTPUT]` | Prints an image's size and channels; with `--undistort`, writes an undistorted grayscale copy using fixed camera parameters. |
| `slamkit-pointcloud [--data-dir DIR] [--output map.pcd] ...` | Joins RGB-D frames (`color/N.png`, `depth/N.png`, `pose.txt`) into one filtered point cloud and writes it as binary PCD. |
| `slamkit-dense-mono DATASET [--output depth.png]` | Estimates a dense depth map of the first image of a monocular sequence with known poses. |
| `slamkit-pose-graph GRAPH [--output result_lie.g2o] [--iterations 30]` | Optimises a pose graph file and saves the result. |

For example:

```
slamkit-pose-graph sphere.g2o
slamkit-dense-mono path/to/test_dataset
slamkit-trajectory-error groundtruth.txt estimated.txt
```

## What it does not do

- There is no viewer: nothing opens windows or draws trajectories, point
  clouds or images on screen. Results are printed or written to files.
- There is no feature-tracking front end (keypoint detection, optical flow,
  per-frame pose estimation), so no command runs stereo visual odometry over a
  whole sequence. The dataset reader, map, triangulation and backend are there
  to be assembled by the caller.