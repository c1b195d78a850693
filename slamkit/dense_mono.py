"""Dense monocular depth estimation along epipolar lines with NCC matching.

Each reference pixel keeps a Gaussian depth estimate (mean and variance).
New frames with known poses refine it: the pixel is searched for along its
epipolar line, the match is triangulated and fused into the estimate.
"""
from __future__ import annotations

import argparse
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
from PIL import Image

from .imaging import load_image
from .lie import SE3

BOARDER = 20
WIDTH = 640
HEIGHT = 480
FX = float(np.float32(481.2))
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW_SIZE = 3
NCC_AREA = (2 * NCC_WINDOW_SIZE + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0
INIT_DEPTH = 3.0
INIT_COV2 = 3.0

_NCC_THRESHOLD = float(np.float32(0.85))
_SEARCH_STEP = 0.7
_MAX_HALF_LENGTH = 100.0
_MIN_DEPTH = 0.1
_TRAJECTORY_FILE = "first_200_frames_traj_over_table_input_sequence.txt"
_REFERENCE_DEPTH_FILE = Path("depthmaps") / "scene_000.depth"


@dataclass
class DepthMap:
    """Per-pixel depth mean and depth variance of the reference image."""

    depth: np.ndarray = field(default_factory=lambda: np.full((HEIGHT, WIDTH), INIT_DEPTH))
    cov2: np.ndarray = field(default_factory=lambda: np.full((HEIGHT, WIDTH), INIT_COV2))

    def __post_init__(self):
        self.depth = np.array(self.depth, dtype=float)
        self.cov2 = np.array(self.cov2, dtype=float)
        if self.depth.ndim != 2 or self.depth.shape != self.cov2.shape:
            raise ValueError("depth and cov2 must be 2D arrays of the same shape")


def _normalized(v: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(v))
    return v / norm if norm > 0.0 else v


def px2cam(px) -> np.ndarray:
    """Point on the normalized plane (z = 1) seen at pixel ``px``."""
    p = np.asarray(px, dtype=float)
    return np.array([(p[0] - CX) / FX, (p[1] - CY) / FY, 1.0])


def cam2px(p_cam) -> np.ndarray:
    """Pixel at which a camera-frame point projects."""
    p = np.asarray(p_cam, dtype=float)
    return np.array([p[0] * FX / p[2] + CX, p[1] * FY / p[2] + CY])


def inside(pt) -> bool:
    """Whether ``pt`` lies inside the image, keeping a border margin."""
    x, y = float(pt[0]), float(pt[1])
    return x >= BOARDER and y >= BOARDER and x + BOARDER < WIDTH and y + BOARDER <= HEIGHT


def _bilinear_many(image: np.ndarray, xs, ys) -> np.ndarray:
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    x0 = np.trunc(xs).astype(int)
    y0 = np.trunc(ys).astype(int)
    rows, cols = image.shape[:2]
    if np.any(x0 < 0) or np.any(y0 < 0) or np.any(x0 + 1 >= cols) or np.any(y0 + 1 >= rows):
        raise IndexError("interpolation point lies outside the image")
    xx = xs - np.floor(xs)
    yy = ys - np.floor(ys)
    img = image.astype(float)
    return (
        (1 - xx) * (1 - yy) * img[y0, x0]
        + xx * (1 - yy) * img[y0, x0 + 1]
        + (1 - xx) * yy * img[y0 + 1, x0]
        + xx * yy * img[y0 + 1, x0 + 1]
    ) / 255.0


def bilinear(image, pt) -> float:
    """Bilinearly interpolated intensity of a grayscale image, scaled to [0, 1]."""
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("image must be a 2D grayscale array")
    return float(_bilinear_many(img, pt[0], pt[1]))


_OFFSETS_X, _OFFSETS_Y = np.meshgrid(
    np.arange(-NCC_WINDOW_SIZE, NCC_WINDOW_SIZE + 1),
    np.arange(-NCC_WINDOW_SIZE, NCC_WINDOW_SIZE + 1),
    indexing="ij",
)


def ncc(ref, curr, pt_ref, pt_curr) -> float:
    """Zero-mean normalized cross-correlation of the windows around two points."""
    ref_img = np.asarray(ref)
    curr_img = np.asarray(curr)
    cols = np.trunc(_OFFSETS_X + float(pt_ref[0])).astype(int)
    rows = np.trunc(_OFFSETS_Y + float(pt_ref[1])).astype(int)
    if (np.any(rows < 0) or np.any(cols < 0)
            or np.any(rows >= ref_img.shape[0]) or np.any(cols >= ref_img.shape[1])):
        raise IndexError("reference window lies outside the image")
    values_ref = ref_img[rows, cols].astype(float) / 255.0
    values_curr = _bilinear_many(
        curr_img, _OFFSETS_X + float(pt_curr[0]), _OFFSETS_Y + float(pt_curr[1])
    )
    mean_ref = values_ref.sum() / NCC_AREA
    mean_curr = values_curr.sum() / NCC_AREA
    dr = values_ref - mean_ref
    dc = values_curr - mean_curr
    numerator = float((dr * dc).sum())
    denominator1 = float((dr * dr).sum())
    denominator2 = float((dc * dc).sum())
    return numerator / math.sqrt(denominator1 * denominator2 + 1e-10)


def epipolar_search(ref, curr, t_c_r: SE3, pt_ref, depth_mu: float,
                    depth_cov: float) -> Optional[tuple[np.ndarray, np.ndarray]]:
    """Search the epipolar line for the match of ``pt_ref``.

    Returns ``(pt_curr, epipolar_direction)``, or ``None`` when no candidate
    reaches the NCC threshold.
    """
    ref_img = np.asarray(ref)
    curr_img = np.asarray(curr)
    f_ref = _normalized(px2cam(pt_ref))
    px_mean_curr = cam2px(t_c_r * (f_ref * depth_mu))
    d_min = max(depth_mu - 3.0 * depth_cov, _MIN_DEPTH)
    d_max = depth_mu + 3.0 * depth_cov
    px_min_curr = cam2px(t_c_r * (f_ref * d_min))
    px_max_curr = cam2px(t_c_r * (f_ref * d_max))

    epipolar_line = px_max_curr - px_min_curr
    direction = _normalized(epipolar_line)
    half_length = min(0.5 * float(np.linalg.norm(epipolar_line)), _MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px: Optional[np.ndarray] = None
    step = -half_length
    while step <= half_length:
        px_curr = px_mean_curr + step * direction
        if inside(px_curr):
            score = ncc(ref_img, curr_img, pt_ref, px_curr)
            if score > best_ncc:
                best_ncc = score
                best_px = px_curr
        step += _SEARCH_STEP
    if best_ncc < _NCC_THRESHOLD or best_px is None:
        return None
    return best_px, direction


def update_depth_filter(pt_ref, pt_curr, t_c_r: SE3, epipolar_direction,
                        depth_map: DepthMap) -> tuple[float, float]:
    """Triangulate a match and fuse it into ``depth_map`` at ``pt_ref``.

    Returns the fused depth mean and variance.
    """
    t_r_c = t_c_r.inverse()
    f_ref = _normalized(px2cam(pt_ref))
    f_curr = _normalized(px2cam(pt_curr))
    t = t_r_c.translation
    f2 = t_r_c.rotation * f_curr

    with np.errstate(divide="ignore", invalid="ignore"):
        b0, b1 = np.float64(t @ f_ref), np.float64(t @ f2)
        a00 = np.float64(f_ref @ f_ref)
        a01 = -np.float64(f_ref @ f2)
        a10 = -a01
        a11 = -np.float64(f2 @ f2)
        det = a00 * a11 - a01 * a10
        ans0 = (a11 * b0 - a01 * b1) / det
        ans1 = (-a10 * b0 + a00 * b1) / det
        xm = ans0 * f_ref
        xn = t + ans1 * f2
        p_esti = (xm + xn) / 2.0
        depth_estimation = np.float64(np.linalg.norm(p_esti))

        p = f_ref * depth_estimation
        a = p - t
        t_norm = np.float64(np.linalg.norm(t))
        alpha = np.arccos(np.float64(f_ref @ t) / t_norm)
        f_curr_prime = _normalized(px2cam(np.asarray(pt_curr, dtype=float)
                                          + np.asarray(epipolar_direction, dtype=float)))
        beta_prime = np.arccos(np.float64(f_curr_prime @ -t) / t_norm)
        gamma = np.pi - alpha - beta_prime
        p_prime = t_norm * np.sin(beta_prime) / np.sin(gamma)
        d_cov = p_prime - depth_estimation
        d_cov2 = d_cov * d_cov
        del a

        row, col = int(pt_ref[1]), int(pt_ref[0])
        mu = depth_map.depth[row, col]
        sigma2 = depth_map.cov2[row, col]
        mu_fuse = (d_cov2 * mu + sigma2 * depth_estimation) / (sigma2 + d_cov2)
        sigma_fuse2 = (sigma2 * d_cov2) / (sigma2 + d_cov2)

    depth_map.depth[row, col] = mu_fuse
    depth_map.cov2[row, col] = sigma_fuse2
    return float(mu_fuse), float(sigma_fuse2)


def update(ref, curr, t_c_r: SE3, depth_map: DepthMap) -> int:
    """Refine every unconverged pixel of ``depth_map``; returns how many were updated."""
    ref_img = np.asarray(ref)
    curr_img = np.asarray(curr)
    rows, cols = depth_map.depth.shape
    cov = depth_map.cov2
    active = np.zeros((rows, cols), dtype=bool)
    active[BOARDER:rows - BOARDER, BOARDER:cols - BOARDER] = True
    active &= ~((cov < MIN_COV) | (cov > MAX_COV))
    xs, ys = np.nonzero(active.T)
    updated = 0
    for x, y in zip(xs.tolist(), ys.tolist()):
        pt_ref = np.array([x, y], dtype=float)
        found = epipolar_search(
            ref_img, curr_img, t_c_r, pt_ref,
            float(depth_map.depth[y, x]), math.sqrt(float(cov[y, x])) if cov[y, x] >= 0 else math.nan,
        )
        if found is None:
            continue
        pt_curr, direction = found
        update_depth_filter(pt_ref, pt_curr, t_c_r, direction, depth_map)
        updated += 1
    return updated


def evaluate_depth(depth_truth, depth_estimate) -> tuple[float, float]:
    """Mean squared error and mean error of the estimate, ignoring the border."""
    truth = np.asarray(depth_truth, dtype=float)
    estimate = np.asarray(depth_estimate, dtype=float)
    if truth.ndim != 2 or truth.shape != estimate.shape:
        raise ValueError("depth maps must be 2D arrays of the same shape")
    rows, cols = truth.shape
    error = (truth - estimate)[BOARDER:rows - BOARDER, BOARDER:cols - BOARDER]
    if error.size == 0:
        raise ValueError("depth maps are too small to evaluate")
    return float((error * error).mean()), float(error.mean())


def read_dataset_files(path) -> tuple[list[str], list[SE3], np.ndarray]:
    """Image paths, camera-to-world poses and the reference depth map of a dataset."""
    root = Path(path)
    tokens = (root / _TRAJECTORY_FILE).read_text(encoding="utf-8").split()
    files: list[str] = []
    poses: list[SE3] = []
    for start in range(0, len(tokens) - 7, 8):
        image = tokens[start]
        tx, ty, tz, qx, qy, qz, qw = (float(v) for v in tokens[start + 1:start + 8])
        files.append(str(root / "images" / image))
        poses.append(SE3.from_quaternion((qw, qx, qy, qz), (tx, ty, tz)))

    values = (root / _REFERENCE_DEPTH_FILE).read_text(encoding="utf-8").split()
    count = HEIGHT * WIDTH
    depth = np.zeros(count)
    numbers = np.array([float(v) for v in values[:count]])
    depth[:len(numbers)] = numbers
    return files, poses, depth.reshape(HEIGHT, WIDTH) / 100.0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Dense monocular depth estimation.")
    parser.add_argument("dataset", help="path to the test dataset")
    parser.add_argument("--output", default="depth.png")
    args = parser.parse_args(argv)

    try:
        files, poses, ref_depth = read_dataset_files(args.dataset)
    except (OSError, ValueError):
        files = []
    if not files:
        print("Reading image files failed!")
        return 1
    print(f"read total {len(files)} files.")

    ref = load_image(files[0], grayscale=True)
    pose_ref = poses[0]
    depth_map = DepthMap()
    for index in range(1, len(files)):
        print(f"*** loop {index} ***")
        try:
            curr = load_image(files[index], grayscale=True)
        except OSError:
            continue
        t_c_r = poses[index].inverse() * pose_ref
        update(ref, curr, t_c_r, depth_map)
        mse, mean_error = evaluate_depth(ref_depth, depth_map.depth)
        print(f"Average squared error = {mse}, average error: {mean_error}")

    print("estimation returns, saving depth map ...")
    saved = np.clip(np.rint(np.nan_to_num(depth_map.depth)), 0, 255).astype(np.uint8)
    Image.fromarray(saved).save(args.output)
    print("done.")
    return 0