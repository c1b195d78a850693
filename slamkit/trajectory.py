"""Reading TUM-style trajectories and comparing an estimate with ground truth."""
from __future__ import annotations

import argparse
import math
from pathlib import Path
from typing import Iterable

import numpy as np

from .lie import SE3

_FIELDS = 8


def parse_trajectory(lines: Iterable[str]) -> list[SE3]:
    """Poses from lines of ``time tx ty tz qx qy qz qw``.

    Blank lines and lines starting with ``#`` are skipped.
    """
    poses = []
    for number, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        parts = text.split()
        if len(parts) != _FIELDS:
            raise ValueError(f"line {number}: expected {_FIELDS} fields, got {len(parts)}")
        try:
            _time, tx, ty, tz, qx, qy, qz, qw = (float(p) for p in parts)
        except ValueError as exc:
            raise ValueError(f"line {number}: {exc}") from exc
        poses.append(SE3.from_quaternion((qw, qx, qy, qz), (tx, ty, tz)))
    return poses


def read_trajectory(path) -> list[SE3]:
    """Poses stored in a trajectory file."""
    with Path(path).open(encoding="utf-8") as handle:
        return parse_trajectory(handle)


def absolute_trajectory_rmse(groundtruth, estimated) -> float:
    """Root mean square of ``|log(T_gt^-1 T_est)|`` over paired poses."""
    gt = list(groundtruth)
    est = list(estimated)
    if not gt or not est:
        raise ValueError("trajectories must not be empty")
    if len(gt) != len(est):
        raise ValueError("trajectories must have the same length")
    total = sum(float(np.linalg.norm((g.inverse() * e).log())) ** 2 for g, e in zip(gt, est))
    return math.sqrt(total / len(est))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="RMSE between two trajectories.")
    parser.add_argument("groundtruth", nargs="?", default="./example/groundtruth.txt")
    parser.add_argument("estimated", nargs="?", default="./example/estimated.txt")
    args = parser.parse_args(argv)
    try:
        groundtruth = read_trajectory(args.groundtruth)
        estimated = read_trajectory(args.estimated)
    except FileNotFoundError as exc:
        print(f"trajectory {exc.filename} not found.")
        return 1
    print(f"read total {len(groundtruth)} pose entries")
    try:
        rmse = absolute_trajectory_rmse(groundtruth, estimated)
    except ValueError as exc:
        print(exc)
        return 1
    print(f"RMSE = {rmse}")
    return 0