"""Pose graph optimisation with poses on SE(3) and errors in its Lie algebra.

Graphs are read from and written to the text format with
``VERTEX_SE3:QUAT id tx ty tz qx qy qz qw`` and
``EDGE_SE3:QUAT id1 id2 tx ty tz qx qy qz qw`` followed by the 21
upper-triangle entries of the 6x6 information matrix.
"""
from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, TextIO

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from .lie import SE3

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"

_POSE_FIELDS = 7
_INFO_FIELDS = 21
_TAU = 1e-5
_MAX_TRIALS = 10
_BLOCK_ROWS = np.repeat(np.arange(6), 6)
_BLOCK_COLS = np.tile(np.arange(6), 6)


def jr_inv(error) -> np.ndarray:
    """Approximate inverse right Jacobian used for the edge Jacobians.

    The approximation in use is the identity, whatever the error.
    """
    if not isinstance(error, SE3):
        error = SE3.exp(error)
    return np.eye(6)


def _pose_from_values(values) -> SE3:
    tx, ty, tz, qx, qy, qz, qw = values
    return SE3.from_quaternion((qw, qx, qy, qz), (tx, ty, tz))


def _pose_text(pose: SE3) -> str:
    w, x, y, z = pose.unit_quaternion()
    numbers = [*pose.translation, x, y, z, w]
    return " ".join(f"{v:g}" for v in numbers)


def _reorthonormalize(pose: SE3) -> SE3:
    return SE3.from_quaternion(pose.unit_quaternion(), pose.translation)


@dataclass
class Vertex:
    """A pose in the graph; fixed vertices are not optimised."""

    id: int
    estimate: SE3 = field(default_factory=SE3)
    fixed: bool = False


@dataclass
class Edge:
    """A relative-pose measurement between vertices ``v1`` and ``v2``."""

    id: int
    v1: int
    v2: int
    measurement: SE3 = field(default_factory=SE3)
    information: np.ndarray = field(default_factory=lambda: np.eye(6))

    def __post_init__(self):
        info = np.array(self.information, dtype=float)
        if info.shape != (6, 6):
            raise ValueError(f"information must have shape (6, 6), got {info.shape}")
        self.information = info

    def error(self, graph: "PoseGraph") -> np.ndarray:
        """Twist ``log(Z^-1 T1^-1 T2)`` of this edge in ``graph``."""
        t1 = graph.vertices[self.v1].estimate
        t2 = graph.vertices[self.v2].estimate
        return (self.measurement.inverse() * t1.inverse() * t2).log()


@dataclass
class PoseGraph:
    """Vertices keyed by id, in insertion order, and the edges between them."""

    vertices: dict[int, Vertex] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)

    @classmethod
    def read(cls, stream: Iterable[str]) -> "PoseGraph":
        """Parse a graph; vertex 0 is fixed and unknown record types are skipped."""
        graph = cls()
        for number, line in enumerate(stream, start=1):
            tokens = line.split()
            if not tokens:
                continue
            tag = tokens[0]
            try:
                if tag == VERTEX_TAG:
                    graph._read_vertex(tokens)
                elif tag == EDGE_TAG:
                    graph._read_edge(tokens)
            except ValueError as exc:
                raise ValueError(f"line {number}: {exc}") from exc
        return graph

    def _read_vertex(self, tokens: list[str]) -> None:
        if len(tokens) < 2 + _POSE_FIELDS:
            raise ValueError("incomplete vertex record")
        index = int(tokens[1])
        values = [float(t) for t in tokens[2:2 + _POSE_FIELDS]]
        self.vertices[index] = Vertex(index, _pose_from_values(values), fixed=index == 0)

    def _read_edge(self, tokens: list[str]) -> None:
        needed = 3 + _POSE_FIELDS + _INFO_FIELDS
        if len(tokens) < needed:
            raise ValueError("incomplete edge record")
        idx1, idx2 = int(tokens[1]), int(tokens[2])
        for idx in (idx1, idx2):
            if idx not in self.vertices:
                raise ValueError(f"edge refers to unknown vertex {idx}")
        values = [float(t) for t in tokens[3:3 + _POSE_FIELDS]]
        info_values = iter(float(t) for t in tokens[3 + _POSE_FIELDS:needed])
        information = np.zeros((6, 6))
        for i in range(6):
            for j in range(i, 6):
                information[i, j] = information[j, i] = next(info_values)
        self.edges.append(
            Edge(len(self.edges), idx1, idx2, _pose_from_values(values), information)
        )

    def write(self, stream: TextIO) -> None:
        """Write all vertices, then all edges, in the graph's text format."""
        for vertex in self.vertices.values():
            stream.write(f"{VERTEX_TAG} {vertex.id} {_pose_text(vertex.estimate)}\n")
        for edge in self.edges:
            info = " ".join(
                f"{edge.information[i, j]:g}" for i in range(6) for j in range(i, 6)
            )
            stream.write(
                f"{EDGE_TAG} {edge.v1} {edge.v2} {_pose_text(edge.measurement)} {info} \n"
            )

    def total_error(self) -> float:
        """Sum over edges of ``e^T Omega e``."""
        total = 0.0
        for edge in self.edges:
            e = edge.error(self)
            total += float(e @ edge.information @ e)
        return total

    def _linear_system(self, index: dict[int, int], size: int):
        rows, cols, vals = [], [], []
        b = np.zeros(size)
        chi2 = 0.0
        for edge in self.edges:
            e = edge.error(self)
            omega = edge.information
            chi2 += float(e @ omega @ e)
            adj = self.vertices[edge.v2].estimate.inverse().adjoint()
            j = jr_inv(SE3.exp(e))
            blocks = [(index.get(edge.v1), -j @ adj), (index.get(edge.v2), j @ adj)]
            for a, ja in blocks:
                if a is None:
                    continue
                weighted = ja.T @ omega
                b[6 * a:6 * a + 6] -= weighted @ e
                for c, jc in blocks:
                    if c is None:
                        continue
                    rows.append(6 * a + _BLOCK_ROWS)
                    cols.append(6 * c + _BLOCK_COLS)
                    vals.append((weighted @ jc).ravel())
        if vals:
            h = sparse.coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(size, size),
            ).tocsr()
        else:
            h = sparse.csr_matrix((size, size))
        return h, b, chi2

    def _apply(self, index: dict[int, int], dx: np.ndarray) -> None:
        for vid, i in index.items():
            vertex = self.vertices[vid]
            vertex.estimate = _reorthonormalize(SE3.exp(dx[6 * i:6 * i + 6]) * vertex.estimate)

    def optimize(self, iterations: int = 30) -> list[float]:
        """Levenberg-Marquardt with left-multiplied updates.

        Returns the total error after each accepted iteration; stops early
        when no step lowers the error.
        """
        free = [vid for vid, v in self.vertices.items() if not v.fixed]
        index = {vid: i for i, vid in enumerate(free)}
        size = 6 * len(free)
        history: list[float] = []
        if not free or not self.edges or iterations <= 0:
            return history
        identity = sparse.identity(size, format="csr")
        lam = None
        nu = 2.0
        for _ in range(iterations):
            h, b, chi2 = self._linear_system(index, size)
            if lam is None:
                lam = _TAU * max(float(h.diagonal().max()), 1e-12)
            backup = {vid: self.vertices[vid].estimate for vid in free}
            accepted = False
            new_chi2 = chi2
            for _trial in range(_MAX_TRIALS):
                with np.errstate(all="ignore"):
                    dx = np.asarray(spsolve((h + lam * identity).tocsc(), b)).reshape(-1)
                if np.all(np.isfinite(dx)):
                    self._apply(index, dx)
                    new_chi2 = self.total_error()
                    if np.isfinite(new_chi2) and new_chi2 < chi2:
                        predicted = float(dx @ (lam * dx + b))
                        rho = (chi2 - new_chi2) / predicted if predicted > 0 else 1.0
                        lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                        nu = 2.0
                        accepted = True
                        break
                    for vid, pose in backup.items():
                        self.vertices[vid].estimate = pose
                lam *= nu
                nu *= 2.0
            if not accepted:
                break
            history.append(new_chi2)
        return history


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Optimise a pose graph.")
    parser.add_argument("graph", help="pose graph file, e.g. sphere.g2o")
    parser.add_argument("--output", default="result_lie.g2o")
    parser.add_argument("--iterations", type=int, default=30)
    args = parser.parse_args(argv)

    path = Path(args.graph)
    if not path.is_file():
        print(f"file {args.graph} does not exist.")
        return 1
    with path.open(encoding="utf-8") as handle:
        graph = PoseGraph.read(handle)
    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("optimizing ...")
    print(f"initial chi2= {graph.total_error()}")
    for i, chi2 in enumerate(graph.optimize(args.iterations)):
        print(f"iteration= {i}\t chi2= {chi2}")
    print("saving optimization results ...")
    with open(args.output, "w", encoding="utf-8") as out:
        graph.write(out)
    return 0