"""Likelihood-field edges, single-pose alignment and SE2 pose-graph optimisation."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Sequence, TypeVar

import numpy as np

from slam2d.geometry import SE2

IMAGE_BORDER = 10
_LM_TAU = 1e-5
_LM_MAX_TRIALS = 10
_NUMERIC_DELTA = 1e-6

_State = TypeVar("_State")


def pixel_value(image: np.ndarray, x: float, y: float) -> float:
    """Bilinearly interpolated value of ``image`` at column ``x``, row ``y``."""
    rows, cols = image.shape[:2]
    x = min(max(float(x), 0.0), cols - 1.0)
    y = min(max(float(y), 0.0), rows - 1.0)
    x0, y0 = int(math.floor(x)), int(math.floor(y))
    x1, y1 = min(x0 + 1, cols - 1), min(y0 + 1, rows - 1)
    xx, yy = x - x0, y - y0
    return float(
        (1 - xx) * (1 - yy) * image[y0, x0]
        + xx * (1 - yy) * image[y0, x1]
        + (1 - xx) * yy * image[y1, x0]
        + xx * yy * image[y1, x1]
    )


def _huber(e2: float, delta: float | None) -> tuple[float, float]:
    if delta is None or e2 <= delta * delta:
        return e2, 1.0
    root = math.sqrt(e2)
    return 2.0 * root * delta - delta * delta, delta / root


def _cauchy(e2: float, delta: float | None) -> tuple[float, float]:
    if delta is None:
        return e2, 1.0
    d2 = delta * delta
    aux = e2 / d2 + 1.0
    return d2 * math.log(aux), 1.0 / aux


def _levenberg_marquardt(
    state: _State,
    linearize: Callable[[_State], tuple[np.ndarray, np.ndarray]],
    update: Callable[[_State, np.ndarray], _State],
    cost: Callable[[_State], float],
    iterations: int,
) -> _State:
    current_cost = cost(state)
    lam: float | None = None
    nu = 2.0
    for _ in range(iterations):
        hessian, b = linearize(state)
        if lam is None:
            lam = _LM_TAU * max(float(np.max(np.diag(hessian))), 1e-12)
        identity = np.eye(len(b))
        improved = False
        for _ in range(_LM_MAX_TRIALS):
            try:
                dx = np.linalg.solve(hessian + lam * identity, b)
            except np.linalg.LinAlgError:
                dx = None
            if dx is None or not np.all(np.isfinite(dx)):
                lam *= nu
                nu *= 2.0
                continue
            candidate = update(state, dx)
            new_cost = cost(candidate)
            scale = float(dx @ (lam * dx + b)) + 1e-3
            rho = (current_cost - new_cost) / scale
            if rho > 0 and math.isfinite(new_cost):
                state, current_cost = candidate, new_cost
                alpha = min(1.0 - (2.0 * rho - 1.0) ** 3, 2.0 / 3.0)
                lam *= max(1.0 / 3.0, alpha)
                nu = 2.0
                improved = True
                break
            lam *= nu
            nu *= 2.0
        if not improved:
            break
    return state


class LikelihoodEdge:
    """Unary edge scoring one laser return against a likelihood-field image."""

    def __init__(self, field_image: np.ndarray, scan_range: float, angle: float, resolution: float = 10.0):
        self.field_image = field_image
        self.scan_range = float(scan_range)
        self.angle = float(angle)
        self.resolution = float(resolution)
        self.level = 0

    def _image_coords(self, pose: SE2) -> np.ndarray:
        rows, cols = self.field_image.shape[:2]
        local = np.array([self.scan_range * math.cos(self.angle), self.scan_range * math.sin(self.angle)])
        return pose.transform(local) * self.resolution + np.array([rows // 2, cols // 2], dtype=float)

    def _inside(self, px: float, py: float) -> bool:
        rows, cols = self.field_image.shape[:2]
        return IMAGE_BORDER <= px < cols - IMAGE_BORDER and IMAGE_BORDER <= py < rows - IMAGE_BORDER

    def is_outside(self, pose: SE2) -> bool:
        pf = self._image_coords(pose)
        return not self._inside(int(pf[0]), int(pf[1]))

    def error(self, pose: SE2) -> float:
        px, py = self._image_coords(pose) - 0.5
        if self._inside(px, py):
            return pixel_value(self.field_image, px, py)
        self.level = 1
        return 0.0

    def jacobian(self, pose: SE2) -> np.ndarray:
        px, py = self._image_coords(pose) - 0.5
        if not self._inside(px, py):
            self.level = 1
            return np.zeros(3)
        img = self.field_image
        dx = 0.5 * (pixel_value(img, px + 1, py) - pixel_value(img, px - 1, py))
        dy = 0.5 * (pixel_value(img, px, py + 1) - pixel_value(img, px, py - 1))
        res, r, a = self.resolution, self.scan_range, self.angle + pose.theta
        return np.array(
            [res * dx, res * dy, -res * dx * r * math.sin(a) + res * dy * r * math.cos(a)]
        )

    def chi2(self, pose: SE2) -> float:
        e = self.error(pose)
        return e * e


def optimize_pose(
    pose: SE2,
    edges: Sequence[LikelihoodEdge],
    huber_delta: float | None = None,
    iterations: int = 10,
) -> SE2:
    """Levenberg-Marquardt over one SE2 pose with Huber-robustified likelihood edges."""
    active = [e for e in edges if e.level == 0]
    if not active:
        return pose

    def cost(p: SE2) -> float:
        return sum(_huber(e.chi2(p), huber_delta)[0] for e in active)

    def linearize(p: SE2) -> tuple[np.ndarray, np.ndarray]:
        hessian, b = np.zeros((3, 3)), np.zeros(3)
        for e in active:
            err = e.error(p)
            jac = e.jacobian(p)
            weight = _huber(err * err, huber_delta)[1]
            hessian += weight * np.outer(jac, jac)
            b -= weight * jac * err
        return hessian, b

    return _levenberg_marquardt(pose, linearize, lambda p, dx: p.oplus(dx), cost, iterations)


@dataclass
class PoseGraphEdge:
    """Relative-pose constraint; error = log(T1^-1 * T2 * Z^-1)."""

    id1: int
    id2: int
    measurement: SE2
    information: np.ndarray = field(default_factory=lambda: np.eye(3))
    cauchy_delta: float | None = None
    level: int = 0

    def error(self, pose1: SE2, pose2: SE2) -> np.ndarray:
        return (pose1.inverse() * pose2 * self.measurement.inverse()).log()


class PoseGraph:
    """A graph of SE2 vertices joined by relative-pose edges."""

    def __init__(self) -> None:
        self._poses: dict[int, SE2] = {}
        self.edges: list[PoseGraphEdge] = []

    @property
    def vertex_ids(self) -> list[int]:
        return sorted(self._poses)

    def add_vertex(self, vertex_id: int, pose: SE2) -> None:
        self._poses[vertex_id] = pose

    def add_edge(
        self,
        id1: int,
        id2: int,
        measurement: SE2,
        information=None,
        cauchy_delta: float | None = None,
    ) -> PoseGraphEdge:
        for vertex_id in (id1, id2):
            if vertex_id not in self._poses:
                raise KeyError(f"unknown vertex {vertex_id}")
        info = np.eye(3) if information is None else np.asarray(information, dtype=float)
        edge = PoseGraphEdge(id1, id2, measurement, info, cauchy_delta)
        self.edges.append(edge)
        return edge

    def pose(self, vertex_id: int) -> SE2:
        return self._poses[vertex_id]

    def _edge_chi2(self, edge: PoseGraphEdge, poses: dict[int, SE2]) -> float:
        e = edge.error(poses[edge.id1], poses[edge.id2])
        return float(e @ edge.information @ e)

    def chi2(self, edge: PoseGraphEdge) -> float:
        return self._edge_chi2(edge, self._poses)

    def optimize(self, iterations: int = 10) -> None:
        """Run Levenberg-Marquardt over all vertices using the level-0 edges."""
        active = [e for e in self.edges if e.level == 0]
        if not active:
            return
        order = {vid: i for i, vid in enumerate(sorted(self._poses))}
        size = 3 * len(order)

        def cost(poses: dict[int, SE2]) -> float:
            return sum(_cauchy(self._edge_chi2(e, poses), e.cauchy_delta)[0] for e in active)

        def numeric_jacobian(edge: PoseGraphEdge, poses: dict[int, SE2], which: int) -> np.ndarray:
            jac = np.zeros((3, 3))
            for k in range(3):
                step = np.zeros(3)
                step[k] = _NUMERIC_DELTA
                plus, minus = dict(poses), dict(poses)
                vid = edge.id1 if which == 0 else edge.id2
                plus[vid] = poses[vid].oplus(step)
                minus[vid] = poses[vid].oplus(-step)
                e_plus = edge.error(plus[edge.id1], plus[edge.id2])
                e_minus = edge.error(minus[edge.id1], minus[edge.id2])
                jac[:, k] = (e_plus - e_minus) / (2.0 * _NUMERIC_DELTA)
            return jac

        def linearize(poses: dict[int, SE2]) -> tuple[np.ndarray, np.ndarray]:
            hessian, b = np.zeros((size, size)), np.zeros(size)
            for edge in active:
                err = edge.error(poses[edge.id1], poses[edge.id2])
                weight = _cauchy(float(err @ edge.information @ err), edge.cauchy_delta)[1]
                omega = weight * edge.information
                blocks = [
                    (order[edge.id1], numeric_jacobian(edge, poses, 0)),
                    (order[edge.id2], numeric_jacobian(edge, poses, 1)),
                ]
                for i, ji in blocks:
                    b[3 * i:3 * i + 3] -= ji.T @ omega @ err
                    for j, jj in blocks:
                        hessian[3 * i:3 * i + 3, 3 * j:3 * j + 3] += ji.T @ omega @ jj
            return hessian, b

        def update(poses: dict[int, SE2], dx: np.ndarray) -> dict[int, SE2]:
            return {vid: p.oplus(dx[3 * order[vid]:3 * order[vid] + 3]) for vid, p in poses.items()}

        self._poses = _levenberg_marquardt(dict(self._poses), linearize, update, cost, iterations)