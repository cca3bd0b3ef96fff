"""Likelihood-field scan matching against a target scan or an occupancy map."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from slam2d.geometry import SE2, Scan2d
from slam2d.optimization import LikelihoodEdge, optimize_pose

logger = logging.getLogger(__name__)

FIELD_SIZE = 1000
FIELD_MAX = 30.0
_CENTER = FIELD_SIZE // 2
_MODEL_RADIUS = 20
_RESOLUTION = 20.0  # pixels per metre
_OCCU_BORDER = 25
_IMAGE_BORDER = 20
_ITERATIONS = 10
_MIN_EFFECTIVE_POINTS = 20
_SIDE_CUT = 30 * math.pi / 180.0
_RANGE_LIMIT = 15.0
_HUBER_DELTA = 0.8


@dataclass(frozen=True)
class ModelPoint:
    """One template cell: pixel offset and its distance from the template centre."""

    dx: int
    dy: int
    residual: float


def build_model(radius: int = _MODEL_RADIUS) -> list[ModelPoint]:
    """The square distance template of half-width ``radius`` pixels."""
    return [
        ModelPoint(x, y, math.sqrt(x * x + y * y))
        for x in range(-radius, radius + 1)
        for y in range(-radius, radius + 1)
    ]


def _side_cut_arrays(scan: Scan2d, range_limit: float = math.inf) -> tuple[np.ndarray, np.ndarray]:
    data = [
        (r, angle)
        for _, r, angle in scan.valid_points()
        if r <= range_limit
        and scan.angle_min + _SIDE_CUT <= angle <= scan.angle_max - _SIDE_CUT
    ]
    if not data:
        return np.zeros(0), np.zeros(0)
    arr = np.array(data)
    return arr[:, 0], arr[:, 1]


class LikelihoodField:
    """A distance field around target points, used to align a source scan."""

    resolution = _RESOLUTION

    def __init__(self) -> None:
        self.model = build_model(_MODEL_RADIUS)
        self._dx = np.array([m.dx for m in self.model], dtype=float)
        self._dy = np.array([m.dy for m in self.model], dtype=float)
        self._residual = np.array([m.residual for m in self.model], dtype=np.float32)
        self.field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        self.pose = SE2()
        self.target: Scan2d | None = None
        self.source: Scan2d | None = None
        self.has_outside_points = False

    def _stamp(self, xs: np.ndarray, ys: np.ndarray) -> None:
        if len(xs) == 0:
            return
        xx = (xs[:, None] + self._dx[None, :]).astype(int)
        yy = (ys[:, None] + self._dy[None, :]).astype(int)
        residual = np.broadcast_to(self._residual, xx.shape)
        rows, cols = self.field.shape
        mask = (xx >= 0) & (xx < cols) & (yy >= 0) & (yy < rows)
        np.minimum.at(self.field, (yy[mask], xx[mask]), residual[mask])

    def set_target_scan(self, scan: Scan2d) -> None:
        """Rebuild the field around the points of ``scan``."""
        self.target = scan
        self.field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        data = [(r, angle) for _, r, angle in scan.valid_points()]
        if not data:
            return
        arr = np.array(data)
        ranges, angles = arr[:, 0], arr[:, 1]
        xs = ranges * np.cos(angles) * self.resolution + _CENTER
        ys = ranges * np.sin(angles) * self.resolution + _CENTER
        self._stamp(xs, ys)

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def set_field_image_from_occu_map(self, occu_map) -> None:
        """Rebuild the field around the occupied cells (value < 127) of a grid image."""
        grid = np.asarray(occu_map)
        if grid.ndim != 2:
            raise ValueError("occupancy map must be a single-channel image")
        self.field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        rows, cols = grid.shape
        region = grid[_OCCU_BORDER:rows - _OCCU_BORDER, _OCCU_BORDER:cols - _OCCU_BORDER]
        ys, xs = np.nonzero(region < 127)
        self._stamp((xs + _OCCU_BORDER).astype(float), (ys + _OCCU_BORDER).astype(float))

    def _require_source(self) -> Scan2d:
        if self.source is None:
            raise RuntimeError("source scan is not set")
        return self.source

    def align_gauss_newton(self, init_pose: SE2) -> SE2 | None:
        """Gauss-Newton alignment; returns the estimated pose or None on failure."""
        ranges, angles = _side_cut_arrays(self._require_source())
        local = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)])
        rows, cols = self.field.shape
        res = self.resolution
        pose = init_pose
        last_cost = 0.0
        self.has_outside_points = False

        for iteration in range(_ITERATIONS):
            if len(ranges) == 0:
                return None
            world = pose.transform(local)
            pf = (world * res + _CENTER).astype(int)
            px, py = pf[:, 0], pf[:, 1]
            inside = (
                (px >= _IMAGE_BORDER)
                & (px < cols - _IMAGE_BORDER)
                & (py >= _IMAGE_BORDER)
                & (py < rows - _IMAGE_BORDER)
            )
            if not inside.all():
                self.has_outside_points = True
            count = int(inside.sum())
            if count < _MIN_EFFECTIVE_POINTS:
                return None

            px, py = px[inside], py[inside]
            r = ranges[inside]
            a = angles[inside] + pose.theta
            f = self.field
            gx = 0.5 * (f[py, px + 1] - f[py, px - 1])
            gy = 0.5 * (f[py + 1, px] - f[py - 1, px])
            jac = np.column_stack(
                [res * gx, res * gy, -res * gx * r * np.sin(a) + res * gy * r * np.cos(a)]
            )
            err = f[py, px].astype(float)
            hessian = jac.T @ jac
            b = -(jac.T @ err)
            cost = float(np.sum(err * err))

            try:
                dx = np.linalg.solve(hessian, b)
            except np.linalg.LinAlgError:
                break
            if math.isnan(dx[0]):
                break
            cost /= count
            if iteration > 0 and cost >= last_cost:
                break
            logger.info("iter %d cost = %g, effect num: %d", iteration, cost, count)
            pose = pose.oplus(dx)
            last_cost = cost

        return pose

    def align_g2o(self, init_pose: SE2) -> SE2:
        """Robust Levenberg-Marquardt alignment over likelihood-field edges.

        With a submap field, ``init_pose`` and the result are relative to the submap.
        """
        ranges, angles = _side_cut_arrays(self._require_source(), _RANGE_LIMIT)
        self.has_outside_points = False
        edges = []
        for r, angle in zip(ranges, angles):
            edge = LikelihoodEdge(self.field, r, angle, self.resolution)
            if edge.is_outside(init_pose):
                self.has_outside_points = True
                continue
            edges.append(edge)
        return optimize_pose(init_pose, edges, huber_delta=_HUBER_DELTA, iterations=_ITERATIONS)

    def get_field_image(self) -> np.ndarray:
        """The field as an 8-bit, three-channel grey image."""
        gray = (self.field * 255.0 / FIELD_MAX).astype(np.uint8)
        return np.repeat(gray[:, :, None], 3, axis=2)