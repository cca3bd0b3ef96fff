"""Multi-resolution likelihood-field matching of a scan against an occupancy map."""

from __future__ import annotations

import logging
import math

import numpy as np

from slam2d.geometry import SE2, Scan2d
from slam2d.likelihood_field import FIELD_MAX, build_model
from slam2d.optimization import LikelihoodEdge, optimize_pose

logger = logging.getLogger(__name__)

LEVEL_SIZES = (125, 250, 500, 1000)
RESOLUTIONS = (2.5, 5.0, 10.0, 20.0)  # pixels per metre
RATIOS = (0.125, 0.25, 0.5, 1.0)  # scale relative to the occupancy grid
_HUBER_DELTAS = (0.2, 0.3, 0.6, 0.8)
_MODEL_RADIUS = 20
_OCCU_BORDER = 25
_RANGE_LIMIT = 15.0
_SIDE_CUT = 30 * math.pi / 180.0
_ITERATIONS = 10
_MIN_INLIERS = 100
_INLIER_RATIO_TH = 0.4
_STAMP_CHUNK = 4096


def _usable_returns(scan: Scan2d) -> list[tuple[float, float]]:
    lo = scan.angle_min + _SIDE_CUT
    hi = scan.angle_max - _SIDE_CUT
    return [
        (r, angle)
        for _, r, angle in scan.valid_points()
        if r <= _RANGE_LIMIT and lo <= angle <= hi
    ]


class MRLikelihoodField:
    """A pyramid of likelihood fields, matched coarse to fine."""

    levels = len(LEVEL_SIZES)

    def __init__(self) -> None:
        model = build_model(_MODEL_RADIUS)
        self._dx = np.array([m.dx for m in model], dtype=float)
        self._dy = np.array([m.dy for m in model], dtype=float)
        self._residual = np.array([m.residual for m in model], dtype=np.float32)
        self.fields = [np.full((n, n), FIELD_MAX, dtype=np.float32) for n in LEVEL_SIZES]
        self.pose = SE2()
        self.source: Scan2d | None = None
        self.num_inliers: list[int] = []
        self.inlier_ratios: list[float] = []

    def resolution(self, level: int = 0) -> float:
        """Pixels per metre of the given pyramid level."""
        return RESOLUTIONS[level]

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def _stamp(self, field: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> None:
        rows, cols = field.shape
        for start in range(0, len(xs), _STAMP_CHUNK):
            cx = xs[start:start + _STAMP_CHUNK]
            cy = ys[start:start + _STAMP_CHUNK]
            xx = (cx[:, None] + self._dx[None, :]).astype(int)
            yy = (cy[:, None] + self._dy[None, :]).astype(int)
            residual = np.broadcast_to(self._residual, xx.shape)
            mask = (xx >= 0) & (xx < cols) & (yy >= 0) & (yy < rows)
            np.minimum.at(field, (yy[mask], xx[mask]), residual[mask])

    def set_field_image_from_occu_map(self, occu_map) -> None:
        """Lower every level's field around the occupied cells (value < 127) of a grid."""
        grid = np.asarray(occu_map)
        if grid.ndim != 2:
            raise ValueError("occupancy map must be a single-channel image")
        rows, cols = grid.shape
        region = grid[_OCCU_BORDER:rows - _OCCU_BORDER, _OCCU_BORDER:cols - _OCCU_BORDER]
        ys, xs = np.nonzero(region < 127)
        xs = (xs + _OCCU_BORDER).astype(float)
        ys = (ys + _OCCU_BORDER).astype(float)
        if len(xs) == 0:
            return
        for field, ratio in zip(self.fields, RATIOS):
            self._stamp(field, xs * ratio, ys * ratio)

    def _require_source(self) -> Scan2d:
        if self.source is None:
            raise RuntimeError("source scan is not set")
        return self.source

    def align_in_level(self, level: int, init_pose: SE2) -> SE2 | None:
        """Align the source in one level; the refined pose, or None if rejected."""
        if not 0 <= level < self.levels:
            raise IndexError(f"level {level} out of range")
        source = self._require_source()
        field = self.fields[level]
        res = RESOLUTIONS[level]
        delta = _HUBER_DELTAS[level]

        edges = []
        for r, angle in _usable_returns(source):
            edge = LikelihoodEdge(field, r, angle, res)
            if not edge.is_outside(init_pose):
                edges.append(edge)
        if not edges:
            return None

        pose = optimize_pose(init_pose, edges, huber_delta=delta, iterations=_ITERATIONS)
        chi2 = [edge.chi2(pose) for edge in edges]
        num_inliers = sum(1 for edge, c in zip(edges, chi2) if edge.level == 0 and c < delta)
        ratio = num_inliers / len(edges)
        self.num_inliers.append(num_inliers)
        self.inlier_ratios.append(ratio)

        if num_inliers > _MIN_INLIERS and ratio > _INLIER_RATIO_TH:
            return pose
        return None

    def align_g2o(self, init_pose: SE2) -> SE2 | None:
        """Align through every level, coarse to fine; None if any level rejects."""
        self.num_inliers.clear()
        self.inlier_ratios.clear()
        pose = init_pose
        for level in range(self.levels):
            refined = self.align_in_level(level, pose)
            if refined is None:
                return None
            pose = refined
        for level, (count, ratio) in enumerate(zip(self.num_inliers, self.inlier_ratios)):
            logger.info("level %d inliers: %d, ratio: %g", level, count, ratio)
        return pose

    def get_field_image(self) -> list[np.ndarray]:
        """Each level's field as an 8-bit, three-channel grey image."""
        images = []
        for field in self.fields:
            gray = (field * 255.0 / FIELD_MAX).astype(np.uint8)
            images.append(np.repeat(gray[:, :, None], 3, axis=2))
        return images