"""Occupancy grid built from 2D laser frames."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

import numpy as np

from slam2d.frame import Frame
from slam2d.geometry import SE2, Scan2d

IMAGE_SIZE = 1000
RESOLUTION = 20.0  # pixels per metre
_INV_RESOLUTION = 0.05  # metres per pixel
_MODEL_SIZE = 400
_CLOSEST_TH = 0.2
_ENDPOINT_CLOSE_TH = 0.1
_UNKNOWN = 127
_OCCUPIED_LIMIT = 117
_FREE_LIMIT = 137
_RANGE_JUMP = 0.3
_KEY_SHIFT = 1 << 32


class GridMethod(Enum):
    """How free space between the sensor and the endpoints is filled."""

    MODEL_POINTS = "model_points"
    BRESENHAM = "bresenham"


@lru_cache(maxsize=1)
def _model() -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    offsets = np.arange(-_MODEL_SIZE, _MODEL_SIZE + 1)
    dx, dy = np.meshgrid(offsets, offsets, indexing="ij")
    dx, dy = dx.ravel(), dy.ravel()
    ranges = np.sqrt(dx * dx + dy * dy) * _INV_RESOLUTION
    angles = np.arctan2(dy, dx)
    for arr in (dx, dy, ranges, angles):
        arr.setflags(write=False)
    return dx, dy, ranges, angles


def _normalize_angles(angles: np.ndarray) -> np.ndarray:
    two_pi = 2.0 * np.pi
    out = angles.copy()
    high = out > np.pi
    out[high] -= two_pi * np.ceil((out[high] - np.pi) / two_pi)
    low = out < -np.pi
    out[low] += two_pi * np.ceil((-np.pi - out[low]) / two_pi)
    return out


class OccupancyMap:
    """An 8-bit occupancy grid: 127 unknown, lower occupied, higher free."""

    resolution = RESOLUTION

    def __init__(self) -> None:
        self.grid = np.full((IMAGE_SIZE, IMAGE_SIZE), _UNKNOWN, dtype=np.uint8)
        self.pose = SE2()  # T_W_S
        self.center_image = np.array([IMAGE_SIZE // 2, IMAGE_SIZE // 2], dtype=float)
        self.has_outside_points = False

    def _world_to_image_many(self, points: np.ndarray) -> np.ndarray:
        pts = self.pose.inverse().transform(np.asarray(points, dtype=float).reshape(-1, 2))
        return (pts * self.resolution + self.center_image).astype(np.int64)

    def world_to_image(self, pt) -> tuple[int, int]:
        """Pixel (column, row) of a world point."""
        x, y = self._world_to_image_many(pt)[0]
        return int(x), int(y)

    def _ranges_in_angles(self, angles, scan: Scan2d) -> np.ndarray:
        angles = _normalize_angles(np.atleast_1d(np.asarray(angles, dtype=float)))
        ranges = np.asarray(scan.ranges, dtype=float)
        n = len(ranges)
        out = np.zeros_like(angles)
        if n == 0:
            return out
        inside = (angles >= scan.angle_min) & (angles <= scan.angle_max)
        with np.errstate(divide="ignore", invalid="ignore"):
            pos = (angles - scan.angle_min) / scan.angle_increment
        pos = np.where(inside & np.isfinite(pos), pos, -1.0)
        idx = np.trunc(pos)
        inside &= (pos >= 0) & (idx < n)
        sel = np.nonzero(inside)[0]
        if len(sel) == 0:
            return out
        i = idx[sel].astype(np.int64)
        s = pos[sel] - i
        r1 = ranges[i]
        has_next = i + 1 < n
        r2 = ranges[np.minimum(i + 1, n - 1)]
        valid1 = (r1 >= scan.range_min) & (r1 <= scan.range_max)
        valid2 = (r2 >= scan.range_min) & (r2 <= scan.range_max)
        out[sel] = np.select(
            [~has_next, ~valid2, ~valid1, np.abs(r1 - r2) > _RANGE_JUMP],
            [r1, r1, r2, np.where(s > 0.5, r2, r1)],
            default=r1 * (1.0 - s) + r2 * s,
        )
        return out

    def find_range_in_angle(self, angle: float, scan: Scan2d) -> float:
        """The scan's range in direction ``angle``, interpolated; 0 when not covered."""
        return float(self._ranges_in_angles(np.array([angle]), scan)[0])

    def set_point(self, pt, occupy: bool) -> None:
        """Move one cell one step towards occupied or free, within fixed limits."""
        x, y = int(pt[0]), int(pt[1])
        rows, cols = self.grid.shape
        if x < 0 or y < 0 or x >= cols or y >= rows:
            if occupy:
                self.has_outside_points = True
            return
        value = int(self.grid[y, x])
        if occupy:
            if value > _OCCUPIED_LIMIT:
                self.grid[y, x] = value - 1
        elif value < _FREE_LIMIT:
            self.grid[y, x] = value + 1

    def _mark_free(self, xs: np.ndarray, ys: np.ndarray) -> None:
        rows, cols = self.grid.shape
        inb = (xs >= 0) & (ys >= 0) & (xs < cols) & (ys < rows)
        xs, ys = xs[inb], ys[inb]
        raise_mask = self.grid[ys, xs] < _FREE_LIMIT
        self.grid[ys[raise_mask], xs[raise_mask]] += 1

    def bresenham_filling(self, p1, p2) -> None:
        """Mark the cells on the line from ``p1`` towards ``p2`` as free, excluding both ends."""
        x1, y1 = int(p1[0]), int(p1[1])
        x2, y2 = int(p2[0]), int(p2[1])
        dx, dy = x2 - x1, y2 - y1
        ux = 1 if dx > 0 else -1
        uy = 1 if dy > 0 else -1
        dx, dy = abs(dx), abs(dy)
        x, y = x1, y1
        if dx > dy:
            e = -dx
            for _ in range(dx):
                x += ux
                e += 2 * dy
                if e >= 0:
                    y += uy
                    e -= 2 * dx
                if (x, y) != (x2, y2):
                    self.set_point((x, y), False)
        else:
            e = -dy
            for _ in range(dy):
                y += uy
                e += 2 * dx
                if e >= 0:
                    x += ux
                    e -= 2 * dy
                if (x, y) != (x2, y2):
                    self.set_point((x, y), False)

    def _fill_with_model(self, start: tuple[int, int], theta: float, scan: Scan2d, endpoints: np.ndarray) -> None:
        dx, dy, model_range, model_angle = _model()
        px = start[0] + dx
        py = start[1] + dy
        ranges = self._ranges_in_angles(model_angle - theta, scan)
        close = model_range < _CLOSEST_TH
        no_measure = (ranges < scan.range_min) | (ranges > scan.range_max)
        keys = px.astype(np.int64) * _KEY_SHIFT + py
        endpoint_keys = endpoints[:, 0] * _KEY_SHIFT + endpoints[:, 1]
        not_endpoint = ~np.isin(keys, endpoint_keys)
        free = (
            close
            | (~close & no_measure & (model_range < _ENDPOINT_CLOSE_TH))
            | (~close & ~no_measure & (ranges > model_range) & not_endpoint)
        )
        self._mark_free(px[free], py[free])

    def add_lidar_frame(self, frame: Frame, method: GridMethod = GridMethod.BRESENHAM) -> None:
        """Add one frame's scan: free space along the beams, occupied at the endpoints."""
        scan = frame.scan
        if scan is None:
            raise ValueError("frame has no scan")
        # frame.pose_submap may still refer to a previous submap, so derive it here.
        theta = (self.pose.inverse() * frame.pose).theta
        self.has_outside_points = False

        data = [(r, angle) for _, r, angle in scan.valid_points()]
        if data:
            arr = np.array(data)
            local = np.column_stack([arr[:, 0] * np.cos(arr[:, 1]), arr[:, 0] * np.sin(arr[:, 1])])
            endpoints = np.unique(self._world_to_image_many(frame.pose.transform(local)), axis=0)
        else:
            endpoints = np.zeros((0, 2), dtype=np.int64)

        start = self.world_to_image(frame.pose.translation)
        if method is GridMethod.MODEL_POINTS:
            self._fill_with_model(start, theta, scan, endpoints)
        else:
            for end in endpoints:
                self.bresenham_filling(start, end)

        for x, y in endpoints:
            self.set_point((int(x), int(y)), True)

    def black_white_image(self) -> np.ndarray:
        """Three-channel view: grey unknown, black occupied, white free."""
        rows, cols = self.grid.shape
        image = np.full((rows, cols, 3), 127, dtype=np.uint8)
        image[self.grid < _UNKNOWN] = 0
        image[self.grid > _UNKNOWN] = 255
        return image