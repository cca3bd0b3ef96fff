"""Rigid 2D poses and single-echo 2D laser scans."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator

import numpy as np

_SMALL_ANGLE_EPS = 1e-10


def normalize_angle(angle: float) -> float:
    """Bring an angle into the range [-pi, pi] by whole turns."""
    angle = float(angle)
    if not math.isfinite(angle):
        return angle
    while angle < -math.pi:
        angle += 2.0 * math.pi
    while angle > math.pi:
        angle -= 2.0 * math.pi
    return angle


@dataclass(frozen=True)
class SE2:
    """A rigid 2D transform: rotation by ``theta`` followed by translation."""

    x: float = 0.0
    y: float = 0.0
    theta: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))
        theta = float(self.theta)
        object.__setattr__(self, "theta", math.atan2(math.sin(theta), math.cos(theta)))

    @classmethod
    def exp(cls, theta: float) -> SE2:
        """A pure rotation by ``theta`` radians."""
        return cls(0.0, 0.0, theta)

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.x, self.y])

    @property
    def rotation(self) -> np.ndarray:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return np.array([[c, -s], [s, c]])

    def inverse(self) -> SE2:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return SE2(-(c * self.x + s * self.y), -(-s * self.x + c * self.y), -self.theta)

    def __mul__(self, other):
        if isinstance(other, SE2):
            c, s = math.cos(self.theta), math.sin(self.theta)
            return SE2(
                self.x + c * other.x - s * other.y,
                self.y + s * other.x + c * other.y,
                self.theta + other.theta,
            )
        return self.transform(other)

    def transform(self, point) -> np.ndarray:
        """Apply the transform to a point of shape (2,) or to points of shape (N, 2)."""
        p = np.asarray(point, dtype=float)
        return p @ self.rotation.T + self.translation

    def log(self) -> np.ndarray:
        """The tangent vector (upsilon_x, upsilon_y, theta) of this transform."""
        theta = self.theta
        half = 0.5 * theta
        real_minus_one = math.cos(theta) - 1.0
        if abs(real_minus_one) < _SMALL_ANGLE_EPS:
            half_by_tan = 1.0 - theta * theta / 12.0
        else:
            half_by_tan = -(half * math.sin(theta)) / real_minus_one
        v_inv = np.array([[half_by_tan, half], [-half, half_by_tan]])
        upsilon = v_inv @ self.translation
        return np.array([upsilon[0], upsilon[1], theta])

    def oplus(self, update) -> SE2:
        """Add to the translation and right-multiply the rotation by exp(update[2])."""
        dx, dy, dtheta = (float(v) for v in update)
        return SE2(self.x + dx, self.y + dy, self.theta + dtheta)


@dataclass
class Scan2d:
    """One sweep of a 2D laser scanner."""

    ranges: np.ndarray = field(default_factory=lambda: np.zeros(0))
    angle_min: float = 0.0
    angle_max: float = 0.0
    angle_increment: float = 0.0
    range_min: float = 0.0
    range_max: float = 0.0

    def __post_init__(self) -> None:
        self.ranges = np.asarray(self.ranges, dtype=float).ravel()

    def angle_at(self, index: int) -> float:
        return self.angle_min + index * self.angle_increment

    def is_valid(self, r: float) -> bool:
        return self.range_min <= r <= self.range_max

    def valid_points(self) -> Iterator[tuple[int, float, float]]:
        """Yield (index, range, angle) for every measurement within the valid range."""
        for index, r in enumerate(self.ranges):
            if self.is_valid(r):
                yield index, float(r), self.angle_at(index)