"""Drawing helpers for 2D laser scans."""

from __future__ import annotations

import math

import numpy as np
from PIL import Image, ImageDraw

from slam2d.geometry import SE2, Scan2d

_SIDE_CUT = 30 * math.pi / 180.0
_POSE_MARK_RADIUS = 5
_POSE_MARK_WIDTH = 2


def visualize_2d_scan(
    scan: Scan2d,
    pose: SE2,
    image: np.ndarray | None,
    color,
    image_size: int = 800,
    resolution: float = 20.0,
    pose_submap: SE2 | None = None,
) -> np.ndarray:
    """Draw ``scan`` seen from ``pose`` onto ``image`` and return it.

    A white ``image_size`` square image is created when ``image`` is None;
    otherwise the given image is drawn on in place.
    """
    if pose_submap is None:
        pose_submap = SE2()
    if image is None:
        image = np.full((image_size, image_size, 3), 255, dtype=np.uint8)
    rgb = tuple(int(c) for c in color)
    rows, cols = image.shape[:2]
    half = image_size // 2
    to_submap = pose_submap.inverse()

    for _, r, angle in scan.valid_points():
        if angle < scan.angle_min + _SIDE_CUT or angle > scan.angle_max - _SIDE_CUT:
            continue
        local = np.array([r * math.cos(angle), r * math.sin(angle)])
        px, py = to_submap.transform(pose.transform(local))
        image_x = int(px * resolution + half)
        image_y = int(py * resolution + half)
        if 0 <= image_x < cols and 0 <= image_y < rows:
            image[image_y, image_x] = rgb

    cx, cy = to_submap.transform(pose.translation) * float(resolution) + half
    canvas = Image.fromarray(image)
    ImageDraw.Draw(canvas).ellipse(
        [cx - _POSE_MARK_RADIUS, cy - _POSE_MARK_RADIUS, cx + _POSE_MARK_RADIUS, cy + _POSE_MARK_RADIUS],
        outline=rgb,
        width=_POSE_MARK_WIDTH,
    )
    image[...] = np.asarray(canvas)
    return image