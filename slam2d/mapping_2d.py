"""2D laser mapping: scan matching against submaps, keyframes, submaps and the global map."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image, ImageDraw

from slam2d.frame import Frame
from slam2d.geometry import SE2, Scan2d
from slam2d.lidar_2d_utils import visualize_2d_scan
from slam2d.loop_closing import LoopClosing
from slam2d.submap import Submap

logger = logging.getLogger(__name__)

KEYFRAME_POS_TH = 0.3  # metres between keyframes
KEYFRAME_ANG_TH = 15 * math.pi / 180  # radians between keyframes
MAX_SUBMAP_FRAMES = 50
SUBMAP_RESOLUTION = 20.0  # submap pixels per metre
SUBMAP_SIZE = 50.0  # metres covered by one submap
SUBMAP_IMAGE_SIZE = 1000
_SUBMAP_CENTER = SUBMAP_IMAGE_SIZE // 2

_UNKNOWN = 127
_BACKGROUND = (127, 127, 127)
_FREE = (255, 255, 255)
_OCCUPIED = (0, 0, 0)
_CURRENT_FREE = (230, 250, 235)
_CURRENT_OCCUPIED = (30, 20, 230)
_RED = (255, 0, 0)
_GREEN = (0, 255, 0)
_BLUE = (0, 0, 255)

ImageSink = Callable[[str, np.ndarray], None]


class Mapping2D:
    """Builds a 2D map from a stream of laser scans.

    Every scan is matched against the current submap; keyframes are added
    to it, and a new submap is started once the scan leaves the current one
    or it holds too many keyframes. ``on_image`` receives the debug views by
    name; ``output_dir`` receives finished submap images and the loop log.
    """

    def __init__(
        self,
        with_loop_closing: bool = True,
        output_dir=None,
        on_image: ImageSink | None = None,
    ) -> None:
        self.output_dir = Path(output_dir) if output_dir is not None else None
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        self.on_image = on_image

        self.frame_id = 0
        self.keyframe_id = 0
        self.submap_id = 0
        self.first_scan = True
        self.current_frame: Frame | None = None
        self.last_frame: Frame | None = None
        self.motion_guess = SE2()
        self.last_keyframe: Frame | None = None

        self.current_submap = Submap(SE2())
        self.all_submaps: list[Submap] = [self.current_submap]

        self.loop_closing: LoopClosing | None = None
        if with_loop_closing:
            debug_path = self.output_dir / "loops.txt" if self.output_dir is not None else None
            self.loop_closing = LoopClosing(debug_path=debug_path, on_loop=self._show_loop)
            self.loop_closing.add_new_submap(self.current_submap)

    def close(self) -> None:
        if self.loop_closing is not None:
            self.loop_closing.close()

    def __enter__(self) -> Mapping2D:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _show_loop(self, submap_id: int, image: np.ndarray) -> None:
        if self.on_image is not None:
            self.on_image("loop closure", image)

    def _require_frame(self) -> Frame:
        if self.current_frame is None:
            raise RuntimeError("no current frame")
        return self.current_frame

    def process_scan(self, scan: Scan2d) -> bool:
        """Process one single-echo scan."""
        if scan is None:
            raise ValueError("scan is not set")
        frame = Frame(scan=scan, id=self.frame_id)
        self.frame_id += 1
        self.current_frame = frame

        if self.last_frame is not None:
            frame.pose = self.last_frame.pose * self.motion_guess
            frame.pose_submap = self.last_frame.pose_submap

        # The first scan has nothing to match against.
        if not self.first_scan:
            self.current_submap.match_scan(frame)

        self.first_scan = False
        is_kf = self.is_key_frame()

        if is_kf:
            self.add_key_frame()
            self.current_submap.add_scan_in_occupancy_map(frame)
            if self.loop_closing is not None:
                self.loop_closing.add_new_frame(frame)
            if (
                self.current_submap.has_outside_points
                or self.current_submap.num_frames > MAX_SUBMAP_FRAMES
            ):
                self.expand_submap()

        if self.on_image is not None:
            self._publish_views(frame, is_kf)

        if self.last_frame is not None:
            self.motion_guess = self.last_frame.pose.inverse() * frame.pose
        self.last_frame = frame
        return True

    def _publish_views(self, frame: Frame, is_kf: bool) -> None:
        submap = self.current_submap
        occu_image = submap.occu_map.black_white_image()
        visualize_2d_scan(frame.scan, frame.pose, occu_image, _RED, 1000, 20.0, submap.pose)
        canvas = Image.fromarray(occu_image)
        draw = ImageDraw.Draw(canvas)
        draw.text((20, 10), f"submap {submap.id}", fill=_GREEN)
        draw.text((20, 40), f"keyframes {submap.num_frames}", fill=_GREEN)
        self.on_image("occupancy map", np.asarray(canvas).copy())

        field_image = submap.field.get_field_image()
        visualize_2d_scan(frame.scan, frame.pose, field_image, _RED, 1000, 20.0, submap.pose)
        self.on_image("likelihood", field_image)

        if is_kf:
            self.on_image("global map", self.show_global_map())

    def is_key_frame(self) -> bool:
        """Whether the current frame moved far enough from the last keyframe."""
        frame = self._require_frame()
        if self.last_keyframe is None:
            return True
        delta = self.last_keyframe.pose.inverse() * frame.pose
        return (
            math.hypot(delta.x, delta.y) > KEYFRAME_POS_TH
            or abs(delta.theta) > KEYFRAME_ANG_TH
        )

    def add_key_frame(self) -> None:
        """Make the current frame a keyframe of the current submap."""
        frame = self._require_frame()
        logger.info("add keyframe %d", self.keyframe_id)
        frame.keyframe_id = self.keyframe_id
        self.keyframe_id += 1
        self.current_submap.add_key_frame(frame)
        self.last_keyframe = frame

    def expand_submap(self) -> None:
        """Finish the current submap and start a new one at the current frame."""
        frame = self._require_frame()
        if self.loop_closing is not None:
            self.loop_closing.add_finished_submap(self.current_submap)

        last_submap = self.current_submap
        if self.output_dir is not None:
            Image.fromarray(last_submap.occu_map.black_white_image()).save(
                self.output_dir / f"submap_{last_submap.id}.png"
            )

        self.submap_id += 1
        self.current_submap = Submap(frame.pose, self.submap_id)
        frame.pose_submap = SE2()

        self.current_submap.add_key_frame(frame)
        # Seed with the previous submap's recent frames so the new one is not empty.
        self.current_submap.set_occu_from_other_submap(last_submap)
        self.current_submap.add_scan_in_occupancy_map(frame)
        self.all_submaps.append(self.current_submap)

        if self.loop_closing is not None:
            self.loop_closing.add_new_submap(self.current_submap)

        pose = self.current_submap.pose
        logger.info(
            "create submap %d with pose: %g %g, %g",
            self.current_submap.id,
            pose.x,
            pose.y,
            pose.theta,
        )

    def show_global_map(self, max_size: int = 500) -> np.ndarray:
        """Render all submaps into one RGB image whose longer side is ``max_size``."""
        centers = np.array([m.pose.translation for m in self.all_submaps], dtype=float)
        half = SUBMAP_SIZE / 2
        top_left = centers.min(axis=0) - half
        bottom_right = centers.max(axis=0) + half
        if top_left[0] > bottom_right[0] or top_left[1] > bottom_right[1]:
            return np.zeros((0, 0, 3), dtype=np.uint8)

        global_center = (top_left + bottom_right) / 2.0
        phy_width, phy_height = bottom_right - top_left
        res = max_size / phy_width if phy_width > phy_height else max_size / phy_height

        c = global_center.copy()
        global_center = np.array(
            [int(global_center[0] * res) / res, int(global_center[1] * res) / res]
        )

        width = int(phy_width * res + 0.5)
        height = int(phy_height * res + 0.5)
        center_image = np.array([width // 2, height // 2], dtype=float)
        output = np.full((height, width, 3), _BACKGROUND, dtype=np.uint8)

        ys, xs = np.mgrid[0:height, 0:width]
        pixels = np.column_stack([xs.ravel(), ys.ravel()]).astype(float)
        world = (pixels - center_image) / res + c
        flat = output.reshape(-1, 3)
        pending = np.ones(len(world), dtype=bool)

        for submap in self.all_submaps:
            if not pending.any():
                break
            idx = np.nonzero(pending)[0]
            ps = submap.pose.inverse().transform(world[idx])
            pt = (ps * SUBMAP_RESOLUTION + _SUBMAP_CENTER).astype(np.int64)
            inside = (
                (pt[:, 0] >= 0)
                & (pt[:, 0] < SUBMAP_IMAGE_SIZE)
                & (pt[:, 1] >= 0)
                & (pt[:, 1] < SUBMAP_IMAGE_SIZE)
            )
            idx, pt = idx[inside], pt[inside]
            values = submap.occu_map.grid[pt[:, 1], pt[:, 0]]
            is_current = submap is self.current_submap
            free = values > _UNKNOWN
            occupied = values < _UNKNOWN
            flat[idx[free]] = _CURRENT_FREE if is_current else _FREE
            flat[idx[occupied]] = _CURRENT_OCCUPIED if is_current else _OCCUPIED
            pending[idx[free | occupied]] = False

        def to_map(p) -> tuple[float, float]:
            q = (np.asarray(p, dtype=float) - global_center) * res + center_image
            return float(q[0]), float(q[1])

        canvas = Image.fromarray(output)
        draw = ImageDraw.Draw(canvas)
        for submap in self.all_submaps:
            pose = submap.pose
            center_map = to_map(pose.translation)
            x_map = to_map(pose.transform([1.0, 0.0]))
            y_map = to_map(pose.transform([0.0, 1.0]))
            draw.line([center_map, x_map], fill=_RED, width=2)
            draw.line([center_map, y_map], fill=_GREEN, width=2)
            draw.text((center_map[0] + 10, center_map[1] - 10), str(submap.id), fill=_BLUE)
            for frame in submap.frames:
                px, py = to_map(frame.pose.translation)
                draw.ellipse([px - 1, py - 1, px + 1, py + 1], outline=_RED, width=1)

        if self.loop_closing is not None:
            for first_id, second_id in self.loop_closing.get_loops():
                c1 = to_map(self.all_submaps[first_id].pose.translation)
                c2 = to_map(self.all_submaps[second_id].pose.translation)
                draw.line([c1, c2], fill=_BLUE, width=2)

        return np.asarray(canvas).copy()