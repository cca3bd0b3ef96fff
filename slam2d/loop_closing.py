"""Single-threaded loop closure between the current frame and older submaps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TextIO

import numpy as np
from PIL import Image, ImageDraw

from slam2d.frame import Frame
from slam2d.geometry import SE2
from slam2d.lidar_2d_utils import visualize_2d_scan
from slam2d.multi_resolution_likelihood_field import MRLikelihoodField
from slam2d.optimization import PoseGraph, PoseGraphEdge
from slam2d.submap import Submap

logger = logging.getLogger(__name__)

CANDIDATE_DISTANCE_TH = 15.0  # metres between frame and submap centre
SUBMAP_GAP = 1  # minimum id distance to the newest submap
LOOP_RK_DELTA = 1.0  # robust kernel threshold for loop edges
_ODOMETRY_INFORMATION = 1e4
_TEXT_COLOR = (0, 255, 0)
_SCAN_COLOR = (255, 0, 0)


@dataclass
class LoopConstraint:
    """A relative pose T12 between two submaps found by loop detection."""

    id_submap1: int
    id_submap2: int
    relative_pose: SE2
    valid: bool = True


class LoopClosing:
    """Detect loops against older submaps and correct submap poses by pose-graph optimisation.

    Candidates come from the odometry pose of each new frame; each is
    matched with a multi-resolution likelihood field, and successful matches
    go into a pose graph that may also reject them again.
    """

    def __init__(
        self,
        debug_path=None,
        on_loop: Callable[[int, np.ndarray], None] | None = None,
    ) -> None:
        self.current_frame: Frame | None = None
        self.last_submap_id = 0
        self.submaps: dict[int, Submap] = {}
        self.submap_fields: dict[int, MRLikelihoodField] = {}
        self.current_candidates: list[int] = []
        self.loop_constraints: dict[tuple[int, int], LoopConstraint] = {}
        self.has_new_loops = False
        self.on_loop = on_loop
        self._debug: TextIO | None = None
        if debug_path is not None:
            path = Path(debug_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._debug = path.open("w")

    def close(self) -> None:
        if self._debug is not None:
            self._debug.close()
            self._debug = None

    def __enter__(self) -> LoopClosing:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_loops(self) -> dict[tuple[int, int], LoopConstraint]:
        """A copy of the loop constraints, keyed by (submap1, submap2)."""
        return dict(self.loop_constraints)

    def add_new_submap(self, submap: Submap) -> None:
        """Register the newest submap, which may still be under construction."""
        self.submaps[submap.id] = submap
        self.last_submap_id = submap.id

    def add_finished_submap(self, submap: Submap) -> None:
        """Build the matching field of a completed submap."""
        field = MRLikelihoodField()
        field.pose = submap.pose
        field.set_field_image_from_occu_map(submap.occu_map.grid)
        self.submap_fields[submap.id] = field

    def add_new_frame(self, frame: Frame) -> None:
        """Look for loops with ``frame`` and optimise the submap poses if any are found."""
        self.current_frame = frame
        if not self.detect_loop_candidates():
            return
        self.match_in_history_submaps()
        if self.has_new_loops:
            self.optimize()

    def _require_frame(self) -> Frame:
        if self.current_frame is None:
            raise RuntimeError("no current frame")
        return self.current_frame

    def detect_loop_candidates(self) -> bool:
        """Collect older submaps whose centre lies near the current frame."""
        self.has_new_loops = False
        if self.last_submap_id < SUBMAP_GAP:
            return False
        frame = self._require_frame()
        self.current_candidates.clear()
        frame_pos = frame.pose.translation

        for submap_id in sorted(self.submaps):
            if self.last_submap_id - submap_id <= SUBMAP_GAP:
                continue
            existing = self.loop_constraints.get((submap_id, self.last_submap_id))
            if existing is not None and existing.valid:
                continue
            center = self.submaps[submap_id].pose.translation
            if float(np.linalg.norm(center - frame_pos)) < CANDIDATE_DISTANCE_TH:
                logger.info(
                    "taking %d with %d, last submap id: %d",
                    frame.keyframe_id,
                    submap_id,
                    self.last_submap_id,
                )
                self.current_candidates.append(submap_id)

        return bool(self.current_candidates)

    def _loop_image(self, submap: Submap, frame: Frame, pose_in_submap: SE2) -> np.ndarray:
        image = submap.occu_map.black_white_image()
        image = visualize_2d_scan(frame.scan, pose_in_submap, image, _SCAN_COLOR, 1000, 20.0, SE2())
        canvas = Image.fromarray(image)
        draw = ImageDraw.Draw(canvas)
        draw.text((20, 10), f"loop submap {submap.id}", fill=_TEXT_COLOR)
        draw.text((20, 40), f"keyframes {submap.num_frames}", fill=_TEXT_COLOR)
        return np.asarray(canvas).copy()

    def match_in_history_submaps(self) -> None:
        """Match the current frame against every candidate submap."""
        frame = self._require_frame()
        if frame.scan is None:
            raise ValueError("frame has no scan")
        for candidate in self.current_candidates:
            field = self.submap_fields[candidate]
            field.set_source_scan(frame.scan)
            submap = self.submaps[candidate]
            pose_in_target = submap.pose.inverse() * frame.pose  # T_S1_C

            aligned = field.align_g2o(pose_in_target)
            if aligned is not None:
                # T_S1_S2 = T_S1_C * T_C_W * T_W_S2
                relative = aligned * frame.pose.inverse() * self.submaps[self.last_submap_id].pose
                key = (candidate, self.last_submap_id)
                self.loop_constraints.setdefault(
                    key, LoopConstraint(candidate, self.last_submap_id, relative)
                )
                logger.info("adding loop from submap %d to %d", candidate, self.last_submap_id)
                if self.on_loop is not None:
                    self.on_loop(candidate, self._loop_image(submap, frame, aligned))
                self.has_new_loops = True

            if self._debug is not None:
                pose = submap.pose
                self._debug.write(f"{frame.id} {candidate} {pose.x:g} {pose.y:g} {pose.theta:g}\n")
                self._debug.flush()

        self.current_candidates.clear()

    def optimize(self) -> None:
        """Pose-graph optimisation over all submaps; drops loops judged wrong."""
        graph = PoseGraph()
        for submap_id, submap in self.submaps.items():
            graph.add_vertex(submap_id, submap.pose)

        for i in range(self.last_submap_id):
            first, following = self.submaps[i], self.submaps[i + 1]
            graph.add_edge(
                i,
                i + 1,
                first.pose.inverse() * following.pose,
                np.eye(3) * _ODOMETRY_INFORMATION,
            )

        loop_edges: dict[tuple[int, int], PoseGraphEdge] = {}
        for key, constraint in sorted(self.loop_constraints.items()):
            if not constraint.valid:
                continue
            first, second = self.submaps[key[0]], self.submaps[key[1]]
            loop_edges[key] = graph.add_edge(
                first.id, second.id, constraint.relative_pose, np.eye(3), LOOP_RK_DELTA
            )

        graph.optimize(10)

        inliers = 0
        for key, edge in loop_edges.items():
            chi2 = graph.chi2(edge)
            if chi2 < LOOP_RK_DELTA:
                logger.info("loop from %d to %d is correct, chi2: %g", key[0], key[1], chi2)
                edge.cauchy_delta = None
                self.loop_constraints[key].valid = True
                inliers += 1
            else:
                edge.level = 1
                logger.info("loop from %d to %d is invalid, chi2: %g", key[0], key[1], chi2)
                self.loop_constraints[key].valid = False

        graph.optimize(5)

        for submap_id, submap in self.submaps.items():
            submap.pose = graph.pose(submap_id)
            submap.update_frame_pose_world()

        logger.info("loop inliers: %d/%d", inliers, len(self.loop_constraints))

        self.loop_constraints = {
            key: constraint for key, constraint in self.loop_constraints.items() if constraint.valid
        }