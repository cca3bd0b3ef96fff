"""Submaps: a group of keyframes with their own occupancy grid and likelihood field."""

from __future__ import annotations

from slam2d.frame import Frame
from slam2d.geometry import SE2
from slam2d.likelihood_field import LikelihoodField
from slam2d.occupancy_map import GridMethod, OccupancyMap

_FRAMES_FROM_OTHER = 10


class Submap:
    """A local map anchored at pose T_w_s.

    Adding keyframes updates the submap's occupancy grid and likelihood
    field. A frame's world pose is the submap pose times the frame's pose
    within the submap.
    """

    def __init__(self, pose: SE2 | None = None, submap_id: int = 0) -> None:
        self.id = submap_id
        self.frames: list[Frame] = []
        self.field = LikelihoodField()
        self.occu_map = OccupancyMap()
        self._pose = SE2()
        self.pose = pose if pose is not None else SE2()

    @property
    def pose(self) -> SE2:
        return self._pose

    @pose.setter
    def pose(self, pose: SE2) -> None:
        self._pose = pose
        self.occu_map.pose = pose
        self.field.pose = pose

    @property
    def num_frames(self) -> int:
        return len(self.frames)

    @property
    def has_outside_points(self) -> bool:
        """Whether the last scan added to the grid had endpoints outside it."""
        return self.occu_map.has_outside_points

    def set_occu_from_other_submap(self, other: Submap) -> None:
        """Seed this submap's grid with the latest keyframes of ``other``.

        Only done when ``other`` holds at least ten keyframes; the very first
        keyframe is never taken.
        """
        frames = other.frames
        if len(frames) >= _FRAMES_FROM_OTHER:
            for index in range(len(frames) - _FRAMES_FROM_OTHER, len(frames)):
                if index > 0:
                    self.occu_map.add_lidar_frame(frames[index])
        self.field.set_field_image_from_occu_map(self.occu_map.grid)

    def match_scan(self, frame: Frame) -> bool:
        """Align ``frame`` against this submap and update its submap and world poses."""
        if frame.scan is None:
            raise ValueError("frame has no scan")
        self.field.set_source_scan(frame.scan)
        frame.pose_submap = self.field.align_g2o(frame.pose_submap)
        frame.pose = self.pose * frame.pose_submap
        return True

    def add_scan_in_occupancy_map(self, frame: Frame) -> None:
        """Add the frame to the grid and rebuild the likelihood field from it."""
        self.occu_map.add_lidar_frame(frame, GridMethod.MODEL_POINTS)
        self.field.set_field_image_from_occu_map(self.occu_map.grid)

    def add_key_frame(self, frame: Frame) -> None:
        self.frames.append(frame)

    def update_frame_pose_world(self) -> None:
        """Recompute every keyframe's world pose from the submap pose."""
        for frame in self.frames:
            frame.pose = self.pose * frame.pose_submap