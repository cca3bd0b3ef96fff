"""A single 2D laser frame with its poses, and its plain-text file form."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from slam2d.geometry import SE2, Scan2d


def _fmt(value: float) -> str:
    return format(float(value), ".17g")


@dataclass
class Frame:
    """One 2D lidar scan with its world pose (T_w_c) and submap pose (T_s_c)."""

    scan: Scan2d | None = None
    id: int = 0
    keyframe_id: int = 0
    timestamp: float = 0.0
    pose: SE2 = field(default_factory=SE2)
    pose_submap: SE2 = field(default_factory=SE2)

    def dump(self, filename) -> None:
        """Write the frame to a text file for offline use."""
        if self.scan is None:
            raise ValueError("frame has no scan to dump")
        scan = self.scan
        lines = [
            f"{self.id} {self.keyframe_id} {_fmt(self.timestamp)}",
            f"{_fmt(self.pose.x)} {_fmt(self.pose.y)} {_fmt(self.pose.theta)}",
            " ".join(
                [
                    _fmt(scan.angle_min),
                    _fmt(scan.angle_max),
                    _fmt(scan.angle_increment),
                    _fmt(scan.range_min),
                    _fmt(scan.range_max),
                    str(len(scan.ranges)),
                ]
            ),
            "".join(f"{_fmt(r)} " for r in scan.ranges),
        ]
        Path(filename).write_text("\n".join(lines))

    @classmethod
    def load(cls, filename) -> Frame:
        """Read a frame written by :meth:`dump`."""
        tokens = iter(Path(filename).read_text().split())
        try:
            frame_id = int(next(tokens))
            keyframe_id = int(next(tokens))
            timestamp = float(next(tokens))
            x, y, theta = (float(next(tokens)) for _ in range(3))
            angle_min, angle_max, angle_increment, range_min, range_max = (
                float(next(tokens)) for _ in range(5)
            )
            count = int(next(tokens))
            ranges = [float(next(tokens)) for _ in range(count)]
        except StopIteration:
            raise ValueError(f"truncated frame file: {filename}") from None
        scan = Scan2d(
            ranges=ranges,
            angle_min=angle_min,
            angle_max=angle_max,
            angle_increment=angle_increment,
            range_min=range_min,
            range_max=range_max,
        )
        return cls(
            scan=scan,
            id=frame_id,
            keyframe_id=keyframe_id,
            timestamp=timestamp,
            pose=SE2(x, y, theta),
        )