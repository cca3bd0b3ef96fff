# slam2d

A small 2D lidar SLAM toolkit in pure Python, built on numpy and Pillow.
It takes planar laser scans and builds a global map from them:

- **Geometry** (`slam2d.geometry`): `SE2` rigid poses (composition with `*`,
  `inverse`, `transform`, `log`, `oplus`, `SE2.exp(theta)` for a pure
  rotation), `normalize_angle`, and `Scan2d` laser scans.
- **Frames** (`slam2d.frame`): `Frame` holds a scan with its world pose and
  its pose within a submap, and can be written to and read from a text file.
- **Likelihood-field matching** (`slam2d.likelihood_field`): `LikelihoodField`
  builds a distance field around a target scan or an occupancy grid and aligns
  a source scan to it, by Gauss-Newton or by robust Levenberg-Marquardt.
- **Multi-resolution matching** (`slam2d.multi_resolution_likelihood_field`):
  `MRLikelihoodField` aligns a scan against a four-level pyramid of fields,
  coarse to fine, and rejects matches with too few inliers.
- **Optimisation** (`slam2d.optimization`): `LikelihoodEdge` and
  `optimize_pose` for single-pose alignment, and `PoseGraph` for SE2
  pose-graph optimisation with optional Cauchy robust kernels.
- **Occupancy grids** (`slam2d.occupancy_map`): `OccupancyMap` fills a
  1000 × 1000 grid at 20 pixels per metre, either with a precomputed template
  (`GridMethod.MODEL_POINTS`) or by Bresenham ray casting
  (`GridMethod.BRESENHAM`).
- **Submaps and loop closure** (`slam2d.submap`, `slam2d.loop_closing`):
  `Submap` holds keyframes, an occupancy grid and a likelihood field.
  `LoopClosing` looks for older submaps near each new keyframe, checks them by
  multi-resolution matching and runs a pose-graph optimisation that drops
  loops it judges wrong.
- **Mapping** (`slam2d.mapping_2d`): `Mapping2D` drives all of this from a
  stream of scans and renders a global map.
- **Drawing** (`slam2d.lidar_2d_utils`): `visualize_2d_scan` draws a scan into
  an RGB image held as a numpy array.

## Installation

```
pip install slam2d
```

With the test dependencies:

```
pip install "slam2d[test]"
```

## Usage

### Scans and poses

```python
import math
from slam2d.geometry import SE2, Scan2d

scan = Scan2d(
    ranges=[5.0] * 720,
    angle_min=-math.pi,
    angle_max=math.pi,
    angle_increment=2 * math.pi / 720,
    range_min=0.1,
    range_max=30.0,
)

pose = SE2(1.0, 0.5, 0.1)          # x, y, theta
world_point = pose.transform([2.0, 0.0])
relative = pose.inverse() * SE2(2.0, 0.0, 0.0)
```

`Scan2d.valid_points()` yields `(index, range, angle)` for every measurement
between `range_min` and `range_max`.

### Likelihood-field matching

```python
from slam2d.likelihood_field import LikelihoodField

field = LikelihoodField()
field.set_target_scan(previous_scan)
field.set_source_scan(current_scan)

pose = field.align_gauss_newton(SE2())   # SE2, or None when too few points match
pose = field.align_g2o(SE2())            # robust alignment, always returns a pose
image = field.get_field_image()          # (1000, 1000, 3) uint8 array
```

`field.has_outside_points` tells whether some of the source fell outside the
field during the last alignment.

### Multi-resolution matching against a grid

```python
from slam2d.multi_resolution_likelihood_field import MRLikelihoodField

mr = MRLikelihoodField()
mr.set_field_image_from_occu_map(grid.grid)   # 2D uint8 occupancy image
mr.set_source_scan(scan)
pose = mr.align_g2o(initial_pose_in_submap)   # None if any level rejects the match
```

### Occupancy grids

```python
from slam2d.frame import Frame
from slam2d.occupancy_map import GridMethod, OccupancyMap

grid = OccupancyMap()
grid.add_lidar_frame(Frame(scan), GridMethod.BRESENHAM)
picture = grid.black_white_image()   # grey unknown, black occupied, white free
```

### Building a map

```python
from PIL import Image
from slam2d.mapping_2d import Mapping2D

with Mapping2D(with_loop_closing=True, output_dir="out") as mapping:
    for scan in scans:
        mapping.process_scan(scan)
    Image.fromarray(mapping.show_global_map(2000)).save("out/global_map.png")
```

When `output_dir` is given, each finished submap is saved there as
`submap_<id>.png` and loop-closure checks are logged to `loops.txt`. Pass
`on_image=callback` to receive the debug views (`"occupancy map"`,
`"likelihood"`, `"global map"`, `"loop closure"`) as `(name, array)` pairs.

### Saving and loading frames

`frame.dump(filename)` writes a frame and its scan to a text file, and
`Frame.load(filename)` reads one back.

## Conventions

- Poses are world-from-sensor transforms (`T_w_c`); submap poses are
  world-from-submap (`T_w_s`).
- Occupancy grids store 8-bit values: 127 means unknown, lower values mean
  occupied and higher values mean free.
- Likelihood fields store the distance to the nearest obstacle in pixels,
  capped at 30.

## What this package does not do

- It does not read recorded sensor logs or live scanner data; scans are
  passed in as `Scan2d` objects.
- It has no command-line program and opens no windows; images are returned
  as numpy arrays or handed to the `on_image` callback.
- Scan-to-scan matching is by likelihood field only; there is no
  nearest-neighbour point matcher.