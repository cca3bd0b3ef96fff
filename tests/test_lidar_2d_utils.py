import math

import numpy as np

from slam2d.geometry import SE2, Scan2d
from slam2d.lidar_2d_utils import visualize_2d_scan

BLUE = (255, 0, 0)
WHITE = (255, 255, 255)


def _scan():
    return Scan2d(
        ranges=[4.0, 4.0, 5.0, 4.0, 4.0],
        angle_min=-1.0,
        angle_max=1.0,
        angle_increment=0.5,
        range_min=0.1,
        range_max=30.0,
    )


def test_new_image_is_created_white_with_scan_point():
    image = visualize_2d_scan(_scan(), SE2(), None, BLUE)
    assert image.shape == (800, 800, 3)
    assert image.dtype == np.uint8
    assert tuple(image[400, 500]) == BLUE
    assert tuple(image[0, 0]) == WHITE


def test_points_near_the_scan_edges_are_skipped():
    image = visualize_2d_scan(_scan(), SE2(), None, BLUE)
    x = int(4.0 * math.cos(-0.5) * 20 + 400)
    y = int(4.0 * math.sin(-0.5) * 20 + 400)
    assert tuple(image[y, x]) == WHITE


def test_pose_marker_is_a_ring():
    image = visualize_2d_scan(Scan2d(ranges=[]), SE2(), None, BLUE)
    assert tuple(image[400, 400]) == WHITE
    window = image[393:408, 393:408]
    assert np.any(np.all(window == BLUE, axis=-1))


def test_existing_image_is_drawn_in_place():
    image = np.zeros((1000, 1000, 3), dtype=np.uint8)
    result = visualize_2d_scan(_scan(), SE2(), image, (0, 0, 255), 1000, 20.0)
    assert result is image
    assert tuple(image[500, 600]) == (0, 0, 255)


def test_invalid_ranges_are_not_drawn():
    scan = _scan()
    scan.ranges[2] = 100.0
    image = visualize_2d_scan(scan, SE2(), None, BLUE)
    assert tuple(image[400, 500]) == WHITE


def test_submap_pose_cancels_identical_pose():
    pose = SE2(3.0, -2.0, 0.7)
    with_submap = visualize_2d_scan(_scan(), pose, None, BLUE, pose_submap=pose)
    plain = visualize_2d_scan(_scan(), SE2(), None, BLUE)
    assert np.array_equal(with_submap, plain)