import math

import numpy as np
import pytest

from slam2d.geometry import SE2, Scan2d, normalize_angle
from slam2d.likelihood_field import LikelihoodField, ModelPoint, build_model

XMIN, XMAX, YMIN, YMAX = -4.0, 6.0, -3.0, 5.0


def room_scan(pose: SE2, count: int = 1440) -> Scan2d:
    inc = 2 * math.pi / count
    angles = -math.pi + inc * np.arange(count)
    ranges = []
    for a in angles:
        d = pose.theta + a
        c, s = math.cos(d), math.sin(d)
        hits = []
        if c > 1e-12:
            hits.append((XMAX - pose.x) / c)
        elif c < -1e-12:
            hits.append((XMIN - pose.x) / c)
        if s > 1e-12:
            hits.append((YMAX - pose.y) / s)
        elif s < -1e-12:
            hits.append((YMIN - pose.y) / s)
        ranges.append(min(hits))
    return Scan2d(
        ranges=ranges,
        angle_min=-math.pi,
        angle_max=-math.pi + inc * (count - 1),
        angle_increment=inc,
        range_min=0.1,
        range_max=30.0,
    )


def single_point_scan(r: float = 2.0) -> Scan2d:
    return Scan2d(
        ranges=[r], angle_min=0.0, angle_max=0.0, angle_increment=0.01, range_min=0.1, range_max=30.0
    )


def test_build_model_size_and_residuals():
    model = build_model(20)
    assert len(model) == 41 * 41
    assert ModelPoint(3, 4, 5.0) in model
    assert min(m.residual for m in model) == 0.0


def test_target_scan_sets_field_around_point():
    lf = LikelihoodField()
    lf.set_target_scan(single_point_scan(2.0))
    assert lf.field[500, 540] == 0.0
    assert lf.field[500, 543] == pytest.approx(3.0)
    assert lf.field[504, 543] == pytest.approx(5.0)
    assert lf.field[0, 0] == pytest.approx(30.0)


def test_target_scan_resets_field():
    lf = LikelihoodField()
    lf.set_target_scan(single_point_scan(2.0))
    lf.set_target_scan(single_point_scan(4.0))
    assert lf.field[500, 540] == pytest.approx(30.0)
    assert lf.field[500, 580] == 0.0


def test_field_from_occupancy_map():
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    occu[400, 600] = 0
    occu[10, 10] = 0  # inside the ignored border
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(occu)
    assert lf.field[400, 600] == 0.0
    assert lf.field[400, 603] == pytest.approx(3.0)
    assert lf.field[10, 10] == pytest.approx(30.0)


def test_field_from_empty_occupancy_map_is_flat():
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(np.full((1000, 1000), 200, dtype=np.uint8))
    assert float(lf.field.min()) == pytest.approx(30.0)


def test_occupancy_map_must_be_single_channel():
    with pytest.raises(ValueError):
        LikelihoodField().set_field_image_from_occu_map(np.zeros((100, 100, 3), dtype=np.uint8))


def test_field_image_grey_levels():
    lf = LikelihoodField()
    lf.set_target_scan(single_point_scan(2.0))
    image = lf.get_field_image()
    assert image.shape == (1000, 1000, 3)
    assert image.dtype == np.uint8
    assert tuple(image[500, 540]) == (0, 0, 0)
    assert tuple(image[0, 0]) == (255, 255, 255)
    assert tuple(image[500, 543]) == (25, 25, 25)


def test_gauss_newton_recovers_pose():
    truth = SE2(0.3, -0.2, 0.03)
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(room_scan(truth))
    pose = lf.align_gauss_newton(SE2())
    assert abs(pose.x - truth.x) < 0.1
    assert abs(pose.y - truth.y) < 0.1
    assert abs(normalize_angle(pose.theta - truth.theta)) < 0.02
    assert lf.has_outside_points is False


def test_g2o_recovers_pose():
    truth = SE2(0.1, -0.05, 0.01)
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(room_scan(truth, count=720))
    pose = lf.align_g2o(SE2())
    assert abs(pose.x - truth.x) < 0.05
    assert abs(pose.y - truth.y) < 0.05
    assert abs(normalize_angle(pose.theta - truth.theta)) < 0.01


def test_far_points_are_outside():
    count = 100
    inc = 2 * math.pi / count
    far = Scan2d(
        ranges=[24.5] * count,
        angle_min=-math.pi,
        angle_max=-math.pi + inc * (count - 1),
        angle_increment=inc,
        range_min=0.1,
        range_max=30.0,
    )
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(far)
    assert lf.align_gauss_newton(SE2()) is None
    assert lf.has_outside_points is True


def test_align_without_source_raises():
    lf = LikelihoodField()
    with pytest.raises(RuntimeError):
        lf.align_gauss_newton(SE2())
    with pytest.raises(RuntimeError):
        lf.align_g2o(SE2())