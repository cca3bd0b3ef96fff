import math

import numpy as np
import pytest

from slam2d.geometry import SE2, Scan2d, normalize_angle


def test_compose_with_inverse_is_identity():
    pose = SE2(1.0, -2.0, 0.7)
    assert np.allclose((pose * pose.inverse()).log(), np.zeros(3))
    assert np.allclose((pose.inverse() * pose).log(), np.zeros(3))


@pytest.mark.parametrize("theta", [0.0, 0.3, -1.2, 3.0])
def test_exp_log_round_trip(theta):
    assert np.allclose(SE2.exp(theta).log(), [0.0, 0.0, theta])


def test_log_of_pure_translation_is_translation():
    pose = SE2(1.5, -0.5, 0.0)
    assert np.allclose(pose.log(), [1.5, -0.5, 0.0])


def test_identity_log_is_zero():
    assert np.allclose(SE2().log(), np.zeros(3))


def test_mul_point_matches_transform():
    pose = SE2(0.5, 1.0, 0.4)
    point = np.array([2.0, -1.0])
    assert np.allclose(pose * point, pose.transform(point))


def test_composition_acts_like_sequential_transforms():
    a = SE2(1.0, 2.0, 0.3)
    b = SE2(-0.5, 0.25, -1.1)
    point = np.array([0.7, -0.2])
    assert np.allclose((a * b).transform(point), a.transform(b.transform(point)))


def test_composition_is_associative():
    a, b, c = SE2(1.0, 0.0, 0.2), SE2(0.0, 1.0, -0.4), SE2(-1.0, 2.0, 1.0)
    assert np.allclose(((a * b) * c).log(), (a * (b * c)).log())


def test_transform_batch_matches_single_points():
    pose = SE2(0.1, 0.2, 0.9)
    points = np.array([[1.0, 0.0], [0.0, 1.0], [2.0, -3.0]])
    batch = pose.transform(points)
    for single, expected in zip(points, batch):
        assert np.allclose(pose.transform(single), expected)


def test_transform_preserves_distance():
    pose = SE2(3.0, -4.0, 2.1)
    p, q = np.array([1.0, 2.0]), np.array([-0.5, 0.3])
    assert math.isclose(
        np.linalg.norm(pose.transform(p) - pose.transform(q)), np.linalg.norm(p - q)
    )


def test_oplus_zero_is_noop_and_adds_translation():
    pose = SE2(1.0, 2.0, 0.3)
    assert pose.oplus([0.0, 0.0, 0.0]) == pose
    moved = pose.oplus([0.1, 0.2, 0.05])
    assert math.isclose(moved.x - pose.x, 0.1)
    assert math.isclose(moved.y - pose.y, 0.2)
    assert math.isclose(moved.theta - pose.theta, 0.05)


def test_theta_is_wrapped():
    pose = SE2(0.0, 0.0, 3 * math.pi + 0.2)
    assert -math.pi <= pose.theta <= math.pi
    assert math.isclose(math.cos(pose.theta), math.cos(3 * math.pi + 0.2))
    assert math.isclose(math.sin(pose.theta), math.sin(3 * math.pi + 0.2))


@pytest.mark.parametrize("angle", [-10.0, -4.0, 0.5, 4.0, 12.0])
def test_normalize_angle_range_and_equivalence(angle):
    result = normalize_angle(angle)
    assert -math.pi <= result <= math.pi
    assert math.isclose(math.cos(result), math.cos(angle), abs_tol=1e-12)
    assert math.isclose(math.sin(result), math.sin(angle), abs_tol=1e-12)


def test_scan_valid_points_filters_ranges():
    scan = Scan2d(
        ranges=[0.05, 1.0, 50.0, 2.0],
        angle_min=-1.0,
        angle_max=1.0,
        angle_increment=0.5,
        range_min=0.1,
        range_max=30.0,
    )
    points = list(scan.valid_points())
    assert [p[0] for p in points] == [1, 3]
    assert [p[1] for p in points] == [1.0, 2.0]
    assert [p[2] for p in points] == [scan.angle_at(1), scan.angle_at(3)]


def test_scan_is_valid_bounds_are_inclusive():
    scan = Scan2d(ranges=[], range_min=0.1, range_max=30.0)
    assert scan.is_valid(0.1)
    assert scan.is_valid(30.0)
    assert not scan.is_valid(30.5)