"""
Unit tests for trajectory/utils.py: waypoint transform, reference fit,
tracking errors and the display polyline.
"""

import math

import numpy as np
import pytest

from trajectory.utils import (
    compute_tracking_errors,
    evaluate_polynomial,
    fit_reference_polynomial,
    reference_polyline,
    world_to_vehicle,
)


class TestWorldToVehicle:
    def test_identity_pose(self):
        xs, ys = world_to_vehicle([1.0, 2.0], [3.0, 4.0], 0.0, 0.0, 0.0)
        np.testing.assert_allclose(xs, [1.0, 2.0])
        np.testing.assert_allclose(ys, [3.0, 4.0])

    def test_point_ahead_of_rotated_vehicle(self):
        """Vehicle at (10, 5) facing +y: a point 3 m further along +y is straight ahead."""
        xs, ys = world_to_vehicle([10.0], [8.0], 10.0, 5.0, math.pi / 2)
        assert xs[0] == pytest.approx(3.0)
        assert ys[0] == pytest.approx(0.0, abs=1e-12)

    def test_point_to_the_left(self):
        """Facing +x, a point at larger world y is at positive vehicle y."""
        xs, ys = world_to_vehicle([0.0], [2.0], 0.0, 0.0, 0.0)
        assert ys[0] > 0.0

    def test_preserves_distances(self):
        ptsx = [3.0, -1.0, 7.5]
        ptsy = [2.0, 4.0, -6.0]
        xs, ys = world_to_vehicle(ptsx, ptsy, 1.0, -2.0, 0.7)
        world = np.hypot(np.array(ptsx) - 1.0, np.array(ptsy) + 2.0)
        np.testing.assert_allclose(np.hypot(xs, ys), world)


class TestReferenceFit:
    def test_recovers_exact_cubic(self):
        truth = np.array([0.5, -0.1, 0.02, -0.001])
        xs = np.linspace(0.0, 40.0, 8)
        ys = evaluate_polynomial(truth, xs)

        coeffs = fit_reference_polynomial(xs, ys)
        assert coeffs is not None
        np.testing.assert_allclose(coeffs, truth, atol=1e-6)

    def test_straight_line_fit(self):
        xs = np.array([0.0, 5.0, 10.0, 15.0, 20.0, 25.0])
        coeffs = fit_reference_polynomial(xs, 0.3 * xs + 1.0)
        np.testing.assert_allclose(coeffs, [1.0, 0.3, 0.0, 0.0], atol=1e-9)

    def test_too_few_points(self):
        assert fit_reference_polynomial([0.0, 1.0, 2.0], [0.0, 1.0, 2.0]) is None

    def test_repeated_x_positions(self):
        """Four points on two distinct x values cannot determine a cubic."""
        assert fit_reference_polynomial([1.0, 1.0, 2.0, 2.0], [0.0, 0.1, 0.2, 0.3]) is None

    def test_non_finite_waypoints(self):
        assert fit_reference_polynomial([0.0, 1.0, 2.0, np.nan], [0.0, 1.0, 2.0, 3.0]) is None

    def test_mismatched_lengths(self):
        assert fit_reference_polynomial([0.0, 1.0, 2.0, 3.0], [0.0, 1.0, 2.0]) is None


class TestTrackingErrors:
    def test_offset_and_heading(self):
        cte, epsi = compute_tracking_errors([1.5, 0.2, 0.0, 0.0])
        assert cte == pytest.approx(1.5)
        assert epsi == pytest.approx(-math.atan(0.2))

    def test_on_reference(self):
        cte, epsi = compute_tracking_errors([0.0, 0.0, 0.05, 0.001])
        assert cte == pytest.approx(0.0)
        assert epsi == pytest.approx(0.0)

    def test_end_to_end_from_world_waypoints(self):
        """Vehicle 1 m right of a straight road along world +x, heading aligned."""
        ptsx = [0.0, 10.0, 20.0, 30.0, 40.0, 50.0]
        ptsy = [1.0] * 6
        xs, ys = world_to_vehicle(ptsx, ptsy, 5.0, 0.0, 0.0)
        coeffs = fit_reference_polynomial(xs, ys)
        cte, epsi = compute_tracking_errors(coeffs)
        assert cte == pytest.approx(1.0, abs=1e-9)
        assert epsi == pytest.approx(0.0, abs=1e-9)


def test_reference_polyline_samples():
    xs, ys = reference_polyline([1.0, 0.5, 0.0, 0.0])
    assert len(xs) == 25
    assert xs[1] == pytest.approx(2.5)
    assert xs[-1] == pytest.approx(60.0)
    np.testing.assert_allclose(ys, 1.0 + 0.5 * xs)


def test_reference_polyline_custom_spacing():
    xs, ys = reference_polyline([0.0, 0.0, 0.0, 0.0], spacing=1.0, count=4)
    np.testing.assert_allclose(xs, [0.0, 1.0, 2.0, 3.0])
    np.testing.assert_allclose(ys, 0.0)
