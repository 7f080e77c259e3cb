"""
Unit tests for control/delay_compensation.py.
"""

import pytest

from control.delay_compensation import DelayCompensator
from control.vehicle_model import Control, KinematicBicycleModel, VehicleState


def test_compensation_is_one_model_step_with_latency():
    model = KinematicBicycleModel(lf=2.67)
    compensator = DelayCompensator(model, latency=0.1)
    measured = VehicleState.at_origin(20.0, 0.4, -0.05)
    previous = Control(steering=0.1, throttle=0.3)

    compensated = compensator.compensate(measured, previous)

    assert compensated == model.step(measured, previous, 0.1)
    assert compensated.x == pytest.approx(2.0)
    assert compensated.v == pytest.approx(20.03)
    assert compensated.psi == pytest.approx(-(20.0 / 2.67) * 0.1 * 0.1)


def test_zero_latency_returns_measured_state():
    compensator = DelayCompensator(KinematicBicycleModel(), latency=0.0)
    measured = VehicleState.at_origin(20.0, 0.4, -0.05)
    assert compensator.compensate(measured, Control(0.3, 1.0)) is measured


def test_stationary_vehicle_only_gains_speed():
    compensator = DelayCompensator(KinematicBicycleModel(), latency=0.1)
    compensated = compensator.compensate(VehicleState.at_origin(0.0, 0.2, 0.1), Control(0.4, 0.5))

    assert compensated.x == pytest.approx(0.0)
    assert compensated.psi == pytest.approx(0.0)
    assert compensated.cte == pytest.approx(0.2)
    assert compensated.epsi == pytest.approx(0.1)
    assert compensated.v == pytest.approx(0.05)


def test_negative_latency_rejected():
    with pytest.raises(ValueError):
        DelayCompensator(KinematicBicycleModel(), latency=-0.01)


def test_reference_case_speed_and_heading():
    """steering 0.1, throttle 0.5, latency 0.1 at v = 10."""
    lf = 2.67
    compensator = DelayCompensator(KinematicBicycleModel(lf=lf), latency=0.1)
    compensated = compensator.compensate(VehicleState.at_origin(10.0, 0.0, 0.0), Control(0.1, 0.5))

    assert compensated.v == pytest.approx(10.05)
    assert compensated.psi == pytest.approx(-(10.0 / lf) * 0.1 * 0.1)
    assert compensated.epsi == pytest.approx(-(10.0 / lf) * 0.1 * 0.1)
