"""
Vehicle kinematics model (bicycle model).
Used for delay compensation and as the equality constraints of the MPC horizon.
"""

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

import numpy as np


STATE_FIELDS = ("x", "y", "psi", "v", "cte", "epsi")
STATE_SIZE = len(STATE_FIELDS)
CONTROL_SIZE = 2


@dataclass(frozen=True)
class ExpressionOps:
    """Scalar math used by the model, so it can be traced by a solver backend."""
    sin: Callable
    cos: Callable
    atan: Callable


MATH_OPS = ExpressionOps(sin=math.sin, cos=math.cos, atan=math.atan)


@dataclass(frozen=True)
class VehicleState:
    """Kinematic state in the vehicle body frame at formulation time."""
    x: float
    y: float
    psi: float
    v: float
    cte: float
    epsi: float

    @classmethod
    def at_origin(cls, speed: float, cte: float, epsi: float) -> "VehicleState":
        """Measured state: position and heading at the vehicle-frame origin."""
        return cls(0.0, 0.0, 0.0, float(speed), float(cte), float(epsi))

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "VehicleState":
        if len(values) != STATE_SIZE:
            raise ValueError(f"Expected {STATE_SIZE} state values, got {len(values)}")
        return cls(*(float(v) for v in values))

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.as_array())))


@dataclass(frozen=True)
class Control:
    """Actuator pair in model units: steering (rad) and throttle (-1 brake .. 1)."""
    steering: float = 0.0
    throttle: float = 0.0


def polyeval(coeffs, x):
    """Evaluate c0 + c1*x + c2*x^2 + ... (works on floats and symbolic scalars)."""
    result = 0.0
    power = 1.0
    for c in coeffs:
        result = result + c * power
        power = power * x
    return result


def poly_slope(coeffs, x):
    """Derivative of the polynomial at x."""
    result = 0.0
    power = 1.0
    for i in range(1, len(coeffs)):
        result = result + i * coeffs[i] * power
        power = power * x
    return result


class KinematicBicycleModel:
    """
    Kinematic bicycle model with cross-track and heading error states.

    Simplified 2D model with no slip; the heading rate divides only by the
    fixed distance from the center of gravity to the front axle (Lf), so
    the update stays defined at zero speed.
    """

    def __init__(self, lf: float = 2.67):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from center of gravity to front axle (meters)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        self.lf = lf

    def propagate(self, x, y, psi, v, cte, epsi, steering, throttle, dt: float,
                  ops: ExpressionOps = MATH_OPS, coeffs=None) -> List:
        """
        One discrete step over arbitrary scalar types.

        Args:
            x, y, psi, v, cte, epsi: Current state components
            steering: Steering angle (radians)
            throttle: Throttle/brake command
            dt: Time step (seconds)
            ops: sin/cos/atan implementation for the scalar type
            coeffs: Optional reference curve; when given, the error states are
                re-anchored on the curve instead of carried forward

        Returns:
            [x', y', psi', v', cte', epsi']
        """
        heading_rate = v / self.lf * steering
        next_x = x + v * ops.cos(psi) * dt
        next_y = y + v * ops.sin(psi) * dt
        next_psi = psi - heading_rate * dt
        next_v = v + throttle * dt

        if coeffs is None:
            next_cte = cte + v * ops.sin(epsi) * dt
            next_epsi = epsi - heading_rate * dt
        else:
            path_y = polyeval(coeffs, x)
            path_heading = ops.atan(poly_slope(coeffs, x))
            next_cte = (path_y - y) + v * ops.sin(epsi) * dt
            next_epsi = (psi - path_heading) - heading_rate * dt

        return [next_x, next_y, next_psi, next_v, next_cte, next_epsi]

    def step(self, state: VehicleState, control: Control, dt: float,
             coeffs=None) -> VehicleState:
        """
        Advance a numeric state by one step.

        Args:
            state: Current state
            control: Applied actuator pair
            dt: Time step (seconds)
            coeffs: Optional reference curve (curve-anchored error model)

        Returns:
            Next state
        """
        if coeffs is not None:
            coeffs = [float(c) for c in coeffs]
        values = self.propagate(
            state.x, state.y, state.psi, state.v, state.cte, state.epsi,
            control.steering, control.throttle, dt, coeffs=coeffs,
        )
        return VehicleState(*(float(v) for v in values))

    def rollout(self, state: VehicleState, controls: Iterable[Control], dt: float,
                coeffs=None) -> List[VehicleState]:
        """Apply a control sequence; returns the initial state followed by each successor."""
        states = [state]
        for control in controls:
            states.append(self.step(states[-1], control, dt, coeffs=coeffs))
        return states

