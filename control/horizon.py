"""
Finite-horizon MPC problem: variable layout, bounds, cost and dynamics constraints.

Decision vector layout (stable, indexed positionally by bounds and extraction):

    [x_0..x_{N-1}, y_0.., psi_0.., v_0.., cte_0.., epsi_0..,
     steering_0..steering_{N-2}, throttle_0..throttle_{N-2}]

Constraints are grouped per step: for step i the six rows are
state[i+1] - model(state[i], control[i]) in STATE_FIELDS order.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from control.nlp_solver import NLPProblem
from control.vehicle_model import (
    CONTROL_SIZE,
    MATH_OPS,
    STATE_FIELDS,
    STATE_SIZE,
    Control,
    ExpressionOps,
    KinematicBicycleModel,
    VehicleState,
)
from trajectory.utils import REFERENCE_DEGREE


@dataclass(frozen=True)
class CostWeights:
    """Weight per cost component; tuned per vehicle/track through config."""
    cte: float = 100.0
    epsi: float = 4000.0
    speed: float = 1.0
    steering: float = 2000.0
    throttle: float = 5.0
    steering_rate: float = 200.0
    throttle_rate: float = 10.0

    def __post_init__(self):
        for name, value in self.__dict__.items():
            if not math.isfinite(value) or value < 0.0:
                raise ValueError(f"Cost weight '{name}' must be finite and non-negative, got {value}")


class HorizonLayout:
    """Named index ranges over the flat decision vector."""

    def __init__(self, horizon: int):
        if horizon < 2:
            raise ValueError(f"horizon must be at least 2, got {horizon}")
        self.horizon = horizon
        self.n_controls = horizon - 1
        self.state_starts = {name: i * horizon for i, name in enumerate(STATE_FIELDS)}
        self.steering_start = STATE_SIZE * horizon
        self.throttle_start = self.steering_start + self.n_controls
        self.n_vars = STATE_SIZE * horizon + CONTROL_SIZE * self.n_controls
        self.n_constraints = STATE_SIZE * self.n_controls

    def state_slice(self, name: str) -> slice:
        start = self.state_starts[name]
        return slice(start, start + self.horizon)

    @property
    def steering_slice(self) -> slice:
        return slice(self.steering_start, self.steering_start + self.n_controls)

    @property
    def throttle_slice(self) -> slice:
        return slice(self.throttle_start, self.throttle_start + self.n_controls)

    def state_at(self, w, i: int) -> List:
        """State components of step i (symbolic or numeric)."""
        return [w[self.state_starts[name] + i] for name in STATE_FIELDS]

    def control_at(self, w, i: int) -> Tuple:
        return w[self.steering_start + i], w[self.throttle_start + i]

    def states(self, w: np.ndarray) -> np.ndarray:
        """(N, 6) array of states from a numeric decision vector."""
        w = np.asarray(w, dtype=float)
        return np.column_stack([w[self.state_slice(name)] for name in STATE_FIELDS])

    def controls(self, w: np.ndarray) -> np.ndarray:
        """(N-1, 2) array of (steering, throttle)."""
        w = np.asarray(w, dtype=float)
        return np.column_stack([w[self.steering_slice], w[self.throttle_slice]])

    def pack(self, states: np.ndarray, controls: np.ndarray) -> np.ndarray:
        """Inverse of states()/controls()."""
        states = np.asarray(states, dtype=float)
        controls = np.asarray(controls, dtype=float)
        w = np.zeros(self.n_vars)
        for k, name in enumerate(STATE_FIELDS):
            w[self.state_slice(name)] = states[:, k]
        w[self.steering_slice] = controls[:, 0]
        w[self.throttle_slice] = controls[:, 1]
        return w


class HorizonFormulator:
    """
    Builds the nonlinear program for one control cycle from the
    delay-compensated state and the reference curve.
    """

    def __init__(self, model: KinematicBicycleModel, horizon: int, dt: float,
                 weights: CostWeights, v_ref: float, max_steering: float,
                 throttle_bounds: Tuple[float, float] = (-1.0, 1.0),
                 curve_anchored: bool = False):
        """
        Args:
            model: Kinematic model used for the equality constraints
            horizon: Number of states N (N-1 controls)
            dt: Step between horizon states (seconds)
            weights: Cost weights
            v_ref: Target cruise speed
            max_steering: Steering bound (radians), symmetric
            throttle_bounds: (min, max) throttle
            curve_anchored: Re-anchor cte/epsi on the reference curve at each step
        """
        if dt <= 0.0:
            raise ValueError(f"dt must be positive, got {dt}")
        if max_steering <= 0.0:
            raise ValueError(f"max_steering must be positive, got {max_steering}")
        if throttle_bounds[0] >= throttle_bounds[1]:
            raise ValueError(f"Invalid throttle bounds {throttle_bounds}")
        self.model = model
        self.layout = HorizonLayout(horizon)
        self.dt = float(dt)
        self.weights = weights
        self.v_ref = float(v_ref)
        self.max_steering = float(max_steering)
        self.throttle_bounds = (float(throttle_bounds[0]), float(throttle_bounds[1]))
        self.curve_anchored = curve_anchored

    @property
    def structure_key(self) -> tuple:
        return (
            self.layout.horizon, self.dt, self.model.lf, self.weights,
            self.v_ref, self.curve_anchored,
        )

    def bounds(self, state: VehicleState) -> Tuple[np.ndarray, np.ndarray]:
        """Variable bounds; the first state of each block is pinned to `state`."""
        layout = self.layout
        lbx = np.full(layout.n_vars, -np.inf)
        ubx = np.full(layout.n_vars, np.inf)

        for name, value in zip(STATE_FIELDS, state.as_array()):
            index = layout.state_starts[name]
            lbx[index] = value
            ubx[index] = value

        lbx[layout.steering_slice] = -self.max_steering
        ubx[layout.steering_slice] = self.max_steering
        lbx[layout.throttle_slice] = self.throttle_bounds[0]
        ubx[layout.throttle_slice] = self.throttle_bounds[1]
        return lbx, ubx

    def objective(self, w, p, ops: ExpressionOps = MATH_OPS):
        weights = self.weights
        layout = self.layout
        cte = w[layout.state_slice("cte")]
        epsi = w[layout.state_slice("epsi")]
        v = w[layout.state_slice("v")]
        steering = w[layout.steering_slice]
        throttle = w[layout.throttle_slice]

        cost = 0.0
        for i in range(layout.horizon):
            cost += weights.cte * cte[i] ** 2
            cost += weights.epsi * epsi[i] ** 2
            cost += weights.speed * (v[i] - self.v_ref) ** 2

        for i in range(layout.n_controls):
            cost += weights.steering * steering[i] ** 2
            cost += weights.throttle * throttle[i] ** 2

        # Smoothness between consecutive actuations
        for i in range(layout.n_controls - 1):
            cost += weights.steering_rate * (steering[i + 1] - steering[i]) ** 2
            cost += weights.throttle_rate * (throttle[i + 1] - throttle[i]) ** 2

        return cost

    def constraints(self, w, p, ops: ExpressionOps = MATH_OPS) -> List:
        layout = self.layout
        coeffs = [p[k] for k in range(REFERENCE_DEGREE + 1)] if self.curve_anchored else None
        rows = []
        for i in range(layout.n_controls):
            current = layout.state_at(w, i)
            steering, throttle = layout.control_at(w, i)
            predicted = self.model.propagate(
                *current, steering, throttle, self.dt, ops=ops, coeffs=coeffs,
            )
            following = layout.state_at(w, i + 1)
            rows.extend(nxt - pred for nxt, pred in zip(following, predicted))
        return rows

    def initial_guess(self, state: VehicleState, coeffs: Sequence[float]) -> np.ndarray:
        """Zero controls with the state rolled through the model: a feasible start."""
        layout = self.layout
        controls = [Control()] * layout.n_controls
        rolled = self.model.rollout(
            state, controls, self.dt,
            coeffs=coeffs if self.curve_anchored else None,
        )
        states = np.array([s.as_array() for s in rolled])
        return layout.pack(states, np.zeros((layout.n_controls, CONTROL_SIZE)))

    def build(self, state: VehicleState, coeffs: Sequence[float]) -> NLPProblem:
        """Assemble the program for this cycle."""
        layout = self.layout
        lbx, ubx = self.bounds(state)
        zeros = np.zeros(layout.n_constraints)
        return NLPProblem(
            n_vars=layout.n_vars,
            n_constraints=layout.n_constraints,
            lbx=lbx,
            ubx=ubx,
            lbg=zeros,
            ubg=zeros.copy(),
            x0=self.initial_guess(state, coeffs),
            p=np.asarray(coeffs, dtype=float),
            objective=self.objective,
            constraints=self.constraints,
            structure_key=self.structure_key,
        )

    def residuals(self, w: np.ndarray, coeffs: Sequence[float]) -> np.ndarray:
        """Numeric dynamics residuals, one row per equality constraint."""
        w = [float(v) for v in np.asarray(w, dtype=float)]
        p = [float(c) for c in coeffs]
        return np.array(self.constraints(w, p, MATH_OPS), dtype=float)
