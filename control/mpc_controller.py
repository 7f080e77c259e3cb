"""
Model Predictive Control (MPC) controller.

One call to compute_control is one control cycle:
  1. Input validation (finite state, degree-3 reference curve)
  2. Actuation latency compensation from the last issued command
  3. Horizon formulation (bounds, cost, dynamics constraints)
  4. NLP solve
  5. Extraction of the first command and the predicted trajectory

No horizon or solver result survives the cycle; only the last issued
control pair is kept for the next latency compensation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from control.delay_compensation import DelayCompensator
from control.horizon import CostWeights, HorizonFormulator
from control.nlp_solver import IpoptOptions, IpoptSolver, NLPSolver, SolveStatus
from control.vehicle_model import Control, KinematicBicycleModel, VehicleState
from trajectory.utils import REFERENCE_DEGREE

logger = logging.getLogger(__name__)

ERROR_MODELS = ("propagated", "curve_anchored")


@dataclass(frozen=True)
class MPCConfig:
    """Process-wide MPC tuning; validated once at construction."""

    horizon: int = 10
    dt: float = 0.1
    lf: float = 2.67
    max_steering_rad: float = math.radians(25.0)
    throttle_min: float = -1.0
    throttle_max: float = 1.0
    latency: float = 0.1
    v_ref: float = 40.0
    error_model: str = "propagated"
    weights: CostWeights = field(default_factory=CostWeights)
    solver: IpoptOptions = field(default_factory=IpoptOptions)

    def __post_init__(self):
        for name in ("dt", "lf", "max_steering_rad", "throttle_min", "throttle_max", "latency", "v_ref"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
        if self.horizon < 2:
            raise ValueError(f"horizon must be at least 2, got {self.horizon}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.lf <= 0.0:
            raise ValueError(f"lf must be positive, got {self.lf}")
        if self.max_steering_rad <= 0.0:
            raise ValueError(f"max_steering_rad must be positive, got {self.max_steering_rad}")
        if self.throttle_min >= self.throttle_max:
            raise ValueError(
                f"throttle_min ({self.throttle_min}) must be below throttle_max ({self.throttle_max})"
            )
        if self.latency < 0.0:
            raise ValueError(f"latency must be non-negative, got {self.latency}")
        if self.error_model not in ERROR_MODELS:
            raise ValueError(f"error_model must be one of {ERROR_MODELS}, got '{self.error_model}'")


class ControlStatus(str, Enum):
    OK = "ok"
    MALFORMED_INPUT = "malformed_input"
    SOLVER_FAILED = "solver_failed"


class ControllerPhase(str, Enum):
    IDLE = "idle"
    SOLVING = "solving"


@dataclass
class MPCOutput:
    """Result of one control cycle."""

    status: ControlStatus
    steering: Optional[float] = None  # radians, model convention
    throttle: Optional[float] = None
    trajectory: List[Tuple[float, float]] = field(default_factory=list)  # predicted (x, y), states 1..N-1
    predicted_states: Optional[np.ndarray] = None  # (N, 6)
    compensated_state: Optional[VehicleState] = None
    solver_status: Optional[SolveStatus] = None
    solve_time: float = 0.0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is ControlStatus.OK

    @property
    def control(self) -> Optional[Control]:
        if not self.ok:
            return None
        return Control(steering=self.steering, throttle=self.throttle)


class MPCController:
    """
    Receding-horizon controller facade.

    Not thread-safe: callers that may invoke it concurrently must serialize
    access themselves.
    """

    def __init__(self, config: Optional[MPCConfig] = None, solver: Optional[NLPSolver] = None):
        self.config = config or MPCConfig()
        self.model = KinematicBicycleModel(lf=self.config.lf)
        self.compensator = DelayCompensator(self.model, self.config.latency)
        self.formulator = HorizonFormulator(
            self.model,
            horizon=self.config.horizon,
            dt=self.config.dt,
            weights=self.config.weights,
            v_ref=self.config.v_ref,
            max_steering=self.config.max_steering_rad,
            throttle_bounds=(self.config.throttle_min, self.config.throttle_max),
            curve_anchored=self.config.error_model == "curve_anchored",
        )
        self.solver = solver if solver is not None else IpoptSolver(self.config.solver)
        self.phase = ControllerPhase.IDLE
        self.last_control = Control()

    def reset(self) -> None:
        """Forget the last issued command."""
        self.last_control = Control()

    def validate_input(self, state: VehicleState, coeffs: Optional[Sequence[float]]) -> Optional[str]:
        """Return a rejection reason, or None when the input is usable."""
        if coeffs is None:
            return "reference curve unavailable"
        coeffs = np.asarray(coeffs, dtype=float)
        if coeffs.shape != (REFERENCE_DEGREE + 1,):
            return f"reference curve needs {REFERENCE_DEGREE + 1} coefficients, got {coeffs.size}"
        if not np.all(np.isfinite(coeffs)):
            return "reference curve has non-finite coefficients"
        if not state.is_finite():
            return "state has non-finite values"
        return None

    def compute_control(
        self,
        state: VehicleState,
        coeffs: Optional[Sequence[float]],
        previous_control: Optional[Control] = None,
    ) -> MPCOutput:
        """
        Run one control cycle.

        Args:
            state: Measured state in the vehicle frame (x, y, psi nominally 0)
            coeffs: Reference curve coefficients, increasing power order
            previous_control: Command actually in effect; defaults to the last
                command this controller issued

        Returns:
            MPCOutput; on failure steering/throttle are None and the caller
            chooses the fallback
        """
        reason = self.validate_input(state, coeffs)
        if reason is not None:
            logger.warning("[MPC] Rejecting input: %s", reason)
            return MPCOutput(status=ControlStatus.MALFORMED_INPUT, reason=reason)

        applied = previous_control if previous_control is not None else self.last_control
        compensated = self.compensator.compensate(state, applied)
        if not compensated.is_finite():
            reason = "previous command has non-finite values"
            logger.warning("[MPC] Rejecting input: %s", reason)
            return MPCOutput(status=ControlStatus.MALFORMED_INPUT, reason=reason)
        problem = self.formulator.build(compensated, coeffs)

        self.phase = ControllerPhase.SOLVING
        try:
            result = self.solver.solve(problem)
        finally:
            self.phase = ControllerPhase.IDLE

        if not result.success:
            logger.warning(
                "[MPC] Solve failed: %s (%s) after %d iterations",
                result.status.value, result.return_status, result.iterations,
            )
            return MPCOutput(
                status=ControlStatus.SOLVER_FAILED,
                compensated_state=compensated,
                solver_status=result.status,
                solve_time=result.solve_time,
                reason=result.return_status or result.status.value,
            )

        layout = self.formulator.layout
        states = layout.states(result.x)
        controls = layout.controls(result.x)
        steering = float(np.clip(controls[0, 0], -self.config.max_steering_rad, self.config.max_steering_rad))
        throttle = float(np.clip(controls[0, 1], self.config.throttle_min, self.config.throttle_max))
        trajectory = [(float(x), float(y)) for x, y in states[1:, :2]]

        self.last_control = Control(steering=steering, throttle=throttle)
        logger.debug(
            "[MPC] steering=%.4f throttle=%.4f cost=%.3f iterations=%d time=%.3fs",
            steering, throttle, result.objective, result.iterations, result.solve_time,
        )
        return MPCOutput(
            status=ControlStatus.OK,
            steering=steering,
            throttle=throttle,
            trajectory=trajectory,
            predicted_states=states,
            compensated_state=compensated,
            solver_status=result.status,
            solve_time=result.solve_time,
        )


def build_mpc_controller(config: dict, solver: Optional[NLPSolver] = None) -> MPCController:
    """Build an MPCController from the `mpc` section of the YAML config."""
    mpc_cfg = config.get("mpc", {}) or {}
    weights_cfg = mpc_cfg.get("weights", {}) or {}
    solver_cfg = mpc_cfg.get("solver", {}) or {}

    defaults = CostWeights()
    weights = CostWeights(
        cte=float(weights_cfg.get("cte", defaults.cte)),
        epsi=float(weights_cfg.get("epsi", defaults.epsi)),
        speed=float(weights_cfg.get("speed", defaults.speed)),
        steering=float(weights_cfg.get("steering", defaults.steering)),
        throttle=float(weights_cfg.get("throttle", defaults.throttle)),
        steering_rate=float(weights_cfg.get("steering_rate", defaults.steering_rate)),
        throttle_rate=float(weights_cfg.get("throttle_rate", defaults.throttle_rate)),
    )

    solver_defaults = IpoptOptions()
    solver_options = IpoptOptions(
        max_iter=int(solver_cfg.get("max_iter", solver_defaults.max_iter)),
        tol=float(solver_cfg.get("tol", solver_defaults.tol)),
        acceptable_tol=float(solver_cfg.get("acceptable_tol", solver_defaults.acceptable_tol)),
        max_cpu_time=float(solver_cfg.get("max_cpu_time", solver_defaults.max_cpu_time)),
        print_level=int(solver_cfg.get("print_level", solver_defaults.print_level)),
    )

    if "max_steering_rad" in mpc_cfg:
        max_steering_rad = float(mpc_cfg["max_steering_rad"])
    else:
        max_steering_rad = math.radians(float(mpc_cfg.get("max_steering_deg", 25.0)))

    mpc_config = MPCConfig(
        horizon=int(mpc_cfg.get("horizon", 10)),
        dt=float(mpc_cfg.get("dt", 0.1)),
        lf=float(mpc_cfg.get("lf", 2.67)),
        max_steering_rad=max_steering_rad,
        throttle_min=float(mpc_cfg.get("throttle_min", -1.0)),
        throttle_max=float(mpc_cfg.get("throttle_max", 1.0)),
        latency=float(mpc_cfg.get("latency", 0.1)),
        v_ref=float(mpc_cfg.get("v_ref", 40.0)),
        error_model=str(mpc_cfg.get("error_model", "propagated")),
        weights=weights,
        solver=solver_options,
    )
    logger.info(
        "[MPC] horizon=%d dt=%.3f latency=%.3f v_ref=%.1f error_model=%s",
        mpc_config.horizon, mpc_config.dt, mpc_config.latency, mpc_config.v_ref, mpc_config.error_model,
    )
    return MPCController(mpc_config, solver=solver)
