"""
Main MPC stack integration script.
Connects telemetry processing, reference fitting, and the MPC controller
to the simulator bridge.
"""

import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import yaml

from control.mpc_controller import MPCController, MPCOutput, build_mpc_controller
from control.nlp_solver import NLPSolver
from control.vehicle_model import Control, VehicleState
from data.formats.data_format import SteerCommand, Telemetry
from trajectory.utils import (
    compute_tracking_errors,
    fit_reference_polynomial,
    reference_polyline,
    world_to_vehicle,
)

# Configure logging
log_dir = Path(__file__).parent / 'tmp' / 'logs'
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / 'mpc_stack.log'

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(str(log_file))
    ]
)
logger = logging.getLogger(__name__)

FALLBACK_MODES = ("hold", "brake")


@dataclass(frozen=True)
class StackConfig:
    """Glue settings between the simulator and the controller."""
    steering_output_sign: float = -1.0  # Simulator steers opposite to the model's heading-rate sign
    fallback_mode: str = "hold"
    fallback_brake_throttle: float = -0.2
    reference_display_spacing: float = 2.5
    reference_display_points: int = 25
    slow_solve_seconds: float = 0.05

    def __post_init__(self):
        if self.steering_output_sign not in (-1.0, 1.0):
            raise ValueError(f"steering_output_sign must be 1 or -1, got {self.steering_output_sign}")
        if self.fallback_mode not in FALLBACK_MODES:
            raise ValueError(f"fallback_mode must be one of {FALLBACK_MODES}, got '{self.fallback_mode}'")
        if not -1.0 <= self.fallback_brake_throttle <= 0.0:
            raise ValueError(f"fallback_brake_throttle must be in [-1, 0], got {self.fallback_brake_throttle}")


def _finite_or_zero(value: float) -> float:
    return float(value) if np.isfinite(value) else 0.0


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "mpc_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


def build_stack_config(config: dict) -> StackConfig:
    stack_cfg = config.get("stack", {}) or {}
    return StackConfig(
        steering_output_sign=float(stack_cfg.get("steering_output_sign", -1.0)),
        fallback_mode=str(stack_cfg.get("fallback_mode", "hold")),
        fallback_brake_throttle=float(stack_cfg.get("fallback_brake_throttle", -0.2)),
        reference_display_spacing=float(stack_cfg.get("reference_display_spacing", 2.5)),
        reference_display_points=int(stack_cfg.get("reference_display_points", 25)),
        slow_solve_seconds=float(stack_cfg.get("slow_solve_seconds", 0.05)),
    )


class MPCStack:
    """Turns one telemetry event into one steer command."""

    def __init__(self, config: Optional[dict] = None, config_path: Optional[str] = None,
                 solver: Optional[NLPSolver] = None):
        """
        Args:
            config: Parsed configuration; loaded from config_path when None
            config_path: YAML path (default: config/mpc_config.yaml)
            solver: NLP backend override (default: IPOPT)
        """
        if config is None:
            config = load_config(config_path)
        self.config = config
        self.stack_config = build_stack_config(config)
        self.controller: MPCController = build_mpc_controller(config, solver=solver)
        self.last_output: Optional[MPCOutput] = None
        self.frame_count = 0

    def to_actuator_steering(self, steering_rad: float) -> float:
        """Model radians -> normalized simulator steering in [-1, 1]."""
        max_steering = self.controller.config.max_steering_rad
        normalized = self.stack_config.steering_output_sign * steering_rad / max_steering
        return float(np.clip(normalized, -1.0, 1.0))

    def from_actuator_steering(self, normalized: float) -> float:
        """Normalized simulator steering -> model radians."""
        max_steering = self.controller.config.max_steering_rad
        return float(self.stack_config.steering_output_sign * normalized * max_steering)

    def _fallback_command(self, telemetry: Telemetry, reason: str,
                          next_x=None, next_y=None) -> SteerCommand:
        steering = _finite_or_zero(telemetry.steering_angle)
        if self.stack_config.fallback_mode == "brake":
            throttle = self.stack_config.fallback_brake_throttle
        else:
            throttle = _finite_or_zero(telemetry.throttle)
        logger.warning(
            f"[FALLBACK] frame={self.frame_count} mode={self.stack_config.fallback_mode} reason={reason}"
        )
        return SteerCommand(
            steering_angle=float(np.clip(steering, -1.0, 1.0)),
            throttle=float(np.clip(throttle, -1.0, 1.0)),
            next_x=list(next_x) if next_x is not None else [],
            next_y=list(next_y) if next_y is not None else [],
            fallback=True,
            fallback_reason=reason,
        )

    def process_telemetry(self, telemetry: Telemetry) -> SteerCommand:
        """
        Run one control cycle for a telemetry event.

        Args:
            telemetry: World-frame waypoints, pose, speed and applied actuators

        Returns:
            SteerCommand ready to send (fallback command on failure)
        """
        self.frame_count += 1

        # 1. Reference waypoints in the vehicle frame
        xs, ys = world_to_vehicle(telemetry.ptsx, telemetry.ptsy, telemetry.x, telemetry.y, telemetry.psi)

        # 2. Reference curve and tracking errors
        coeffs = fit_reference_polynomial(xs, ys)
        if coeffs is None:
            self.last_output = None
            return self._fallback_command(telemetry, "reference fit rejected")
        cte, epsi = compute_tracking_errors(coeffs)
        next_x, next_y = reference_polyline(
            coeffs,
            spacing=self.stack_config.reference_display_spacing,
            count=self.stack_config.reference_display_points,
        )

        # 3. Measured state at the vehicle-frame origin; the applied command
        #    is what the simulator reports, not what we last sent
        measured = VehicleState.at_origin(telemetry.speed, cte, epsi)
        applied = Control(
            steering=self.from_actuator_steering(telemetry.steering_angle),
            throttle=telemetry.throttle,
        )

        # 4. Solve
        start_time = time.time()
        output = self.controller.compute_control(measured, coeffs, previous_control=applied)
        duration = time.time() - start_time
        self.last_output = output
        if duration > self.stack_config.slow_solve_seconds:
            logger.warning(f"[SLOW] MPC cycle frame={self.frame_count} duration={duration:.3f}s")

        if not output.ok:
            return self._fallback_command(telemetry, output.reason or output.status.value, next_x, next_y)

        mpc_x = [point[0] for point in output.trajectory]
        mpc_y = [point[1] for point in output.trajectory]
        return SteerCommand(
            steering_angle=self.to_actuator_steering(output.steering),
            throttle=output.throttle,
            mpc_x=mpc_x,
            mpc_y=mpc_y,
            next_x=list(next_x),
            next_y=list(next_y),
        )


def main():
    """Main entry point."""
    import argparse
    from bridge.server import run_server

    parser = argparse.ArgumentParser(description='Run MPC Stack')
    parser.add_argument('--config', type=str, default=None,
                       help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                       help='Bridge bind address (default from config, else 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None,
                       help='Bridge port (default from config, else 4567)')
    parser.add_argument('--latency-ms', type=float, default=None,
                       help='Artificial actuation delay before replying (default from config, else 100)')

    args = parser.parse_args()

    config = load_config(args.config)
    bridge_cfg = config.get("bridge", {}) or {}
    host = args.host or str(bridge_cfg.get("host", "0.0.0.0"))
    port = args.port or int(bridge_cfg.get("port", 4567))
    latency_ms = args.latency_ms if args.latency_ms is not None else float(bridge_cfg.get("actuation_delay_ms", 100.0))
    if latency_ms < 0.0:
        parser.error(f"--latency-ms must be non-negative, got {latency_ms}")

    stack = MPCStack(config=config)
    logger.info(
        f"Starting MPC Stack on {host}:{port} "
        f"(actuation delay {latency_ms:.0f} ms, model latency {stack.controller.config.latency:.3f} s)"
    )
    run_server(stack, host=host, port=port, actuation_delay=latency_ms / 1000.0)


if __name__ == "__main__":
    main()
