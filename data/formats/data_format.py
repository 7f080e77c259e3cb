"""
Data format definitions for simulator telemetry and steer messages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Telemetry:
    """Telemetry event from the simulator (world frame)."""
    ptsx: List[float]  # Reference waypoints, world x
    ptsy: List[float]  # Reference waypoints, world y
    x: float
    y: float
    psi: float  # Heading (radians)
    speed: float
    steering_angle: float  # Steering currently applied, normalized -1.0 to 1.0
    throttle: float  # Throttle currently applied, -1.0 to 1.0

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "Telemetry":
        return cls(
            ptsx=[float(v) for v in data["ptsx"]],
            ptsy=[float(v) for v in data["ptsy"]],
            x=float(data["x"]),
            y=float(data["y"]),
            psi=float(data["psi"]),
            speed=float(data["speed"]),
            steering_angle=float(data["steering_angle"]),
            throttle=float(data["throttle"]),
        )


@dataclass
class SteerCommand:
    """Steer event sent back to the simulator (vehicle frame for the polylines)."""
    steering_angle: float  # Normalized -1.0 to 1.0
    throttle: float  # -1.0 to 1.0
    mpc_x: List[float] = field(default_factory=list)  # Predicted trajectory (green line)
    mpc_y: List[float] = field(default_factory=list)
    next_x: List[float] = field(default_factory=list)  # Reference polyline (yellow line)
    next_y: List[float] = field(default_factory=list)
    # Diagnostics, not sent
    fallback: bool = False
    fallback_reason: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        return {
            "steering_angle": float(self.steering_angle),
            "throttle": float(self.throttle),
            "mpc_x": [float(v) for v in self.mpc_x],
            "mpc_y": [float(v) for v in self.mpc_y],
            "next_x": [float(v) for v in self.next_x],
            "next_y": [float(v) for v in self.next_y],
        }
