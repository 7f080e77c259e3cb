"""
Actuation latency compensation.

A command computed now only takes effect one latency period later, so the
optimizer starts from the state the vehicle will be in once the previously
issued command has acted for that long.
"""

from control.vehicle_model import Control, KinematicBicycleModel, VehicleState


class DelayCompensator:
    """Projects a measured state forward by the actuation latency."""

    def __init__(self, model: KinematicBicycleModel, latency: float):
        """
        Args:
            model: Same kinematic model the optimizer constrains with
            latency: Actuation latency (seconds); 0 disables compensation
        """
        if latency < 0.0:
            raise ValueError(f"latency must be non-negative, got {latency}")
        self.model = model
        self.latency = float(latency)

    def compensate(self, measured: VehicleState, previous_control: Control) -> VehicleState:
        """
        Apply the model once with dt = latency.

        Args:
            measured: Measured state, normally at the vehicle-frame origin
            previous_control: Steering/throttle already sent to the actuators

        Returns:
            State handed to the optimizer as state[0]
        """
        if self.latency == 0.0:
            return measured
        return self.model.step(measured, previous_control, self.latency)
