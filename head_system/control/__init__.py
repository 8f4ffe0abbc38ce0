"""
Control package for torque, pose commands and record/replay.
"""

from .motion_controller import CancellationToken, ControllerState, MotionController, Telemetry

__all__ = ['CancellationToken', 'ControllerState', 'MotionController', 'Telemetry']
