"""
Head Mechanism System - Python Host

Host software for a six-branch parallel head mechanism driven by
position-controlled smart servos on a shared half-duplex bus. Handles
the bus packet codec, inverse and forward kinematics, a socket/serial
transport link, and torque, pose and record/replay control.
"""

__version__ = "0.1.0"
__author__ = "Head System Project"

# Core system imports
from .communication.link import Link, LinkKind
from .kinematics.kinematics_engine import KinematicsEngine, Pose, PoseLimits
from .control.motion_controller import MotionController, ControllerState, Telemetry

# Configuration and errors
from .config.settings import Settings
from .errors import HeadSystemError

__all__ = [
    'Link',
    'LinkKind',
    'KinematicsEngine',
    'Pose',
    'PoseLimits',
    'MotionController',
    'ControllerState',
    'Telemetry',
    'Settings',
    'HeadSystemError',
]
