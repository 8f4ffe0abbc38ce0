"""
Kinematics package for platform pose to joint angle conversions.
"""

from .kinematics_engine import KinematicsEngine, Pose, PoseLimits

__all__ = ['KinematicsEngine', 'Pose', 'PoseLimits']
