"""
Kinematics Engine for the Parallel Head Mechanism

Maps joint angles to platform pose and back for a redundantly actuated
rotary parallel mechanism. Each branch is a motor arm of fixed length
joined by a fixed-length rod to an anchor on the platform.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from ..errors import ConfigurationError, PoseLimitError, UnreachablePoseError


@dataclass
class Pose:
    """
    Platform pose in user coordinates.

    Translation is in millimeters, rotation is roll/pitch/yaw in degrees
    (fixed-axis X then Y then Z). The user z origin sits ``head_z_offset``
    above the base.
    """
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0

    def __str__(self) -> str:
        return (f"Pose(x={self.x:.2f}, y={self.y:.2f}, z={self.z:.2f}, "
                f"roll={self.roll:.2f}, pitch={self.pitch:.2f}, yaw={self.yaw:.2f})")

    def to_list(self) -> List[float]:
        return [self.x, self.y, self.z, self.roll, self.pitch, self.yaw]

    @classmethod
    def from_list(cls, values: Sequence[float]) -> 'Pose':
        if len(values) != 6:
            raise ValueError(f"Pose needs 6 values, got {len(values)}")
        return cls(*(float(v) for v in values))

    def to_matrix(self, head_z_offset: float) -> np.ndarray:
        """Homogeneous base-to-platform transform in meters."""
        matrix = np.eye(4)
        matrix[:3, :3] = Rotation.from_euler(
            "xyz", [self.roll, self.pitch, self.yaw], degrees=True).as_matrix()
        matrix[:3, 3] = [self.x / 1000.0, self.y / 1000.0,
                         self.z / 1000.0 + head_z_offset]
        return matrix

    @classmethod
    def from_matrix(cls, matrix: np.ndarray, head_z_offset: float) -> 'Pose':
        roll, pitch, yaw = Rotation.from_matrix(matrix[:3, :3]).as_euler("xyz", degrees=True)
        x, y, z = (float(v) for v in matrix[:3, 3])
        return cls(x * 1000.0, y * 1000.0, (z - head_z_offset) * 1000.0,
                   float(roll), float(pitch), float(yaw))


@dataclass
class PoseLimits:
    """Bounds on commanded poses (user coordinates)."""
    max_translation_mm: float = 40.0
    max_rotation_deg: float = 30.0

    def contains(self, pose: Pose) -> bool:
        """Check if pose is within limits."""
        return (all(abs(v) <= self.max_translation_mm for v in (pose.x, pose.y, pose.z)) and
                all(abs(v) <= self.max_rotation_deg for v in (pose.roll, pose.pitch, pose.yaw)))


@dataclass(frozen=True)
class Branch:
    """
    One motor + rod chain.

    Attributes:
        anchor: Rod attachment point in the platform frame (m)
        world_to_motor: Transform from base coordinates to motor-local
            coordinates (the inverse of the motor pose)
        solution: +1 or -1, selects which of the two arm angles closing
            the branch triangle is used
    """
    anchor: np.ndarray
    world_to_motor: np.ndarray
    solution: float
    jacobian: np.ndarray = field(repr=False)

    @classmethod
    def create(cls, anchor: Sequence[float], motor_pose: Sequence[Sequence[float]],
               solution: float) -> 'Branch':
        anchor = np.asarray(anchor, dtype=float)
        motor_pose = np.asarray(motor_pose, dtype=float)
        if anchor.shape != (3,) or motor_pose.shape != (4, 4):
            raise ConfigurationError("Branch needs a 3-vector anchor and a 4x4 motor pose")
        if solution not in (1, -1):
            raise ConfigurationError(f"Branch solution must be +1 or -1, got {solution!r}")

        # Anchor velocity in the platform frame for a body twist (v, w): v + w x p
        jacobian = np.hstack([np.eye(3), -_skew(anchor)])
        return cls(
            anchor=anchor,
            world_to_motor=np.linalg.inv(motor_pose),
            solution=float(solution),
            jacobian=jacobian,
        )


def _skew(v: np.ndarray) -> np.ndarray:
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ])


def _wrap_angle(angle: float) -> float:
    return angle - 2.0 * math.pi * math.floor((angle + math.pi) / (2.0 * math.pi))


class KinematicsEngine:
    """
    Forward and inverse kinematics for the head mechanism.

    Inverse kinematics is closed form per branch. Forward kinematics has
    no closed form since there are more branch constraints than pose
    degrees of freedom: the engine keeps a pose estimate and every call
    to forward_kinematics() performs one Gauss-Newton step on it.
    """

    def __init__(self,
                 motor_arm_length: float = 0.038,
                 rod_length: float = 0.09,
                 head_z_offset: float = 0.12,
                 fk_max_iterations: int = 100,
                 fk_tolerance: float = 1e-9,
                 pose_limits: PoseLimits = None):
        """
        Initialize kinematics engine.

        Args:
            motor_arm_length: Length of every motor arm (m)
            rod_length: Length of every rod (m)
            head_z_offset: Base-frame height of the user-zero pose (m)
            fk_max_iterations: Iteration budget for solve_forward_kinematics()
            fk_tolerance: Squared step norm below which the solve stops
            pose_limits: Bounds checked by check_pose_limits()
        """
        if motor_arm_length <= 0 or rod_length <= 0:
            raise ConfigurationError("Arm and rod lengths must be positive")

        self.motor_arm_length = motor_arm_length
        self.rod_length = rod_length
        self.head_z_offset = head_z_offset
        self.fk_max_iterations = fk_max_iterations
        self.fk_tolerance = fk_tolerance
        self.pose_limits = pose_limits or PoseLimits()

        self.branches: List[Branch] = []
        self._platform = Pose().to_matrix(head_z_offset)
        self._last_step = math.inf

        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_geometry(cls, motors: List[Dict[str, Any]], **kwargs) -> 'KinematicsEngine':
        """Build an engine from motor geometry entries (see config/motors.yaml)."""
        engine = cls(**kwargs)
        for motor in motors:
            engine.add_branch(motor["branch_position"], motor["T_motor_world"],
                              motor.get("solution", 1.0))
        return engine

    def add_branch(self, anchor: Sequence[float], motor_pose: Sequence[Sequence[float]],
                   solution: float) -> Branch:
        branch = Branch.create(anchor, motor_pose, solution)
        self.branches.append(branch)
        return branch

    @property
    def branch_count(self) -> int:
        return len(self.branches)

    @property
    def platform_matrix(self) -> np.ndarray:
        """Current forward kinematics estimate (base-to-platform, meters)."""
        return self._platform.copy()

    @property
    def last_step_norm(self) -> float:
        """Squared norm of the last forward kinematics correction."""
        return self._last_step

    def inverse_kinematics(self, target: Pose) -> List[float]:
        """
        Calculate joint angles (radians) for a target pose.

        Args:
            target: Target pose in user coordinates

        Returns:
            List[float]: One angle per branch, in branch order

        Raises:
            UnreachablePoseError: A branch triangle cannot close
        """
        return self.inverse_kinematics_matrix(target.to_matrix(self.head_z_offset), target)

    def inverse_kinematics_matrix(self, platform: np.ndarray,
                                  target: Optional[Pose] = None) -> List[float]:
        rs = self.motor_arm_length
        rp = self.rod_length

        joints = []
        unreachable = []
        for index, branch in enumerate(self.branches):
            anchor_world = platform @ np.append(branch.anchor, 1.0)
            px, py, pz = (branch.world_to_motor @ anchor_world)[:3]

            # |p - rs (cos q, sin q, 0)| = rp  <=>  px cos q + py sin q = k
            k = (px * px + py * py + pz * pz + rs * rs - rp * rp) / (2.0 * rs)
            r = math.hypot(px, py)
            if r < 1e-12 or abs(k) > r:
                unreachable.append(index)
                continue

            angle = math.atan2(py, px) + branch.solution * math.acos(k / r)
            joints.append(_wrap_angle(angle))

        if unreachable:
            raise UnreachablePoseError(unreachable, target)
        return joints

    def reset_forward_kinematics(self, initial_pose: Optional[Pose] = None):
        """Overwrite the forward kinematics estimate (defaults to the user-zero pose)."""
        self._platform = (initial_pose or Pose()).to_matrix(self.head_z_offset)
        self._last_step = math.inf

    def forward_kinematics(self, joints: Sequence[float]) -> Pose:
        """
        Refine the pose estimate by one step towards the given joint angles.

        Args:
            joints: Joint angles in radians, one per branch

        Returns:
            Pose: Updated estimate in user coordinates
        """
        self._check_joint_count(joints)

        rs = self.motor_arm_length
        rotation = self._platform[:3, :3]

        errors = np.zeros(len(self.branches))
        jacobian = np.zeros((len(self.branches), 6))
        for index, (branch, angle) in enumerate(zip(self.branches, joints)):
            arm = rs * np.array([math.cos(angle), math.sin(angle), 0.0])
            anchor = (branch.world_to_motor @ self._platform @ np.append(branch.anchor, 1.0))[:3]
            rod = anchor - arm

            errors[index] = rod @ rod - self.rod_length ** 2
            jacobian[index] = 2.0 * rod @ branch.world_to_motor[:3, :3] @ rotation @ branch.jacobian

        twist = -np.linalg.pinv(jacobian, rcond=1e-8) @ errors
        self._platform = self._platform @ _exp_twist(twist)
        self._last_step = float(twist @ twist)

        return Pose.from_matrix(self._platform, self.head_z_offset)

    def solve_forward_kinematics(self, joints: Sequence[float],
                                 initial_pose: Optional[Pose] = None) -> Pose:
        """
        Reset the estimate, then iterate forward_kinematics() to convergence.

        Stops after fk_max_iterations or once the squared step norm drops
        below fk_tolerance.
        """
        self.reset_forward_kinematics(initial_pose)
        pose = Pose.from_matrix(self._platform, self.head_z_offset)
        for iteration in range(self.fk_max_iterations):
            pose = self.forward_kinematics(joints)
            if self._last_step < self.fk_tolerance:
                self.logger.debug(f"Forward kinematics converged after {iteration + 1} steps")
                break
        else:
            self.logger.warning(
                f"Forward kinematics did not converge in {self.fk_max_iterations} steps "
                f"(last step {self._last_step:.3e})")
        return pose

    def check_pose_limits(self, pose: Pose):
        if not self.pose_limits.contains(pose):
            raise PoseLimitError(f"Target {pose} outside pose limits {self.pose_limits}")

    def get_configuration(self) -> Dict[str, Any]:
        """Get current geometry configuration."""
        return {
            'motor_arm_length': self.motor_arm_length,
            'rod_length': self.rod_length,
            'head_z_offset': self.head_z_offset,
            'branches': [
                {
                    'branch_position': branch.anchor.tolist(),
                    'T_motor_world': np.linalg.inv(branch.world_to_motor).tolist(),
                    'solution': branch.solution,
                }
                for branch in self.branches
            ],
        }

    def _check_joint_count(self, joints: Sequence[float]):
        if len(joints) != len(self.branches):
            raise ConfigurationError(
                f"Expected {len(self.branches)} joint angles, got {len(joints)}")


def _exp_twist(twist: np.ndarray) -> np.ndarray:
    """Homogeneous transform for a small body twist (v, w)."""
    step = np.eye(4)
    step[:3, :3] = Rotation.from_rotvec(twist[3:]).as_matrix()
    step[:3, 3] = twist[:3]
    return step
