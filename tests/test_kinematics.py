import math

import numpy as np
import pytest

from head_system.errors import ConfigurationError, PoseLimitError, UnreachablePoseError
from head_system.kinematics.kinematics_engine import KinematicsEngine, Pose, PoseLimits


REFERENCE_ANGLE_DEG = 12.89


def assert_pose_close(actual: Pose, expected: Pose, tol: float):
    for got, want in zip(actual.to_list(), expected.to_list()):
        assert got == pytest.approx(want, abs=tol)


def test_pose_matrix_round_trip():
    pose = Pose(5.0, -10.0, 10.0, 5.0, -10.0, 8.0)
    matrix = pose.to_matrix(0.12)

    assert matrix[2, 3] == pytest.approx(0.13)
    assert_pose_close(Pose.from_matrix(matrix, 0.12), pose, 1e-9)


def test_pose_from_list_needs_six_values():
    with pytest.raises(ValueError):
        Pose.from_list([1, 2, 3])


def test_zero_pose_inverse_kinematics(engine):
    joints = engine.inverse_kinematics(Pose())

    assert len(joints) == 6
    assert not any(math.isnan(a) for a in joints)
    for index, angle in enumerate(joints):
        expected = REFERENCE_ANGLE_DEG if index % 2 == 0 else -REFERENCE_ANGLE_DEG
        assert math.degrees(angle) == pytest.approx(expected, abs=0.05)


def test_inverse_kinematics_closes_every_branch(engine):
    pose = Pose(5.0, -10.0, 10.0, 5.0, -10.0, 8.0)
    joints = engine.inverse_kinematics(pose)
    platform = pose.to_matrix(engine.head_z_offset)

    for branch, angle in zip(engine.branches, joints):
        anchor = (branch.world_to_motor @ platform @ np.append(branch.anchor, 1.0))[:3]
        arm = engine.motor_arm_length * np.array([math.cos(angle), math.sin(angle), 0.0])
        assert np.linalg.norm(anchor - arm) == pytest.approx(engine.rod_length, abs=1e-9)


@pytest.mark.parametrize("values", [
    [10, 20, 10, 0, 0, 0],
    [0, 0, 0, 10, 15, 5],
    [5, -10, 10, 5, -10, 8],
    [0, 0, 30, 0, 0, 0],
])
def test_forward_kinematics_recovers_pose(engine, values):
    pose = Pose.from_list(values)
    joints = engine.inverse_kinematics(pose)

    solved = engine.solve_forward_kinematics(joints)

    assert_pose_close(solved, pose, 0.01)
    assert engine.last_step_norm < engine.fk_tolerance


def test_forward_kinematics_single_steps_converge(engine):
    pose = Pose(0, 0, 10, 0, 5, 0)
    joints = engine.inverse_kinematics(pose)
    engine.reset_forward_kinematics()

    def error(estimate):
        return max(abs(a - b) for a, b in zip(estimate.to_list(), pose.to_list()))

    first = error(engine.forward_kinematics(joints))
    assert first < error(Pose())

    for _ in range(4):
        estimate = engine.forward_kinematics(joints)
    assert error(estimate) < 1e-3


def test_forward_kinematics_at_reference_stays_put(engine):
    joints = engine.inverse_kinematics(Pose())
    engine.reset_forward_kinematics()

    estimate = engine.forward_kinematics(joints)

    assert_pose_close(estimate, Pose(), 1e-6)


def test_forward_kinematics_joint_count_mismatch(engine):
    with pytest.raises(ConfigurationError):
        engine.forward_kinematics([0.0] * 5)


def test_unreachable_pose_raises(engine):
    with pytest.raises(UnreachablePoseError) as excinfo:
        engine.inverse_kinematics(Pose(z=200.0))
    assert excinfo.value.branches == [0, 1, 2, 3, 4, 5]


def test_pose_limits(engine):
    engine.check_pose_limits(Pose(40, -40, 0, 30, 0, -30))
    with pytest.raises(PoseLimitError):
        engine.check_pose_limits(Pose(x=41))
    with pytest.raises(PoseLimitError):
        engine.check_pose_limits(Pose(yaw=-31))


def test_custom_pose_limits():
    limits = PoseLimits(max_translation_mm=5, max_rotation_deg=2)
    assert limits.contains(Pose(5, 0, 0, 2, 0, 0))
    assert not limits.contains(Pose(0, 0, 6))


def test_configuration_rebuilds_same_engine(engine):
    config = engine.get_configuration()
    motors = [dict(m, id=i) for i, m in enumerate(config['branches'], start=1)]
    rebuilt = KinematicsEngine.from_geometry(motors)

    pose = Pose(3, 4, 5, 6, 7, 8)
    assert rebuilt.inverse_kinematics(pose) == pytest.approx(engine.inverse_kinematics(pose))


def test_invalid_lengths_rejected():
    with pytest.raises(ConfigurationError):
        KinematicsEngine(motor_arm_length=0)


def test_branch_shape_checked():
    engine = KinematicsEngine()
    with pytest.raises(ConfigurationError):
        engine.add_branch([0.0, 0.0], np.eye(4), 1)


def test_solved_pose_fields_are_plain_floats(engine):
    joints = engine.inverse_kinematics(Pose(5, -10, 10, 5, -10, 8))

    pose = engine.solve_forward_kinematics(joints)

    assert all(type(value) is float for value in pose.to_list())


@pytest.mark.parametrize("solution", [0, 0.5, 2, -2])
def test_branch_solution_must_be_a_sign(solution):
    engine = KinematicsEngine()
    with pytest.raises(ConfigurationError):
        engine.add_branch([0.01, 0.05, -0.045], np.eye(4), solution)


def test_branch_solution_accepts_signs():
    engine = KinematicsEngine()
    assert engine.add_branch([0.01, 0.05, -0.045], np.eye(4), -1).solution == -1.0
    assert engine.add_branch([0.01, 0.05, -0.045], np.eye(4), 1.0).solution == 1.0
