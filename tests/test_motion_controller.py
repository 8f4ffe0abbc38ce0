import asyncio
import json

import pytest

from conftest import FakeLink
from head_system.communication import packet_codec as codec
from head_system.control.motion_controller import ControllerState, MotionController
from head_system.errors import (
    ConfigurationError, MotionBusyError, NotConnectedError, PoseLimitError,
    ProtocolError, UnreachablePoseError,
)
from head_system.kinematics.kinematics_engine import Pose, PoseLimits


def torque_packet(ids, enabled):
    return codec.build_sync_write_torque(ids, enabled)


def test_motor_ids_must_match_branches(engine, fake_link):
    with pytest.raises(ConfigurationError):
        MotionController(fake_link, engine, [1, 2, 3])
    with pytest.raises(ConfigurationError):
        MotionController(fake_link, engine, [1, 1, 2, 3, 4, 5])


@pytest.mark.asyncio
async def test_state_follows_connection(controller):
    assert controller.state is ControllerState.IDLE
    await controller.connect()
    assert controller.state is ControllerState.CONNECTED
    await controller.disconnect()
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_torque_packets(controller, fake_link, motor_ids):
    await controller.connect()
    await controller.torque_on()
    await controller.torque_off()

    assert fake_link.writes == [torque_packet(motor_ids, True), torque_packet(motor_ids, False)]


@pytest.mark.asyncio
async def test_not_connected_operations_write_nothing(controller, fake_link):
    with pytest.raises(NotConnectedError):
        await controller.torque_on()
    with pytest.raises(NotConnectedError):
        await controller.record(duration=0.1)
    with pytest.raises(NotConnectedError):
        await controller.replay()
    with pytest.raises(NotConnectedError):
        await controller.move_to_pose(Pose())

    assert fake_link.writes == []
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_read_pose_matches_motor_positions(controller, fake_link, engine):
    target = Pose(5, -10, 10, 5, -10, 8)
    fake_link.set_pose(engine, target)
    received = []
    controller.add_telemetry_callback(received.append)
    await controller.connect()

    telemetry = await controller.read_pose()

    for got, want in zip(telemetry.pose.to_list(), target.to_list()):
        assert got == pytest.approx(want, abs=0.5)
    assert len(telemetry.joint_angles_deg) == 6
    assert received == [telemetry]


@pytest.mark.asyncio
async def test_read_pose_with_missing_motor(controller, fake_link):
    fake_link.incomplete_polls = 1
    await controller.connect()

    with pytest.raises(ProtocolError):
        await controller.read_pose()


@pytest.mark.asyncio
async def test_device_error_is_logged_not_fatal(controller, fake_link, caplog):
    fake_link.error_byte = 0x20
    await controller.connect()

    await controller.read_pose()

    assert "reported error 0x20" in caplog.text


@pytest.mark.asyncio
async def test_move_to_pose_sends_inverse_kinematics(controller, fake_link, engine, motor_ids):
    await controller.connect()
    target = Pose(0, 0, 10, 0, 5, 0)

    joints = await controller.move_to_pose(target)

    assert joints == engine.inverse_kinematics(target)
    assert fake_link.writes == [codec.build_sync_write_position(motor_ids, joints)]


@pytest.mark.asyncio
async def test_move_to_pose_outside_limits(controller, fake_link):
    await controller.connect()

    with pytest.raises(PoseLimitError):
        await controller.move_to_pose(Pose(x=80))
    assert fake_link.writes == []


@pytest.mark.asyncio
async def test_move_to_unreachable_pose_sends_nothing(controller, fake_link, engine):
    engine.pose_limits = PoseLimits(max_translation_mm=500, max_rotation_deg=90)
    await controller.connect()

    with pytest.raises(UnreachablePoseError):
        await controller.move_to_pose(Pose(z=200))
    assert fake_link.writes == []


@pytest.mark.asyncio
async def test_read_currents(controller, fake_link):
    await controller.connect()

    currents = await controller.read_currents()

    assert currents == fake_link.currents
    assert currents[1] == -25


@pytest.mark.asyncio
async def test_record_one_second(controller, fake_link):
    await controller.connect()

    count = await controller.record(duration=1.0)

    assert 80 <= count <= 101
    assert len(controller.recording) == count
    assert all(len(frame) == 6 for frame in controller.recording)
    assert controller.state is ControllerState.CONNECTED


@pytest.mark.asyncio
async def test_record_waits_for_every_motor(controller, fake_link):
    fake_link.incomplete_polls = 5
    await controller.connect()

    count = await controller.record(duration=0.2)

    assert count == fake_link.polls - 5


@pytest.mark.asyncio
async def test_record_skips_failed_polls(controller, fake_link):
    fake_link.fail_polls = 3
    await controller.connect()

    count = await controller.record(duration=0.2)

    assert count == fake_link.polls - 3
    assert count > 0


@pytest.mark.asyncio
async def test_record_stops_when_link_drops(controller, fake_link):
    fake_link.drop_after_polls = 4
    await controller.connect()

    with pytest.raises(NotConnectedError):
        await controller.record()
    assert len(controller.recording) == 4
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_record_until_stopped(controller):
    await controller.connect()

    task = asyncio.create_task(controller.record())
    await asyncio.sleep(0.1)
    assert controller.state is ControllerState.RECORDING
    controller.stop()
    count = await asyncio.wait_for(task, timeout=1.0)

    assert 0 < count <= 30


@pytest.mark.asyncio
async def test_record_publishes_telemetry(controller, fake_link, engine):
    fake_link.set_pose(engine, Pose(0, 0, 10, 0, 0, 0))
    received = []
    controller.add_telemetry_callback(received.append)
    await controller.connect()

    await controller.record(duration=0.2)

    assert len(received) == len(controller.recording)
    assert received[-1].pose.z == pytest.approx(10, abs=0.5)


@pytest.mark.asyncio
async def test_second_loop_is_rejected(controller):
    await controller.connect()

    task = asyncio.create_task(controller.record(duration=0.2))
    await asyncio.sleep(0.02)
    with pytest.raises(MotionBusyError):
        await controller.replay()
    with pytest.raises(MotionBusyError):
        await controller.read_pose()
    await task


@pytest.mark.asyncio
async def test_replay_sends_every_frame_then_torque_off(controller, fake_link, motor_ids):
    await controller.connect()
    await controller.record(duration=0.1)
    frames = controller.recording
    fake_link.writes.clear()

    sent = await controller.replay()

    assert sent == len(frames)
    assert fake_link.writes[0] == torque_packet(motor_ids, True)
    assert fake_link.writes[-1] == torque_packet(motor_ids, False)
    positions = fake_link.writes[1:-1]
    assert positions == [codec.build_sync_write_position(motor_ids, f) for f in frames]
    assert controller.state is ControllerState.CONNECTED


@pytest.mark.asyncio
async def test_stopped_replay_still_disables_torque(controller, fake_link, motor_ids):
    controller.context.recording[:] = [[0.1 * i] * 6 for i in range(100)]
    controller.replay_interval = 0.01
    await controller.connect()

    task = asyncio.create_task(controller.replay())
    await asyncio.sleep(0.05)
    controller.stop()
    sent = await asyncio.wait_for(task, timeout=1.0)

    assert 0 < sent < 100
    assert len(fake_link.writes) == sent + 2
    assert fake_link.writes[-1] == torque_packet(motor_ids, False)


@pytest.mark.asyncio
async def test_disconnect_during_replay_disables_torque_first(controller, fake_link, motor_ids):
    controller.context.recording[:] = [[0.1 * i] * 6 for i in range(100)]
    controller.replay_interval = 0.01
    await controller.connect()

    task = asyncio.create_task(controller.replay())
    await asyncio.sleep(0.05)
    await controller.disconnect()
    sent = await asyncio.wait_for(task, timeout=1.0)

    assert 0 < sent < 100
    assert fake_link.writes[-1] == torque_packet(motor_ids, False)
    assert not fake_link.is_connected
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_disconnect_during_record_waits_for_loop(controller, fake_link):
    await controller.connect()

    task = asyncio.create_task(controller.record())
    await asyncio.sleep(0.05)
    await controller.disconnect()

    assert task.done()
    assert await task == len(controller.recording)
    assert not fake_link.is_connected


@pytest.mark.asyncio
async def test_empty_replay_toggles_torque(controller, fake_link, motor_ids):
    await controller.connect()

    assert await controller.replay() == 0
    assert fake_link.writes == [torque_packet(motor_ids, True), torque_packet(motor_ids, False)]


def test_recording_file_round_trip(controller, tmp_path):
    frames = [[0.01 * i + j for j in range(6)] for i in range(3)]
    controller.context.recording[:] = frames
    path = tmp_path / "recordings" / "wave.json"

    controller.save_recording(str(path))
    controller.context.recording.clear()

    assert controller.load_recording(str(path)) == 3
    assert controller.recording == frames
    assert json.loads(path.read_text())['motor_ids'] == [1, 2, 3, 4, 5, 6]


def test_recording_for_other_motors_rejected(controller, tmp_path):
    path = tmp_path / "other.json"
    path.write_text(json.dumps({'motor_ids': [7, 8], 'frames': [[0.0, 0.0]]}))

    with pytest.raises(ConfigurationError):
        controller.load_recording(str(path))


def test_from_settings_builds_full_controller(engine):
    from head_system.config.settings import Settings

    settings = Settings()
    settings.motion.replay_interval = 0.04
    link = FakeLink(engine, [1, 2, 3, 4, 5, 6])

    controller = MotionController.from_settings(settings, link)

    assert controller.link is link
    assert controller.motor_ids == [1, 2, 3, 4, 5, 6]
    assert controller.kinematics.branch_count == 6
    assert controller.replay_interval == 0.04
