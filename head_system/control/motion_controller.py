"""
Motion Controller for the Head Mechanism

Orchestrates the packet codec, the kinematics engine and the transport
link into torque control, pose commands, and record/replay loops with
cooperative cancellation.
"""

import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..communication.link import Link
from ..communication.packet_codec import (
    CURRENT_SIZE, POSITION_CENTER, POSITION_RESOLUTION, POSITION_SIZE,
    build_sync_current_request, build_sync_read_position, build_sync_write_position,
    build_sync_write_torque, decode_sync_response, raw_to_radians,
)
from ..errors import (
    ConfigurationError, LinkError, MotionBusyError, NotConnectedError, ProtocolError,
)
from ..kinematics.kinematics_engine import KinematicsEngine, Pose, PoseLimits


class ControllerState(Enum):
    """Controller states."""
    IDLE = "idle"
    CONNECTED = "connected"
    RECORDING = "recording"
    REPLAYING = "replaying"


class CancellationToken:
    """Cooperative stop flag checked by long-running loops once per iteration."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def reset(self):
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


@dataclass
class Telemetry:
    """Pose and joint angles pushed to display callbacks."""
    pose: Pose
    joint_angles_deg: List[float]
    timestamp: float

    def __str__(self) -> str:
        joints = ", ".join(f"{a:.1f}" for a in self.joint_angles_deg)
        return f"Telemetry({self.pose}, joints=[{joints}])"


@dataclass
class MotionContext:
    """Link, recording buffer and stop flag shared by the controller's loops."""
    link: Link
    recording: List[List[float]] = field(default_factory=list)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    # Set once the running record/replay loop has fully wound down
    loop_finished: Optional[asyncio.Event] = None


class MotionController:
    """
    High-level controller for the head mechanism.

    Provides torque on/off, pose reads and commands, and record/replay of
    joint trajectories. At most one record or replay runs at a time.
    """

    def __init__(self,
                 link: Link,
                 kinematics: KinematicsEngine,
                 motor_ids: Sequence[int],
                 record_cadence: float = 0.010,
                 replay_interval: float = 0.020,
                 position_resolution: int = POSITION_RESOLUTION,
                 position_center: int = POSITION_CENTER):
        """
        Initialize motion controller.

        Args:
            link: Transport link to the motor bus
            kinematics: Kinematics engine, one branch per motor id
            motor_ids: Bus ids in branch order
            record_cadence: Seconds between position requests while recording
            replay_interval: Seconds between frames while replaying
            position_resolution: Position steps per revolution
            position_center: Step that maps to 0 rad
        """
        if len(set(motor_ids)) != len(motor_ids):
            raise ConfigurationError(f"Duplicate motor ids: {list(motor_ids)}")
        if len(motor_ids) != kinematics.branch_count:
            raise ConfigurationError(
                f"{len(motor_ids)} motor ids for {kinematics.branch_count} kinematic branches")

        self.context = MotionContext(link)
        self.kinematics = kinematics
        self.motor_ids = list(motor_ids)
        self.record_cadence = record_cadence
        self.replay_interval = replay_interval
        self.position_resolution = position_resolution
        self.position_center = position_center

        self._joints: List[Optional[float]] = [None] * len(self.motor_ids)
        self._index_by_id = {motor_id: i for i, motor_id in enumerate(self.motor_ids)}
        self._activity: Optional[ControllerState] = None

        self._telemetry_callbacks: List[Callable[[Telemetry], None]] = []
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, link: Optional[Link] = None) -> 'MotionController':
        """Build the kinematics engine, link and controller from Settings."""
        motors = settings.load_geometry()
        config = settings.kinematics
        kinematics = KinematicsEngine.from_geometry(
            motors,
            motor_arm_length=config.motor_arm_length,
            rod_length=config.rod_length,
            head_z_offset=config.head_z_offset,
            fk_max_iterations=config.fk_max_iterations,
            fk_tolerance=config.fk_tolerance,
            pose_limits=PoseLimits(config.max_translation_mm, config.max_rotation_deg),
        )
        return cls(
            link or Link.from_config(settings.link),
            kinematics,
            [motor['id'] for motor in motors],
            record_cadence=settings.motion.record_cadence,
            replay_interval=settings.motion.replay_interval,
            position_resolution=settings.bus.position_resolution,
            position_center=settings.bus.position_center,
        )

    @property
    def link(self) -> Link:
        return self.context.link

    @property
    def state(self) -> ControllerState:
        if self._activity is not None:
            return self._activity
        return ControllerState.CONNECTED if self.link.is_connected else ControllerState.IDLE

    @property
    def recording(self) -> List[List[float]]:
        """Copy of the recorded frames (radians, motor id order)."""
        return [list(frame) for frame in self.context.recording]

    async def connect(self):
        """Open the link and reset the pose estimate."""
        kind = await self.link.connect()
        self.kinematics.reset_forward_kinematics()
        self.logger.info(f"Motion controller connected over {kind.value}")

    async def disconnect(self):
        """
        Stop any running loop and close the link.

        A running replay is awaited first so its final torque-off still
        reaches the bus.
        """
        self.stop()
        finished = self.context.loop_finished
        if finished is not None and not finished.is_set():
            await finished.wait()
        await self.link.close()

    async def torque_on(self):
        self._require_connected()
        await self.link.write(build_sync_write_torque(self.motor_ids, True))
        self.logger.info("Torque enabled")

    async def torque_off(self):
        self._require_connected()
        await self.link.write(build_sync_write_torque(self.motor_ids, False))
        self.logger.info("Torque disabled")

    def stop(self):
        """Ask the running record/replay loop to stop at its next iteration."""
        self.context.cancel_token.cancel()
        if self._activity is not None:
            self.logger.info(f"Stop requested while {self._activity.value}")

    async def read_pose(self) -> Telemetry:
        """
        Read every motor once and solve the pose from scratch.

        Raises:
            NotConnectedError: Link not connected
            ProtocolError: Some motor did not report a valid position
        """
        self._require_idle()
        self._joints = [None] * len(self.motor_ids)
        await self._poll_positions()
        joints = self._known_joints()
        if joints is None:
            missing = [m for m, a in zip(self.motor_ids, self._joints) if a is None]
            raise ProtocolError(f"No valid position from motors {missing}")

        pose = self.kinematics.solve_forward_kinematics(joints)
        return self._publish(pose, joints)

    async def move_to_pose(self, target: Pose) -> List[float]:
        """
        Command the platform to a target pose.

        Returns:
            List[float]: Commanded joint angles in radians

        Raises:
            PoseLimitError: Target outside configured limits
            UnreachablePoseError: Target cannot be reached; nothing is sent
        """
        self._require_idle()
        self.kinematics.check_pose_limits(target)
        joints = self.kinematics.inverse_kinematics(target)
        await self.link.write(self._position_packet(joints))
        self.logger.info(f"Moving to {target}")
        return joints

    async def read_currents(self) -> Dict[int, int]:
        """Read the raw present current of every motor."""
        self._require_idle()
        response = await self.link.write_read(build_sync_current_request(self.motor_ids))
        currents = {}
        for status in decode_sync_response(response, self.motor_ids, CURRENT_SIZE):
            self._check_device_error(status)
            currents[status.motor_id] = status.value
        return currents

    async def record(self, duration: Optional[float] = None) -> int:
        """
        Record joint frames until ``duration`` seconds elapse or stop() is called.

        Args:
            duration: Recording length in seconds, None to record until stopped

        Returns:
            int: Number of recorded frames
        """
        self._begin(ControllerState.RECORDING)
        context = self.context
        context.recording.clear()
        context.cancel_token.reset()
        self._joints = [None] * len(self.motor_ids)

        loop = asyncio.get_running_loop()
        request = build_sync_read_position(self.motor_ids)
        start = next_tick = loop.time()
        self.logger.info(f"Recording started (duration={duration})")

        try:
            while not context.cancel_token.is_cancelled:
                if duration is not None and loop.time() - start >= duration:
                    break

                try:
                    await self._poll_positions(request)
                except NotConnectedError:
                    raise
                except LinkError as e:
                    self.logger.error(f"Position request failed, frame skipped: {e}")
                else:
                    joints = self._known_joints()
                    if joints is not None:
                        context.recording.append(joints)
                        self._publish(self.kinematics.forward_kinematics(joints), joints)

                next_tick += self.record_cadence
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
        finally:
            self._end()

        self.logger.info(f"Recording finished with {len(context.recording)} frames")
        return len(context.recording)

    async def replay(self) -> int:
        """
        Replay the recorded frames with torque enabled.

        Torque is always disabled when the loop ends, whether it ran to
        completion, was stopped, or failed.

        Returns:
            int: Number of position frames sent
        """
        self._begin(ControllerState.REPLAYING)
        context = self.context
        frames = list(context.recording)
        context.cancel_token.reset()
        sent = 0

        self.logger.info(f"Replaying {len(frames)} frames")
        try:
            await self.torque_on()
            for frame in frames:
                if context.cancel_token.is_cancelled:
                    self.logger.info(f"Replay stopped after {sent} of {len(frames)} frames")
                    break

                try:
                    await self.link.write(self._position_packet(frame))
                    sent += 1
                except NotConnectedError:
                    raise
                except LinkError as e:
                    self.logger.error(f"Frame {sent + 1} not sent: {e}")

                await asyncio.sleep(self.replay_interval)
        finally:
            try:
                await self.torque_off()
            finally:
                self._end()

        self.logger.info(f"Replay finished, {sent} frames sent")
        return sent

    def save_recording(self, path: str):
        """Save the recording buffer as JSON."""
        data = {
            'motor_ids': self.motor_ids,
            'frames': self.recording,
        }
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
        self.logger.info(f"Saved {len(data['frames'])} frames to {path}")

    def load_recording(self, path: str) -> int:
        """
        Replace the recording buffer with frames loaded from JSON.

        Raises:
            ConfigurationError: Recorded motor ids differ from this mechanism's
        """
        self._require_idle(need_link=False)
        with open(path, 'r') as f:
            data = json.load(f)

        if data.get('motor_ids') != self.motor_ids:
            raise ConfigurationError(
                f"Recording made for motors {data.get('motor_ids')}, expected {self.motor_ids}")
        frames = data.get('frames', [])
        if any(len(frame) != len(self.motor_ids) for frame in frames):
            raise ConfigurationError("Recording contains frames of the wrong length")

        self.context.recording[:] = [[float(a) for a in frame] for frame in frames]
        self.logger.info(f"Loaded {len(frames)} frames from {path}")
        return len(frames)

    def add_telemetry_callback(self, callback: Callable[[Telemetry], None]):
        """Add callback receiving every pose/joint update."""
        self._telemetry_callbacks.append(callback)

    async def _poll_positions(self, request: Optional[bytes] = None) -> int:
        """Request present positions and update the joint vector. Returns motors updated."""
        self._require_connected()
        response = await self.link.write_read(request or build_sync_read_position(self.motor_ids))

        updated = 0
        for status in decode_sync_response(response, self.motor_ids, POSITION_SIZE):
            self._check_device_error(status)
            index = self._index_by_id[status.motor_id]
            self._joints[index] = raw_to_radians(
                status.value, self.position_resolution, self.position_center)
            updated += 1

        if updated < len(self.motor_ids):
            self.logger.debug(f"Positions updated for {updated}/{len(self.motor_ids)} motors")
        return updated

    def _known_joints(self) -> Optional[List[float]]:
        if any(angle is None for angle in self._joints):
            return None
        return list(self._joints)

    def _position_packet(self, joints: Sequence[float]) -> bytes:
        return build_sync_write_position(
            self.motor_ids, joints, self.position_resolution, self.position_center)

    def _check_device_error(self, status):
        if status.has_error:
            self.logger.warning(f"Motor {status.motor_id} reported error 0x{status.error:02X}")

    def _publish(self, pose: Pose, joints: Sequence[float]) -> Telemetry:
        telemetry = Telemetry(
            pose=pose,
            joint_angles_deg=[math.degrees(angle) for angle in joints],
            timestamp=time.time(),
        )
        for callback in self._telemetry_callbacks:
            try:
                callback(telemetry)
            except Exception as e:
                self.logger.error(f"Telemetry callback error: {e}")
        return telemetry

    def _require_connected(self):
        if not self.link.is_connected:
            raise NotConnectedError("Not connected")

    def _require_idle(self, need_link: bool = True):
        if self._activity is not None:
            raise MotionBusyError(f"Controller is {self._activity.value}")
        if need_link:
            self._require_connected()

    def _begin(self, activity: ControllerState):
        self._require_idle()
        self._activity = activity
        self.context.loop_finished = asyncio.Event()

    def _end(self):
        self._activity = None
        self.context.loop_finished.set()
