"""
Shared fixtures: packaged geometry, a kinematics engine and an in-memory
link that answers sync reads like a bus of healthy motors.
"""

import asyncio
import struct

import pytest

from head_system.communication import packet_codec
from head_system.communication.link import LinkKind
from head_system.config.settings import Settings
from head_system.control.motion_controller import MotionController
from head_system.errors import LinkIOError, NotConnectedError
from head_system.kinematics.kinematics_engine import KinematicsEngine, Pose


class FakeLink:
    """Link stand-in that records writes and synthesizes status replies."""

    def __init__(self, engine: KinematicsEngine, motor_ids, pose: Pose = None):
        self.motor_ids = list(motor_ids)
        self.connected = False
        self.writes = []
        self.polls = 0

        # Behaviour knobs for failure tests
        self.fail_polls = 0
        self.incomplete_polls = 0
        self.drop_after_polls = None
        self.error_byte = 0

        self.currents = {motor_id: 10 * motor_id - 35 for motor_id in self.motor_ids}
        self.set_pose(engine, pose or Pose())

    def set_pose(self, engine: KinematicsEngine, pose: Pose):
        self.pose = pose
        self.joints = dict(zip(self.motor_ids, engine.inverse_kinematics(pose)))

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> LinkKind:
        self.connected = True
        return LinkKind.SOCKET

    async def close(self):
        self.connected = False

    async def write(self, data: bytes):
        if not self.connected:
            raise NotConnectedError("Link not connected")
        self.writes.append(bytes(data))
        await asyncio.sleep(0)

    async def read(self) -> bytes:
        raise NotImplementedError

    async def write_read(self, data: bytes, wait=None) -> bytes:
        if not self.connected:
            raise NotConnectedError("Link not connected")
        await asyncio.sleep(0)
        return self._respond(bytes(data))

    def get_stats(self):
        return {'writes': len(self.writes), 'polls': self.polls}

    def _respond(self, request: bytes) -> bytes:
        assert request[7] == packet_codec.INST_SYNC_READ
        address, length = struct.unpack_from("<HH", request, 8)
        ids = list(request[12:-2])
        self.polls += 1

        if self.drop_after_polls is not None and self.polls > self.drop_after_polls:
            self.connected = False
            raise NotConnectedError("Peer went away")
        if self.polls <= self.fail_polls:
            raise LinkIOError("Simulated bus timeout")
        if self.polls <= self.incomplete_polls:
            ids = ids[:-1]

        reply = b""
        for motor_id in ids:
            if address == packet_codec.ADDR_PRESENT_POSITION:
                value = packet_codec.radians_to_raw(self.joints[motor_id])
            else:
                value = self.currents[motor_id]
            reply += packet_codec.build_status_packet(motor_id, value, self.error_byte, length)
        return reply


@pytest.fixture
def geometry():
    return Settings().load_geometry()


@pytest.fixture
def motor_ids(geometry):
    return [motor['id'] for motor in geometry]


@pytest.fixture
def engine(geometry):
    return KinematicsEngine.from_geometry(geometry)


@pytest.fixture
def fake_link(engine, motor_ids):
    return FakeLink(engine, motor_ids)


@pytest.fixture
def controller(engine, fake_link, motor_ids):
    return MotionController(fake_link, engine, motor_ids,
                            record_cadence=0.01, replay_interval=0.005)
