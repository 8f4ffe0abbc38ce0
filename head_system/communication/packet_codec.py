"""
Motor Bus Packet Codec

Builds instruction packets and decodes status packets for the
motor bus (protocol 2.0 framing):

    FF FF FD 00 | ID | LEN_L LEN_H | INST | PARAMS... | CRC_L CRC_H

LEN counts every byte after itself (instruction, parameters and CRC).
All multi-byte fields are little-endian.
"""

import logging
import math
import struct
from dataclasses import dataclass
from typing import Iterator, List, Sequence

import crcmod

from ..errors import ConfigurationError, PacketDecodeError


logger = logging.getLogger(__name__)

HEADER = b"\xff\xff\xfd\x00"
BROADCAST_ID = 0xFE

# Instruction codes
INST_PING = 0x01
INST_READ = 0x02
INST_WRITE = 0x03
INST_SYNC_READ = 0x82
INST_SYNC_WRITE = 0x83
INST_STATUS = 0x55

# Control table addresses
ADDR_TORQUE_ENABLE = 64
ADDR_GOAL_POSITION = 116
ADDR_PRESENT_CURRENT = 126
ADDR_PRESENT_POSITION = 132

POSITION_SIZE = 4
CURRENT_SIZE = 2

# One full revolution in position steps; the center step is zero angle
POSITION_RESOLUTION = 4096
POSITION_CENTER = 2048

# header + id + length field
_PREFIX_SIZE = len(HEADER) + 3
# instruction + error byte + crc
_STATUS_OVERHEAD = 4

_VALUE_FORMATS = {1: "<b", 2: "<h", 4: "<i"}

# CRC-16 poly 0x8005, init 0, not reflected (check value 0xFEE8)
crc16 = crcmod.mkCrcFun(0x18005, initCrc=0x0000, rev=False, xorOut=0x0000)


@dataclass(frozen=True)
class StatusPacket:
    """Decoded status report from a single motor."""
    motor_id: int
    value: int
    error: int = 0

    @property
    def has_error(self) -> bool:
        return self.error != 0


def status_packet_size(data_length: int = POSITION_SIZE) -> int:
    """Total size in bytes of a status packet carrying ``data_length`` bytes."""
    return _PREFIX_SIZE + _STATUS_OVERHEAD + data_length


def build_packet(target_id: int, instruction: int, params: bytes = b"") -> bytes:
    """
    Frame an instruction packet.

    Args:
        target_id: Motor id, or BROADCAST_ID for sync instructions
        instruction: Instruction code
        params: Instruction parameters

    Returns:
        bytes: Complete packet including the trailing CRC
    """
    if not 0 <= target_id <= 0xFE:
        raise ValueError(f"Invalid target id: {target_id}")

    length = len(params) + 3
    body = HEADER + struct.pack("<BHB", target_id, length, instruction) + bytes(params)
    return body + struct.pack("<H", crc16(body))


def raw_to_radians(raw: int, resolution: int = POSITION_RESOLUTION,
                   center: int = POSITION_CENTER) -> float:
    """Convert a raw position step to an angle in radians."""
    return (raw - center) / resolution * 2.0 * math.pi


def radians_to_raw(angle: float, resolution: int = POSITION_RESOLUTION,
                   center: int = POSITION_CENTER) -> int:
    """Convert an angle in radians to a raw position step in 0..resolution-1."""
    raw = int(round(angle * resolution / (2.0 * math.pi) + center))
    return raw % resolution


def _sync_write_params(address: int, data_length: int, ids: Sequence[int],
                       values: Sequence[bytes]) -> bytes:
    params = bytearray(struct.pack("<HH", address, data_length))
    for motor_id, value in zip(ids, values):
        params.append(_check_id(motor_id))
        params.extend(value)
    return bytes(params)


def _check_id(motor_id: int) -> int:
    if not 0 <= motor_id < BROADCAST_ID:
        raise ValueError(f"Invalid motor id: {motor_id}")
    return motor_id


def build_sync_write_torque(ids: Sequence[int], enabled: bool) -> bytes:
    """Enable or disable torque on every listed motor in one packet."""
    flag = b"\x01" if enabled else b"\x00"
    params = _sync_write_params(ADDR_TORQUE_ENABLE, 1, ids, [flag] * len(ids))
    return build_packet(BROADCAST_ID, INST_SYNC_WRITE, params)


def build_sync_write_position(ids: Sequence[int], angles: Sequence[float],
                              resolution: int = POSITION_RESOLUTION,
                              center: int = POSITION_CENTER) -> bytes:
    """
    Command goal positions for every listed motor in one packet.

    Args:
        ids: Motor ids, in joint-vector order
        angles: Joint angles in radians, same order as ids

    Returns:
        bytes: Sync write packet for the goal position address
    """
    if len(ids) != len(angles):
        raise ConfigurationError(
            f"{len(angles)} angles given for {len(ids)} motor ids")

    values = [
        struct.pack("<I", radians_to_raw(angle, resolution, center))
        for angle in angles
    ]
    params = _sync_write_params(ADDR_GOAL_POSITION, POSITION_SIZE, ids, values)
    return build_packet(BROADCAST_ID, INST_SYNC_WRITE, params)


def build_sync_read_request(ids: Sequence[int], address: int, length: int) -> bytes:
    """Ask every listed motor to report ``length`` bytes starting at ``address``."""
    params = struct.pack("<HH", address, length) + bytes(_check_id(i) for i in ids)
    return build_packet(BROADCAST_ID, INST_SYNC_READ, params)


def build_sync_read_position(ids: Sequence[int]) -> bytes:
    return build_sync_read_request(ids, ADDR_PRESENT_POSITION, POSITION_SIZE)


def build_sync_current_request(ids: Sequence[int]) -> bytes:
    return build_sync_read_request(ids, ADDR_PRESENT_CURRENT, CURRENT_SIZE)


def build_status_packet(motor_id: int, value: int, error: int = 0,
                        data_length: int = POSITION_SIZE) -> bytes:
    """Frame a status packet the way a motor answers a read."""
    data = struct.pack(_VALUE_FORMATS[data_length], value)
    return build_packet(motor_id, INST_STATUS, struct.pack("<B", error) + data)


def parse_status(buffer: bytes, offset: int = 0,
                 data_length: int = POSITION_SIZE) -> StatusPacket:
    """
    Decode one status packet starting at ``offset``.

    Args:
        buffer: Raw bytes received from the bus
        offset: Position of the packet header in ``buffer``
        data_length: Expected number of data bytes in the status

    Returns:
        StatusPacket: Motor id, signed little-endian value and error byte

    Raises:
        PacketDecodeError: Short packet, bad header, unexpected instruction
            or length, or checksum mismatch
    """
    size = status_packet_size(data_length)
    packet = bytes(buffer[offset:offset + size])
    if len(packet) < size:
        raise PacketDecodeError(f"short packet ({len(packet)} < {size} bytes)", offset)

    if packet[:len(HEADER)] != HEADER:
        raise PacketDecodeError("bad header", offset)

    motor_id, length, instruction = struct.unpack_from("<BHB", packet, len(HEADER))
    if instruction != INST_STATUS:
        raise PacketDecodeError(f"unexpected instruction 0x{instruction:02X}", offset)
    if length != data_length + _STATUS_OVERHEAD:
        raise PacketDecodeError(f"unexpected length {length}", offset)

    (received_crc,) = struct.unpack_from("<H", packet, size - 2)
    computed_crc = crc16(packet[:size - 2])
    if received_crc != computed_crc:
        raise PacketDecodeError(
            f"checksum mismatch: calculated=0x{computed_crc:04X}, received=0x{received_crc:04X}",
            offset)

    error = packet[_PREFIX_SIZE + 1]
    (value,) = struct.unpack_from(_VALUE_FORMATS[data_length], packet, _PREFIX_SIZE + 2)
    return StatusPacket(motor_id=motor_id, value=value, error=error)


def iter_status_packets(buffer: bytes, count: int,
                        data_length: int = POSITION_SIZE) -> Iterator[StatusPacket]:
    """
    Decode up to ``count`` consecutive status packets.

    A region that fails to decode is logged and skipped up to the next
    header, so packets after a split or corrupt one are still decoded.
    """
    size = status_packet_size(data_length)
    offset = buffer.find(HEADER)
    if offset > 0:
        logger.warning(f"Skipping {offset} bytes before the first status header")

    decoded = 0
    while decoded < count:
        if offset < 0 or offset >= len(buffer):
            logger.warning(f"Status buffer ended after {decoded} of {count} packets")
            return
        try:
            status = parse_status(buffer, offset, data_length)
        except PacketDecodeError as e:
            logger.warning(f"Skipping status region: {e}")
            offset = buffer.find(HEADER, offset + 1)
            continue
        yield status
        decoded += 1
        offset += size


def decode_sync_response(buffer: bytes, ids: Sequence[int],
                         data_length: int = POSITION_SIZE) -> List[StatusPacket]:
    """Decode a sync-read response, keeping only packets from listed motor ids."""
    wanted = set(ids)
    packets = []
    for status in iter_status_packets(buffer, len(ids), data_length):
        if status.motor_id not in wanted:
            logger.warning(f"Status from unexpected motor id {status.motor_id}")
            continue
        packets.append(status)
    return packets
