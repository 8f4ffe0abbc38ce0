"""
Transport Link for the Motor Bus

Presents one connect/read/write/close contract over two transports:
a WebSocket bridge carrying one bus frame per binary message, and a
serial port carrying a raw byte stream. The socket is tried first and
the serial port is the fallback.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import serial
import serial.tools.list_ports
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import (
    ConnectionFailedError, LinkBusyError, LinkClosedError, LinkIOError, NotConnectedError,
)


logger = logging.getLogger(__name__)

# USB vendor ids of the usual USB-serial bridges (Arduino, FTDI, CP210x,
# CH340, Adafruit, Raspberry Pi Pico)
USB_VENDOR_IDS = {0x2341, 0x0403, 0x10C4, 0x1A86, 0x239A, 0x2E8A}


class LinkKind(Enum):
    """Active transport variant."""
    SOCKET = "socket"
    SERIAL = "serial"


def request_serial_port(port: Optional[str] = None, auto_detect: bool = True) -> Optional[str]:
    """
    Ask the host for a serial device.

    Returns the configured port if given, otherwise the first port whose
    USB vendor id or description looks like a bus adapter, otherwise the
    first port found. Returns None when nothing is available.
    """
    if port:
        return port
    if not auto_detect:
        return None

    ports = list(serial.tools.list_ports.comports())
    for candidate in ports:
        if candidate.vid is not None and candidate.vid in USB_VENDOR_IDS:
            logger.info(f"Found bus adapter on {candidate.device}")
            return candidate.device

        description = (candidate.description or "").lower()
        if any(keyword in description for keyword in ['ch340', 'ft232', 'cp210', 'usb serial']):
            logger.info(f"Found bus adapter on {candidate.device}")
            return candidate.device

    if ports:
        logger.warning(f"No bus adapter detected, trying first port: {ports[0].device}")
        return ports[0].device

    return None


class SerialChannel:
    """Serial port driven from a small thread pool so the event loop never blocks."""

    def __init__(self, port: str, baudrate: int = 1000000, timeout: float = 0.05):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout

        self._serial: Optional[serial.Serial] = None
        # One worker per direction
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="serial-link")

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self):
        logger.info(f"Opening {self.port} at {self.baudrate} baud...")
        self._serial = await self._run(
            lambda: serial.Serial(port=self.port, baudrate=self.baudrate,
                                  timeout=self.timeout, write_timeout=self.timeout)
        )

    async def read_chunk(self) -> bytes:
        return await self._run(self._read_blocking)

    async def write_chunk(self, data: bytes):
        await self._run(lambda: self._write_blocking(data))

    async def close(self):
        if self._serial is not None and self._serial.is_open:
            await self._run(self._serial.close)
        self._serial = None
        self._executor.shutdown(wait=False)

    def _read_blocking(self) -> bytes:
        if not self.is_open:
            raise LinkClosedError(f"Serial port {self.port} is closed")
        try:
            data = self._serial.read(max(1, self._serial.in_waiting))
            waiting = self._serial.in_waiting
            if waiting:
                data += self._serial.read(waiting)
            return data
        except serial.SerialException as e:
            raise LinkIOError(f"Serial read failed: {e}") from e

    def _write_blocking(self, data: bytes):
        if not self.is_open:
            raise LinkClosedError(f"Serial port {self.port} is closed")
        try:
            self._serial.write(data)
            self._serial.flush()
        except serial.SerialException as e:
            raise LinkIOError(f"Serial write failed: {e}") from e

    async def _run(self, func: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func)


class SocketChannel:
    """WebSocket bridge exchanging one bus frame per binary message."""

    def __init__(self, uri: str, open_timeout: float = 2.0):
        self.uri = uri
        self.open_timeout = open_timeout
        self._socket = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    async def open(self):
        logger.info(f"Connecting to {self.uri}...")
        self._socket = await websockets.connect(
            self.uri, open_timeout=self.open_timeout, max_size=None)

    async def recv_message(self) -> bytes:
        if self._socket is None:
            raise LinkClosedError(f"Socket {self.uri} is closed")
        try:
            while True:
                message = await self._socket.recv()
                if isinstance(message, bytes):
                    return message
                logger.debug(f"Ignoring text message from {self.uri}: {message!r}")
        except ConnectionClosed as e:
            raise LinkClosedError(f"Socket {self.uri} closed: {e}") from e

    async def send_message(self, data: bytes):
        if self._socket is None:
            raise LinkClosedError(f"Socket {self.uri} is closed")
        try:
            await self._socket.send(bytes(data))
        except ConnectionClosed as e:
            raise LinkClosedError(f"Socket {self.uri} closed: {e}") from e

    async def close(self):
        if self._socket is not None:
            await self._socket.close()
        self._socket = None


class Link:
    """
    Transport-agnostic motor bus link.

    Features:
    - Socket bridge first, serial port as fallback
    - Independent read and write locks; taking a held lock fails
      instead of waiting
    - write_read() request/response pairing with a fixed response delay
    - Traffic statistics and connection status callbacks
    """

    def __init__(self,
                 socket_uri: Optional[str] = None,
                 serial_port: Optional[str] = None,
                 baudrate: int = 1000000,
                 timeout: float = 0.05,
                 open_timeout: float = 2.0,
                 response_delay: float = 0.010,
                 auto_detect: bool = True):
        self.socket_uri = socket_uri
        self.serial_port = serial_port
        self.baudrate = baudrate
        self.timeout = timeout
        self.open_timeout = open_timeout
        self.response_delay = response_delay
        self.auto_detect = auto_detect

        self.kind: Optional[LinkKind] = None
        self._channel = None

        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

        self._stats = {
            'bytes_sent': 0,
            'bytes_received': 0,
            'writes': 0,
            'reads': 0,
            'connection_attempts': 0,
            'errors': 0
        }
        self._status_callbacks: List[Callable[[bool], None]] = []

        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> 'Link':
        """Create a link from a LinkConfig section."""
        return cls(
            socket_uri=config.socket_uri,
            serial_port=config.serial_port,
            baudrate=config.baudrate,
            timeout=config.timeout,
            open_timeout=config.open_timeout,
            response_delay=config.response_delay,
            auto_detect=config.auto_detect,
        )

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_open

    async def connect(self) -> LinkKind:
        """
        Open the link.

        Returns:
            LinkKind: The transport that was opened

        Raises:
            ConnectionFailedError: Neither transport could be opened
        """
        if self.is_connected:
            self.logger.warning(f"Link already connected over {self.kind.value}")
            return self.kind

        self._stats['connection_attempts'] += 1

        if self.socket_uri:
            channel = SocketChannel(self.socket_uri, self.open_timeout)
            try:
                await channel.open()
                return self._attach(LinkKind.SOCKET, channel)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                self.logger.warning(f"Socket connection to {self.socket_uri} failed: {e}")

        port = request_serial_port(self.serial_port, self.auto_detect)
        if port is None:
            self._stats['errors'] += 1
            raise ConnectionFailedError("No socket bridge reachable and no serial port found")

        channel = SerialChannel(port, self.baudrate, self.timeout)
        try:
            await channel.open()
        except (serial.SerialException, OSError) as e:
            self._stats['errors'] += 1
            await channel.close()
            raise ConnectionFailedError(f"Failed to open {port}: {e}") from e

        return self._attach(LinkKind.SERIAL, channel)

    async def read(self) -> bytes:
        """Read the next chunk (serial) or binary message (socket)."""
        channel = self._require_channel()
        async with self._hold(self._read_lock, "read"):
            try:
                if self.kind is LinkKind.SOCKET:
                    data = await channel.recv_message()
                elif self.kind is LinkKind.SERIAL:
                    data = await channel.read_chunk()
                else:
                    raise NotConnectedError("Link has no transport")
            except Exception:
                self._stats['errors'] += 1
                raise

        self._stats['reads'] += 1
        self._stats['bytes_received'] += len(data)
        self.logger.debug(f"Received {len(data)} bytes: {data.hex()}")
        return data

    async def write(self, data: bytes):
        """Send one frame (socket) or chunk (serial)."""
        channel = self._require_channel()
        async with self._hold(self._write_lock, "write"):
            self.logger.debug(f"Sending {len(data)} bytes: {bytes(data).hex()}")
            try:
                if self.kind is LinkKind.SOCKET:
                    await channel.send_message(data)
                elif self.kind is LinkKind.SERIAL:
                    await channel.write_chunk(data)
                else:
                    raise NotConnectedError("Link has no transport")
            except Exception:
                self._stats['errors'] += 1
                raise

        self._stats['writes'] += 1
        self._stats['bytes_sent'] += len(data)

    async def write_read(self, data: bytes, wait: Optional[float] = None) -> bytes:
        """
        Write a request, wait for the device to answer, then read once.

        Best effort only: responses are not matched to requests, so
        callers must not overlap write_read() calls on the same link.
        """
        await self.write(data)
        await asyncio.sleep(self.response_delay if wait is None else wait)
        return await self.read()

    async def close(self):
        """Release the transport. Safe to call more than once."""
        channel, self._channel = self._channel, None
        kind, self.kind = self.kind, None
        if channel is None:
            return

        try:
            await channel.close()
        except (OSError, serial.SerialException, WebSocketException) as e:
            self.logger.warning(f"Error closing {kind.value} link: {e}")

        self.logger.info(f"Closed {kind.value} link")
        self._notify_status_change(False)

    def add_status_callback(self, callback: Callable[[bool], None]):
        """Add callback for connection status changes."""
        self._status_callbacks.append(callback)

    def get_stats(self) -> Dict[str, Any]:
        """Get communication statistics."""
        return self._stats.copy()

    def _attach(self, kind: LinkKind, channel) -> LinkKind:
        self.kind = kind
        self._channel = channel
        self.logger.info(f"Connected over {kind.value}")
        self._notify_status_change(True)
        return kind

    def _require_channel(self):
        if self._channel is None:
            raise NotConnectedError("Link not connected")
        return self._channel

    @asynccontextmanager
    async def _hold(self, lock: asyncio.Lock, direction: str):
        if lock.locked():
            raise LinkBusyError(f"A {direction} is already in progress on this link")
        async with lock:
            yield

    def _notify_status_change(self, connected: bool):
        """Notify registered callbacks of connection status change."""
        for callback in self._status_callbacks:
            try:
                callback(connected)
            except Exception as e:
                self.logger.error(f"Status callback error: {e}")
