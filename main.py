"""
Head Mechanism System - Main Application

Command-line front end for the head mechanism:
- Read the current pose
- Enable or disable torque
- Record and replay joint trajectories
- Move to a target pose
- Read motor currents
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from head_system import HeadSystemError, MotionController, Pose, Settings, Telemetry
from head_system.utils.logging_config import setup_logging_from_config


class HeadMechanismSystem:
    """Main system coordinator for the head mechanism."""

    def __init__(self, config_file: str = "config/head_config.yaml"):
        self.config_file = config_file
        self.logger = None

        self.settings = None
        self.controller = None

    def initialize(self, uri: Optional[str] = None, port: Optional[str] = None,
                   log_level: Optional[str] = None) -> bool:
        """Load configuration, set up logging and build the controller."""
        self.settings = Settings(self.config_file)
        if not self.settings.load_config():
            print(f"Failed to load configuration from {self.config_file}", file=sys.stderr)
            return False

        self.settings.load_environment_overrides()
        if uri:
            self.settings.link.socket_uri = uri
        if port:
            self.settings.link.serial_port = port
        if log_level:
            self.settings.logging.level = log_level.upper()

        if not setup_logging_from_config(self.settings.logging):
            print("Failed to setup logging", file=sys.stderr)
            return False

        self.logger = logging.getLogger(__name__)
        self.controller = MotionController.from_settings(self.settings)
        self.controller.add_telemetry_callback(self._on_telemetry)
        return True

    async def connect(self):
        await self.controller.connect()

    async def show_pose(self):
        telemetry = await self.controller.read_pose()
        print(f"Pose:   {telemetry.pose}")
        print("Joints: " + ", ".join(f"{a:.2f}" for a in telemetry.joint_angles_deg))

    async def torque(self, enabled: bool):
        if enabled:
            await self.controller.torque_on()
        else:
            await self.controller.torque_off()

    async def record(self, duration: Optional[float], output: Optional[str]):
        path = output or self.settings.motion.recording_file
        if duration is None:
            print("Recording, press Ctrl+C to stop")
        count = await self.controller.record(duration)
        self.controller.save_recording(path)
        print(f"Recorded {count} frames to {path}")

    async def replay(self, source: Optional[str]):
        path = source or self.settings.motion.recording_file
        self.controller.load_recording(path)
        sent = await self.controller.replay()
        print(f"Replayed {sent} frames from {path}")

    async def move(self, values: List[float]):
        joints = await self.controller.move_to_pose(Pose.from_list(values))
        print("Commanded joints (rad): " + ", ".join(f"{a:.4f}" for a in joints))

    async def show_currents(self):
        currents = await self.controller.read_currents()
        for motor_id in self.controller.motor_ids:
            print(f"Motor {motor_id}: {currents.get(motor_id, 'no reply')}")

    def stop(self):
        """Stop the running loop (called from the signal handler)."""
        if self.controller:
            self.controller.stop()

    async def shutdown(self):
        if self.controller:
            await self.controller.disconnect()
        if self.logger:
            stats = self.controller.link.get_stats() if self.controller else {}
            self.logger.info(f"Shutdown complete, link stats: {stats}")

    def _on_telemetry(self, telemetry: Telemetry):
        self.logger.debug(str(telemetry))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="head-system", description="Head mechanism control")
    parser.add_argument("--config", default="config/head_config.yaml",
                        help="Configuration file (YAML or JSON)")
    parser.add_argument("--uri", help="WebSocket bridge URI, tried before the serial port")
    parser.add_argument("--port", help="Serial port of the bus adapter")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("pose", help="Read the current pose")
    commands.add_parser("torque-on", help="Enable torque on every motor")
    commands.add_parser("torque-off", help="Disable torque on every motor")

    record = commands.add_parser("record", help="Record a trajectory")
    record.add_argument("--duration", type=float, help="Seconds to record (default: until Ctrl+C)")
    record.add_argument("--output", help="Recording file")

    replay = commands.add_parser("replay", help="Replay a recorded trajectory")
    replay.add_argument("--input", help="Recording file")

    move = commands.add_parser("move", help="Move to a pose (mm and degrees)")
    for name in ("x", "y", "z", "roll", "pitch", "yaw"):
        move.add_argument(name, type=float)

    commands.add_parser("currents", help="Read motor currents")
    return parser


async def run(args: argparse.Namespace) -> int:
    """Run one command and return the exit status."""
    system = HeadMechanismSystem(args.config)
    try:
        if not system.initialize(args.uri, args.port, args.log_level):
            return 1
    except HeadSystemError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, system.stop)
    except NotImplementedError:
        # Windows event loops have no signal handlers; KeyboardInterrupt still applies
        pass

    try:
        await system.connect()
        if args.command == "pose":
            await system.show_pose()
        elif args.command == "torque-on":
            await system.torque(True)
        elif args.command == "torque-off":
            await system.torque(False)
        elif args.command == "record":
            await system.record(args.duration, args.output)
        elif args.command == "replay":
            await system.replay(args.input)
        elif args.command == "move":
            await system.move([args.x, args.y, args.z, args.roll, args.pitch, args.yaw])
        elif args.command == "currents":
            await system.show_currents()
        return 0
    except (HeadSystemError, OSError, ValueError) as e:
        system.logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        await system.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
