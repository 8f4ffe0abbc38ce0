"""
Configuration Management System

Handles system settings, configuration loading, validation,
environment overrides and the static branch geometry.
"""

import os
import yaml
import json
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, fields
from pathlib import Path

from ..errors import ConfigurationError


DEFAULT_GEOMETRY_FILE = Path(__file__).parent / "motors.yaml"


@dataclass
class LinkConfig:
    """Transport link configuration."""
    socket_uri: Optional[str] = None  # e.g. ws://reachy.local:8000/bus
    serial_port: Optional[str] = None
    baudrate: int = 1000000
    timeout: float = 0.05  # serial read timeout, seconds
    open_timeout: float = 2.0  # socket handshake timeout, seconds
    response_delay: float = 0.010  # wait between request and response read
    auto_detect: bool = True


@dataclass
class KinematicsConfig:
    """Kinematics engine configuration."""
    motor_arm_length: float = 0.038  # m
    rod_length: float = 0.09  # m
    head_z_offset: float = 0.12  # m, base height of the user-zero pose
    geometry_file: Optional[str] = None  # None uses the packaged motors.yaml
    fk_max_iterations: int = 100
    fk_tolerance: float = 1e-9

    # Pose limits for commanded targets
    max_translation_mm: float = 40.0
    max_rotation_deg: float = 30.0


@dataclass
class MotionConfig:
    """Record/replay configuration."""
    record_cadence: float = 0.010  # seconds between position requests
    replay_interval: float = 0.020  # seconds between replayed frames
    recording_file: str = "recording.json"


@dataclass
class BusConfig:
    """Motor bus position encoding."""
    position_resolution: int = 4096  # steps per revolution
    position_center: int = 2048  # step that maps to 0 rad


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_file: str = "head_system.log"
    max_file_size_mb: float = 10.0
    backup_count: int = 5
    console_output: bool = True
    detailed_format: bool = False


_SECTIONS = ('link', 'kinematics', 'motion', 'bus', 'logging')


class Settings:
    """
    Configuration management system.

    Loads and saves every configuration section from YAML or JSON,
    applies environment overrides and loads the branch geometry.
    """

    def __init__(self, config_file: str = "config/head_config.yaml"):
        """
        Initialize settings manager.

        Args:
            config_file: Path to configuration file
        """
        self.config_file = config_file
        self.logger = logging.getLogger(__name__)

        # Configuration sections
        self.link = LinkConfig()
        self.kinematics = KinematicsConfig()
        self.motion = MotionConfig()
        self.bus = BusConfig()
        self.logging = LoggingConfig()

    def load_config(self, config_file: str = None) -> bool:
        """
        Load configuration from file.

        Args:
            config_file: Configuration file path (optional)

        Returns:
            bool: True if loaded successfully
        """
        if config_file:
            self.config_file = config_file

        try:
            if not os.path.exists(self.config_file):
                self.logger.warning(f"Config file {self.config_file} not found, using defaults")
                return self._create_default_config()

            # Determine file format
            if self.config_file.endswith('.yaml') or self.config_file.endswith('.yml'):
                with open(self.config_file, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            elif self.config_file.endswith('.json'):
                with open(self.config_file, 'r') as f:
                    config_data = json.load(f)
            else:
                self.logger.error(f"Unsupported config file format: {self.config_file}")
                return False

            self._load_section_config(config_data)

            if not self._validate_config():
                return False

            self.logger.info(f"Configuration loaded from {self.config_file}")
            return True

        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            self.logger.error(f"Failed to load configuration: {e}")
            return False

    def save_config(self, config_file: str = None) -> bool:
        """
        Save current configuration to file.

        Args:
            config_file: Configuration file path (optional)

        Returns:
            bool: True if saved successfully
        """
        if config_file:
            self.config_file = config_file

        try:
            config_dir = os.path.dirname(self.config_file)
            if config_dir:
                os.makedirs(config_dir, exist_ok=True)

            config_data = self.to_dict()

            if self.config_file.endswith('.yaml') or self.config_file.endswith('.yml'):
                with open(self.config_file, 'w') as f:
                    yaml.dump(config_data, f, default_flow_style=False, indent=2)
            elif self.config_file.endswith('.json'):
                with open(self.config_file, 'w') as f:
                    json.dump(config_data, f, indent=2)
            else:
                self.logger.error(f"Unsupported config file format: {self.config_file}")
                return False

            self.logger.info(f"Configuration saved to {self.config_file}")
            return True

        except OSError as e:
            self.logger.error(f"Failed to save configuration: {e}")
            return False

    def update_from_dict(self, config_dict: Dict[str, Any]):
        """Update configuration from dictionary."""
        self._load_section_config(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def load_environment_overrides(self):
        """Load configuration overrides from environment variables."""
        if 'HEAD_SOCKET_URI' in os.environ:
            self.link.socket_uri = os.environ['HEAD_SOCKET_URI']
        if 'HEAD_SERIAL_PORT' in os.environ:
            self.link.serial_port = os.environ['HEAD_SERIAL_PORT']
        if 'HEAD_SERIAL_BAUDRATE' in os.environ:
            self.link.baudrate = int(os.environ['HEAD_SERIAL_BAUDRATE'])

        if 'HEAD_LOG_LEVEL' in os.environ:
            self.logging.level = os.environ['HEAD_LOG_LEVEL'].upper()
        if 'HEAD_LOG_FILE' in os.environ:
            self.logging.log_file = os.environ['HEAD_LOG_FILE']

        self.logger.info("Environment variable overrides applied")

    def load_geometry(self) -> List[Dict[str, Any]]:
        """
        Load the per-motor branch geometry.

        Returns:
            List of motor entries with id, branch_position, T_motor_world
            and solution

        Raises:
            ConfigurationError: Missing file, duplicate ids or malformed entries
        """
        geometry_file = Path(self.kinematics.geometry_file or DEFAULT_GEOMETRY_FILE)
        try:
            with open(geometry_file, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read geometry file {geometry_file}: {e}")

        motors = data.get('motors', [])
        if not motors:
            raise ConfigurationError(f"No motors defined in {geometry_file}")

        ids = [motor.get('id') for motor in motors]
        if None in ids or len(set(ids)) != len(ids):
            raise ConfigurationError(f"Motor ids must be present and distinct: {ids}")

        for motor in motors:
            if len(motor.get('branch_position', [])) != 3:
                raise ConfigurationError(f"Motor {motor['id']}: branch_position needs 3 values")
            matrix = motor.get('T_motor_world', [])
            if len(matrix) != 4 or any(len(row) != 4 for row in matrix):
                raise ConfigurationError(f"Motor {motor['id']}: T_motor_world must be 4x4")
            if motor.get('solution') not in (1, -1):
                raise ConfigurationError(
                    f"Motor {motor['id']}: solution must be 1 or -1, got {motor.get('solution')!r}")

        self.logger.debug(f"Loaded {len(motors)} branches from {geometry_file}")
        return motors

    def _load_section_config(self, config_data: Dict[str, Any]):
        """Load configuration data into sections."""
        for name in _SECTIONS:
            if name not in config_data:
                continue
            section = getattr(self, name)
            known = {f.name for f in fields(section)}
            for key, value in (config_data[name] or {}).items():
                if key in known:
                    setattr(section, key, value)
                else:
                    self.logger.warning(f"Unknown setting {name}.{key} ignored")

    def _validate_config(self) -> bool:
        """Validate configuration values."""
        try:
            if self.link.baudrate <= 0:
                raise ConfigurationError("Serial baudrate must be positive")
            if self.link.timeout <= 0 or self.link.open_timeout <= 0:
                raise ConfigurationError("Link timeouts must be positive")
            if self.link.response_delay < 0:
                raise ConfigurationError("Response delay cannot be negative")

            if self.kinematics.motor_arm_length <= 0 or self.kinematics.rod_length <= 0:
                raise ConfigurationError("Arm and rod lengths must be positive")
            if self.kinematics.fk_max_iterations <= 0:
                raise ConfigurationError("Forward kinematics iteration budget must be positive")

            if self.motion.record_cadence <= 0 or self.motion.replay_interval <= 0:
                raise ConfigurationError("Record cadence and replay interval must be positive")

            if not 0 <= self.bus.position_center < self.bus.position_resolution:
                raise ConfigurationError("Position center must lie inside the resolution range")

            return True

        except ConfigurationError as e:
            self.logger.error(f"Configuration validation failed: {e}")
            return False

    def _create_default_config(self) -> bool:
        """Create default configuration file."""
        self.logger.info("Creating default configuration file")
        return self.save_config()
