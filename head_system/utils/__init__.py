"""
Utilities package for logging setup.
"""

from .logging_config import setup_logging, setup_logging_from_config, set_log_level

__all__ = ['setup_logging', 'setup_logging_from_config', 'set_log_level']
