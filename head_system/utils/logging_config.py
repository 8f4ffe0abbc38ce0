"""
Logging Configuration Utility

Root logger setup for the head mechanism: rotating log file plus a
short console format.
"""

import logging
import logging.handlers
import os
import sys


def setup_logging(level: str = "INFO",
                  log_file: str = "head_system.log",
                  max_file_size_mb: float = 10.0,
                  backup_count: int = 5,
                  console_output: bool = True,
                  detailed_format: bool = False) -> bool:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_file: Log file path, empty to disable file logging
        max_file_size_mb: File size before rotation
        backup_count: Rotated files to keep
        console_output: Also log to stdout
        detailed_format: Include file, line and function in file records

    Returns:
        bool: True if logging setup successful
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    if detailed_format:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s() - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    try:
        if log_file:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=int(max_file_size_mb * 1024 * 1024),
                backupCount=backup_count
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    except OSError as e:
        print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
        if not console_output:
            return False

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        logger.addHandler(console_handler)

    logger.info(f"Logging initialized - Level: {level}, File: {log_file or 'none'}")
    return True


def setup_logging_from_config(config) -> bool:
    """Configure logging from a LoggingConfig section."""
    return setup_logging(
        level=config.level,
        log_file=config.log_file,
        max_file_size_mb=config.max_file_size_mb,
        backup_count=config.backup_count,
        console_output=config.console_output,
        detailed_format=config.detailed_format,
    )


def set_log_level(level: str):
    """Change the level of the root logger and all of its handlers."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(numeric_level)

    for handler in logger.handlers:
        handler.setLevel(numeric_level)

    logger.info(f"Log level changed to {level}")
