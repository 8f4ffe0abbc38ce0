"""
Exception hierarchy for the head mechanism host.

Transport errors propagate to whoever started the operation, protocol
errors are recovered locally by skipping the bad packet, and kinematics
errors make unreachable targets explicit.
"""

from typing import List, Optional


class HeadSystemError(Exception):
    """Base class for every error raised by the head system."""


class ConfigurationError(HeadSystemError, ValueError):
    """Invalid or inconsistent configuration (geometry, ids, limits)."""


# Transport errors

class LinkError(HeadSystemError):
    """Generic transport failure."""


class NotConnectedError(LinkError):
    """An operation needed an open link and none is active."""


class LinkClosedError(NotConnectedError):
    """The far end closed the link."""


class LinkIOError(LinkError):
    """A read or write on an open link failed."""


class LinkBusyError(LinkError):
    """A direction lock was already held when an operation tried to take it."""


class ConnectionFailedError(LinkError):
    """Neither the socket nor the serial transport could be opened."""


# Protocol errors

class ProtocolError(HeadSystemError):
    """Malformed data on the motor bus."""


class PacketDecodeError(ProtocolError):
    """A status packet could not be decoded."""

    def __init__(self, reason: str, offset: int = 0):
        super().__init__(f"{reason} (offset {offset})")
        self.reason = reason
        self.offset = offset


# Kinematics errors

class KinematicsError(HeadSystemError):
    """Failure inside the kinematics solver."""


class UnreachablePoseError(KinematicsError):
    """No joint vector closes every branch for the requested pose."""

    def __init__(self, branches: List[int], pose: Optional[object] = None):
        super().__init__(f"Pose {pose} unreachable for branches {branches}")
        self.branches = branches
        self.pose = pose


class PoseLimitError(KinematicsError):
    """Target pose lies outside the configured pose limits."""


# Motion errors

class MotionBusyError(HeadSystemError):
    """A record or replay loop is already running."""
