"""
Error taxonomy for the meter polling agent.

Per-frame errors (FrameError, DecodeError, UnknownAddressError) are handled
inside the agent and only affect the current cycle. ConfigurationError,
GatewayConnectionError and PollTimeoutError at the threshold are fatal and map
to a process exit code.
"""
from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    OK = 0
    TCP_DISCONNECT = 1
    STARTUP_FAILURE = 2
    NO_METERS = 3
    TIMEOUT_THRESHOLD = 99


class MeterHubError(Exception):
    """Base class. Carries the frame, meter address and channel key when known."""

    exit_code: Optional[ExitCode] = None

    def __init__(self, message: str, frame: Optional[bytes] = None,
                 address: Optional[int] = None, chan: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.frame = bytes(frame) if frame is not None else None
        self.address = address
        self.chan = chan

    def __str__(self) -> str:
        parts = [self.message]
        if self.address is not None:
            parts.append(f"address={self.address}")
        if self.chan:
            parts.append(f"chan={self.chan}")
        if self.frame is not None:
            parts.append(f"frame={self.frame.hex()}")
        return " ".join(parts)


class ConfigurationError(MeterHubError):
    """No usable meters (NO_METERS) or an unreadable config file (STARTUP_FAILURE)."""

    exit_code = ExitCode.NO_METERS

    def __init__(self, message: str, exit_code: Optional[ExitCode] = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class GatewayConnectionError(MeterHubError):
    exit_code = ExitCode.TCP_DISCONNECT


class FrameError(MeterHubError):
    """CRC mismatch or a frame shorter than 4 bytes."""


class DecodeError(MeterHubError):
    """Payload could not be turned into samples."""


class ExchangeStatusError(DecodeError):
    """Short reply with a non-zero exchange status byte."""

    def __init__(self, status: int, text: str, frame: Optional[bytes] = None,
                 address: Optional[int] = None):
        super().__init__(text, frame=frame, address=address)
        self.status = status


class UnknownAddressError(MeterHubError):
    """Response from an address that is not in the registry."""


class PollTimeoutError(MeterHubError):
    exit_code = ExitCode.TIMEOUT_THRESHOLD

    def __init__(self, message: str, address: Optional[int] = None, errors: int = 0):
        super().__init__(message, address=address)
        self.errors = errors
