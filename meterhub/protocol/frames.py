"""
Frame construction and validation.

Wire frame: [address:1][payload...][crc_lo:1][crc_hi:1]

Request builders return a frame template: a placeholder address byte, the
payload and two placeholder CRC bytes. finalize() fills in the meter address
and the CRC just before the frame goes out.

Example for meter 75 (0x4b) with the default password:
    <= 4b 01 01 01 01 01 01 01 01 35 72
    => 4b 00 37 40   (status OK)
"""
from typing import Iterable, Optional, Union

from meterhub.errors import ExchangeStatusError, FrameError
from meterhub.models import DEFAULT_PASSWORD
from meterhub.protocol.crc import append_crc, crc16, verify_crc

CMD_LINK_TEST = 0x00
CMD_OPEN_CHANNEL = 0x01
CMD_READ_ENERGY = 0x05
CMD_READ_PARAM = 0x08

ACCESS_LEVEL_USER = 0x01
PASSWORD_LENGTH = 6
MIN_FRAME_LENGTH = 4

STATUS_OK = 0x00

# Exchange status byte, returned in 4-byte short replies
STATUS_TEXT = {
    0x00: "OK",
    0x01: "invalid command or parameter",
    0x02: "internal meter error",
    0x03: "insufficient access level",
    0x04: "internal clock already adjusted today",
    0x05: "communication channel not open",
    0x06: "retry the request within 0.5s",
    0x07: "measurement not ready / no data for parameter",
    0x08: "meter busy",
}


def status_text(code: int) -> str:
    return STATUS_TEXT.get(code, f"unrecognized status, byte={code:x}")


def _template(payload: bytes) -> bytes:
    return bytes([0]) + bytes(payload) + bytes([0, 0])


def build_auth_request(password: Optional[Union[bytes, Iterable[int]]] = None) -> bytes:
    """Open-channel request: command 01, access level, 6-byte password."""
    pwd = bytes(password) if password else DEFAULT_PASSWORD
    if len(pwd) != PASSWORD_LENGTH:
        raise ValueError(f"Password must be {PASSWORD_LENGTH} bytes, got {len(pwd)}")
    return _template(bytes([CMD_OPEN_CHANNEL, ACCESS_LEVEL_USER]) + pwd)


def build_poll_request(template) -> bytes:
    """Request frame template for a poll-template entry (command + sub-parameter bytes)."""
    return _template(template.payload)


def build_request(payload: bytes) -> bytes:
    return _template(payload)


def finalize(frame: bytes, address: int) -> bytes:
    """Substitute the address byte and append CRC16 over everything before it."""
    if not 0 <= address <= 0xFF:
        raise ValueError(f"Meter address must be 0..255, got {address}")
    body = bytes([address]) + bytes(frame[1:-2])
    return append_crc(body)


def parse_address(frame: bytes) -> int:
    if not frame:
        raise FrameError("Expected a frame with an address byte, received nothing", frame=frame)
    return frame[0]


def check_incoming(frame: bytes) -> None:
    """
    Validate a response frame.

    Raises:
        FrameError: shorter than 4 bytes or CRC mismatch
        ExchangeStatusError: 4-byte reply carrying a non-zero status byte
    """
    if frame is None or len(frame) < MIN_FRAME_LENGTH:
        raise FrameError("Invalid message length, skipped", frame=frame or b"")

    if not verify_crc(frame):
        expected = crc16(frame[:-2]).to_bytes(2, "little")
        raise FrameError(f"CRC error, expected crc {expected.hex()}", frame=frame, address=frame[0])

    if len(frame) == MIN_FRAME_LENGTH and frame[1] != STATUS_OK:
        raise ExchangeStatusError(frame[1], status_text(frame[1]), frame=frame, address=frame[0])


def payload_of(frame: bytes) -> bytes:
    """Bytes after the address byte, CRC stripped."""
    return bytes(frame[1:-2])
