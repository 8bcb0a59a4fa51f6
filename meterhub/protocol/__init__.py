from meterhub.protocol.crc import crc16, verify_crc
from meterhub.protocol.frames import (
    build_auth_request,
    build_poll_request,
    check_incoming,
    finalize,
    parse_address,
    payload_of,
    status_text,
)
from meterhub.protocol.templates import PollTemplate, build_catalogue

__all__ = [
    "crc16",
    "verify_crc",
    "build_auth_request",
    "build_poll_request",
    "check_incoming",
    "finalize",
    "parse_address",
    "payload_of",
    "status_text",
    "PollTemplate",
    "build_catalogue",
]
