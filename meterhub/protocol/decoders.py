"""
Response payload decoders.

Every decoder takes the payload (bytes after the address byte, CRC already
stripped), the poll-template entry and the meter calibration, and returns a
list of Readings. Decoders work on a copy of the payload; the caller's buffer
is never modified.
"""
import struct
from typing import List

from meterhub.errors import DecodeError
from meterhub.models import Calibration, Reading

ENERGY_NO_VALUE = 0xFFFFFFFF
ENERGY_CHANNELS = ("EAP", "EAM", "ERP", "ERM")  # A+ A- R+ R-

VALUE_MASK_3BYTE = 0x3FFFFF  # two high bits of the first byte are status flags

# Instantaneous value scaling per quantity
SCALE = {
    "P": 0.01,
    "Q": 0.01,
    "S": 0.01,
    "U": 0.01,
    "I": 0.001,
    "F": 0.01,
    "cos": 0.001,
    "Kuf": 0.01,
}


def round3(value: float) -> float:
    return round(value, 3)


def scale_value(quantity: str, raw: int) -> float:
    return round3(raw * SCALE.get(quantity, 1))


def swap16(data: bytes) -> bytes:
    """Swap the two bytes of every 16-bit word. Returns a new buffer."""
    if len(data) % 2:
        raise DecodeError(f"Cannot swap an odd number of bytes ({len(data)})", frame=data)
    out = bytearray(data)
    out[0::2], out[1::2] = data[1::2], data[0::2]
    return bytes(out)


def _require(payload: bytes, size: int, template) -> bytes:
    if payload is None or len(payload) < size:
        got = 0 if payload is None else len(payload)
        raise DecodeError(
            f"Expected at least {size} payload bytes for {template.mclass}, received {got}",
            frame=payload or b"",
            chan=template.chan or template.mclass,
        )
    return bytes(payload[:size])


def _slots(payload: bytes) -> List[int]:
    """Four 32-bit big-endian values, each read after a byte swap within its 16-bit words."""
    return [int.from_bytes(swap16(payload[i:i + 4]), "big") for i in range(0, 16, 4)]


def decode_3byte(payload: bytes, template, calibration: Calibration) -> List[Reading]:
    data = _require(payload, 3, template)
    raw = ((data[0] & 0x3F) << 16) | (data[1] << 8) | data[2]
    return [Reading(template.chan, scale_value(template.quantity, raw))]


def decode_3byte_array(payload: bytes, template, calibration: Calibration) -> List[Reading]:
    data = _require(payload, 16, template)
    values = [raw & VALUE_MASK_3BYTE for raw in _slots(data)]
    return [Reading(f"{template.mclass}{idx}", scale_value(template.quantity, raw))
            for idx, raw in enumerate(values)]


def decode_energy(payload: bytes, template, calibration: Calibration) -> List[Reading]:
    """Accumulated energy A+ A- R+ R-. An all-ones register means "no value"."""
    data = _require(payload, 16, template)
    kt = calibration.kt if calibration else 1
    res = []
    for chan, raw in zip(ENERGY_CHANNELS, _slots(data)):
        res.append(Reading(chan, None if raw == ENERGY_NO_VALUE else round3(raw * kt)))
    return res


def decode_float_group(payload: bytes, template, calibration: Calibration) -> List[Reading]:
    data = _require(payload, 16, template)
    values = struct.unpack("<4f", data)
    return [Reading(f"{template.mclass}{idx}", round3(val)) for idx, val in enumerate(values)]


def decode_uint16(payload: bytes, template, calibration: Calibration) -> List[Reading]:
    data = _require(payload, 2, template)
    (value,) = struct.unpack(">H", data)
    return [Reading(template.chan or template.mclass, round3(value))]
