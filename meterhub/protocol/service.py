"""
Service requests: link test, serial number, transformation coefficients,
network address and device variant.

They are not part of the regular poll-plan; the probe uses them to identify a
meter and check its calibration before it is added to the configuration.
"""
from dataclasses import dataclass
from datetime import date
from typing import Optional

from meterhub.errors import DecodeError
from meterhub.protocol.frames import build_request, payload_of

PARAM_SERIAL_NUMBER = 0x00
PARAM_COEFFICIENTS = 0x02
PARAM_NETWORK_ADDRESS = 0x05
PARAM_VARIANT = 0x12

# Device variant, byte 2 bits 0-3, imp/kWh
METER_CONSTANTS = {0: 5000, 1: 2500, 2: 1250, 3: 6250, 4: 500, 5: 250, 6: 6400}
RATED_CURRENT = {0: "5A", 1: "1A", 2: "10A"}
RATED_VOLTAGE = {0: "57.7V", 1: "120-230V"}


@dataclass
class SerialInfo:
    serial_number: int
    manufactured: Optional[date]


@dataclass
class Coefficients:
    ktu: int
    kti: int


@dataclass
class Variant:
    constant: int
    phases: int
    rated_current: Optional[str]
    rated_voltage: Optional[str]


def meter_constant(code: int) -> int:
    return METER_CONSTANTS.get(code, 0)


def link_test_request() -> bytes:
    return build_request(bytes([0x00]))


def serial_number_request() -> bytes:
    return build_request(bytes([0x08, PARAM_SERIAL_NUMBER]))


def coefficients_request() -> bytes:
    return build_request(bytes([0x08, PARAM_COEFFICIENTS]))


def network_address_request() -> bytes:
    return build_request(bytes([0x08, PARAM_NETWORK_ADDRESS, 0x00]))


def variant_request() -> bytes:
    return build_request(bytes([0x08, PARAM_VARIANT]))


def parse_serial_number(frame: bytes) -> SerialInfo:
    """
    <= 53 08 00 86 11
    => 53 2f fe 19 57 17 05 18 70 d6
    bytes 1-4 serial number (binary), 5-7 manufacture day, month, year
    """
    payload = payload_of(frame)
    if len(payload) != 7:
        raise DecodeError(f"Serial number reply must carry 7 bytes, received {len(payload)}", frame=frame)
    serial_number = int.from_bytes(payload[0:4], "big")
    day, month, year = payload[4], payload[5], payload[6]
    try:
        manufactured = date(2000 + year, month, day)
    except ValueError:
        manufactured = None
    return SerialInfo(serial_number, manufactured)


def parse_coefficients(frame: bytes) -> Coefficients:
    """
    => 53 00 01 00 01 00 00 00 00 00 00 15 f1
    bytes 1-2 voltage ratio, 3-4 current ratio
    """
    payload = payload_of(frame)
    if len(payload) != 10:
        raise DecodeError(f"Coefficients reply must carry 10 bytes, received {len(payload)}", frame=frame)
    return Coefficients(ktu=int.from_bytes(payload[0:2], "big"), kti=int.from_bytes(payload[2:4], "big"))


def parse_network_address(frame: bytes) -> int:
    payload = payload_of(frame)
    if len(payload) < 2:
        raise DecodeError("Network address reply too short", frame=frame)
    return payload[1]


def parse_variant(frame: bytes) -> Variant:
    """
    => 53 64 42 80 61 bf
    byte 1: bits 0-1 rated current, bits 2-3 rated voltage
    byte 2: bits 0-3 meter constant, bits 4-5 phase count (0 = three, 1 = one)
    """
    payload = payload_of(frame)
    if len(payload) < 2:
        raise DecodeError(f"Variant reply must carry at least 2 bytes, received {len(payload)}", frame=frame)
    return Variant(
        constant=meter_constant(payload[1] & 0x0F),
        phases=1 if (payload[1] >> 4) & 0x03 == 1 else 3,
        rated_current=RATED_CURRENT.get(payload[0] & 0x03),
        rated_voltage=RATED_VOLTAGE.get((payload[0] >> 2) & 0x03),
    )
