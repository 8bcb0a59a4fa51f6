"""
Unit tests for service requests and their reply parsers
Reply frames are captures from a meter at address 0x53
"""

from datetime import date

import pytest

from meterhub.errors import DecodeError
from meterhub.protocol.crc import append_crc, verify_crc
from meterhub.protocol.frames import finalize
from meterhub.protocol.service import (
    coefficients_request,
    link_test_request,
    meter_constant,
    network_address_request,
    parse_coefficients,
    parse_network_address,
    parse_serial_number,
    parse_variant,
    serial_number_request,
    variant_request,
)


class TestServiceRequests:
    def test_serial_number_request(self):
        assert finalize(serial_number_request(), 0x53) == bytes.fromhex("5308008611")

    def test_link_test_to_address_zero(self):
        frame = finalize(link_test_request(), 0)
        assert frame[:2] == b"\x00\x00"
        assert verify_crc(frame)

    def test_other_requests(self):
        assert finalize(coefficients_request(), 0x53)[1:3] == bytes([0x08, 0x02])
        assert finalize(network_address_request(), 0x53)[1:4] == bytes([0x08, 0x05, 0x00])
        assert finalize(variant_request(), 0x53)[1:3] == bytes([0x08, 0x12])


class TestServiceParsers:
    def test_serial_number(self):
        info = parse_serial_number(bytes.fromhex("532ffe195717051870d6"))
        assert info.serial_number == 0x2FFE1957
        assert info.manufactured == date(2024, 5, 23)

    def test_serial_number_bad_date(self):
        info = parse_serial_number(append_crc(bytes.fromhex("53" "00000001" "000000")))
        assert info.serial_number == 1
        assert info.manufactured is None

    def test_serial_number_wrong_length(self):
        with pytest.raises(DecodeError):
            parse_serial_number(append_crc(bytes.fromhex("532ffe19")))

    def test_coefficients(self):
        coeffs = parse_coefficients(bytes.fromhex("530001000100000000000015f1"))
        assert coeffs.ktu == 1
        assert coeffs.kti == 1

    def test_network_address(self):
        assert parse_network_address(append_crc(bytes([0x53, 0x00, 0x53]))) == 0x53

    def test_variant(self):
        variant = parse_variant(bytes.fromhex("5364428061bf"))
        assert variant.constant == 1250
        assert variant.phases == 3
        assert variant.rated_current == "5A"
        assert variant.rated_voltage == "120-230V"

    def test_variant_too_short(self):
        with pytest.raises(DecodeError):
            parse_variant(append_crc(bytes([0x53, 0x64])))

    def test_meter_constant(self):
        assert meter_constant(0) == 5000
        assert meter_constant(2) == 1250
        assert meter_constant(15) == 0
