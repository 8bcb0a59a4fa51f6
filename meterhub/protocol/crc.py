"""CRC16 (Modbus flavour) used by every Mercury / SET-4TM frame."""


def crc16(data: bytes) -> int:
    crc = 0xFFFF
    for b in data:
        crc ^= b
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def append_crc(body: bytes) -> bytes:
    """Return body + CRC16, low byte first."""
    return bytes(body) + crc16(body).to_bytes(2, "little")


def verify_crc(frame: bytes) -> bool:
    """Check the trailing two bytes against the CRC of everything before them."""
    if frame is None or len(frame) < 3:
        return False
    received = int.from_bytes(frame[-2:], "little")
    return received == crc16(frame[:-2])
