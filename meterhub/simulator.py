"""
Meter simulator: a TCP server that answers like a set of meters behind a
gateway. Any 1-byte address answers, except

    7  never answers
    5  answers everything but energy reads (command 05)

Usage: python -m meterhub.simulator --port 4001
"""
import argparse
import asyncio
import logging
from typing import Iterable, Optional

from meterhub.protocol.crc import append_crc, verify_crc
from meterhub.protocol.decoders import swap16
from meterhub.protocol.frames import (
    CMD_LINK_TEST,
    CMD_OPEN_CHANNEL,
    CMD_READ_ENERGY,
    CMD_READ_PARAM,
    MIN_FRAME_LENGTH,
)

log = logging.getLogger(__name__)

SILENT_ADDRESS = 7
NO_ENERGY_ADDRESS = 5

STATUS_OK = bytes([0x00])
STATUS_INVALID_COMMAND = bytes([0x01])


def _word_swapped(*values: int) -> bytes:
    """32-bit registers in the meter's byte order (bytes swapped within 16-bit words)."""
    return b"".join(swap16(v.to_bytes(4, "big")) for v in values)


# A+ A- R+ R- in pulses
ENERGY = _word_swapped(10001, 0, 5001, 101)

SERIAL_NUMBER = bytes.fromhex("2ffe1957170518")
TEMPERATURE = bytes.fromhex("0023")
COEFFICIENTS = bytes.fromhex("00010001000000000000")
VARIANT = bytes.fromhex("6442")

# 08 11 <rwri>: 3-byte values, high two bits of the first byte are flags
INSTANT = {}
for _code in range(0x00, 0x0C):  # P, Q, S
    INSTANT[_code] = bytes.fromhex("442f47")
INSTANT[0x11] = bytes.fromhex("005d0a")  # U1 238.18
INSTANT[0x12] = INSTANT[0x13] = bytes.fromhex("0055f0")  # 220.00
for _code in (0x21, 0x22, 0x23):
    INSTANT[_code] = bytes.fromhex("000058")
for _code in range(0x30, 0x34):
    INSTANT[_code] = bytes.fromhex("000016")
INSTANT[0x40] = bytes.fromhex("801388")  # 50.00 Hz
for _code in range(0x80, 0x84):
    INSTANT[_code] = bytes.fromhex("400021")

# 08 14 <rwri>: sum and per-phase values of P, Q or S
ARRAYS = {
    0x00: _word_swapped(274247, 91400, 91420, 91427),
    0x04: _word_swapped(1200, 400, 400, 400),
    0x08: _word_swapped(274500, 91500, 91500, 91500),
}

# 08 1b 02 <rwri>: four little-endian floats
FLOAT_GROUPS = {
    0x00: bytes.fromhex("57493f40" "00000000" "00000000" "57493f40"),
    0x04: bytes.fromhex("d73ac441" "e86fbd41" "c6a8da42" "0af6d8c2"),
    0x08: bytes.fromhex("fe5d0443" "b8d99a42" "5544dc42" "cc879c42"),
    0x10: bytes.fromhex("07875b43" "07875b43" "eccf6043" "031d6443"),
    0x20: bytes.fromhex("0874a73d" "0874a73d" "00000000" "00000000"),
    0x30: bytes.fromhex("278b243f" "f89aaa3e" "3060d13e" "7cc88f3e"),
    0x40: bytes.fromhex("53024842" "53024842" "53024842" "53024842"),
    0x80: bytes.fromhex("11139440" "11139440" "c80f9a40" "54ac9340"),
}


class MeterSimulator:
    def __init__(self, silent: Iterable[int] = (SILENT_ADDRESS,),
                 no_energy: Iterable[int] = (NO_ENERGY_ADDRESS,)):
        self.silent = set(silent)
        self.no_energy = set(no_energy)
        self.requests = 0

    def response_for(self, frame: bytes) -> Optional[bytes]:
        """Complete response frame for a request, or None when the meter stays silent."""
        if len(frame) < MIN_FRAME_LENGTH:
            log.warning(f"Invalid request length: {frame.hex()}")
            return None
        if not verify_crc(frame):
            log.warning(f"CRC error: {frame.hex()}")
            return None
        addr = frame[0]
        if addr in self.silent:
            return None
        payload = self._payload_for(addr, frame[1:-2])
        if payload is None:
            return None
        return append_crc(bytes([addr]) + payload)

    def _payload_for(self, addr: int, request: bytes) -> Optional[bytes]:
        cmd = request[0]
        if cmd in (CMD_LINK_TEST, CMD_OPEN_CHANNEL):
            # password is not checked
            return STATUS_OK
        if cmd == CMD_READ_ENERGY:
            if addr in self.no_energy:
                return None
            return ENERGY
        if cmd == CMD_READ_PARAM and len(request) >= 2:
            return self._read_param(addr, request[1:])
        return STATUS_INVALID_COMMAND

    def _read_param(self, addr: int, args: bytes) -> bytes:
        param = args[0]
        if param == 0x00:
            return SERIAL_NUMBER
        if param == 0x01:
            return TEMPERATURE
        if param == 0x02:
            return COEFFICIENTS
        if param == 0x05:
            return bytes([0x00, addr])
        if param == 0x12:
            return VARIANT
        if param == 0x11 and len(args) >= 2:
            return INSTANT.get(args[1], STATUS_INVALID_COMMAND)
        if param == 0x14 and len(args) >= 2:
            return ARRAYS.get(args[1], STATUS_INVALID_COMMAND)
        if param == 0x1B and len(args) >= 3 and args[1] == 0x02:
            return FLOAT_GROUPS.get(args[2], STATUS_INVALID_COMMAND)
        return STATUS_INVALID_COMMAND

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        log.info(f"Client connected: {peer}")
        try:
            while True:
                data = await reader.read(256)
                if not data:
                    break
                self.requests += 1
                log.debug(f"=> {data.hex()}")
                response = self.response_for(data)
                if response is None:
                    continue
                writer.write(response)
                await writer.drain()
                log.debug(f"<= {response.hex()}")
        except (ConnectionError, OSError) as e:
            log.info(f"Client connection error: {e}")
        finally:
            log.info(f"Client disconnected: {peer}")
            writer.close()

    async def start(self, host: str = "127.0.0.1", port: int = 4001) -> asyncio.AbstractServer:
        server = await asyncio.start_server(self.handle_client, host, port)
        log.info(f"Meter simulator listening on {host}:{port}")
        return server


async def serve(host: str, port: int):
    server = await MeterSimulator().start(host, port)
    async with server:
        await server.serve_forever()


def main() -> None:
    parser = argparse.ArgumentParser(description="Meter simulator (TCP gateway with meters behind it)")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=4001)
    parser.add_argument("--debug", action="store_true", help="Log every request and response")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        asyncio.run(serve(args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
