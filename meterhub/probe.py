"""
One-shot identification of a single meter through the gateway: link test,
open channel, serial number, transformation coefficients and device variant.

Used to check a meter's address and calibration before adding it to the
devices configuration.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from meterhub.config import GatewayConfig
from meterhub.errors import FrameError, GatewayConnectionError, MeterHubError
from meterhub.models import DEFAULT_PASSWORD
from meterhub.protocol.crc import verify_crc
from meterhub.protocol.frames import MIN_FRAME_LENGTH, build_auth_request, check_incoming, finalize
from meterhub.protocol.service import (
    Coefficients,
    SerialInfo,
    Variant,
    coefficients_request,
    link_test_request,
    parse_coefficients,
    parse_serial_number,
    parse_variant,
    serial_number_request,
    variant_request,
)

log = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    address: int
    reachable: bool = False
    authenticated: bool = False
    serial: Optional[SerialInfo] = None
    coefficients: Optional[Coefficients] = None
    variant: Optional[Variant] = None
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [f"Meter at address {self.address}: {'reachable' if self.reachable else 'no answer'}"]
        if self.reachable:
            lines.append(f"  channel opened: {'yes' if self.authenticated else 'no'}")
        if self.serial:
            made = self.serial.manufactured.isoformat() if self.serial.manufactured else "unknown"
            lines.append(f"  serial number: {self.serial.serial_number} (manufactured {made})")
        if self.coefficients:
            lines.append(f"  ktu={self.coefficients.ktu} kti={self.coefficients.kti}")
        if self.variant:
            lines.append(f"  {self.variant.phases}-phase, {self.variant.rated_voltage}, "
                         f"{self.variant.rated_current}, {self.variant.constant} imp/kWh")
        for err in self.errors:
            lines.append(f"  error: {err}")
        return "\n".join(lines)


class ServiceProbe:
    def __init__(self, gateway: GatewayConfig, address: int, password: bytes = DEFAULT_PASSWORD):
        self.gateway = gateway
        self.address = address
        self.password = password
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self):
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.gateway.host, self.gateway.port),
                timeout=self.gateway.connect_timeout_secs,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise GatewayConnectionError(
                f"Cannot connect to gateway {self.gateway.host}:{self.gateway.port}: {e!r}"
            ) from e

    async def close(self):
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ConnectionError):
            pass
        self._writer = None

    async def exchange(self, frame: bytes) -> bytes:
        """Send one request and return the validated response frame."""
        out = finalize(frame, self.address)
        log.debug(f"probe {self.address} <= {out.hex()}")
        self._writer.write(out)
        await self._writer.drain()

        buf = b""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.gateway.timeout_ms / 1000.0
        while not (len(buf) >= MIN_FRAME_LENGTH and verify_crc(buf)):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            chunk = await asyncio.wait_for(self._reader.read(256), timeout=remaining)
            if not chunk:
                raise GatewayConnectionError("Gateway closed the connection")
            buf += chunk
        log.debug(f"probe {self.address} => {buf.hex()}")
        if buf[0] != self.address:
            raise FrameError("Response from another address", frame=buf, address=buf[0])
        check_incoming(buf)
        return buf

    async def run(self) -> ProbeResult:
        result = ProbeResult(address=self.address)
        await self.connect()
        try:
            try:
                await self.exchange(link_test_request())
                result.reachable = True
            except asyncio.TimeoutError:
                result.errors.append("link test: no answer")
                return result

            steps = [
                ("open channel", build_auth_request(self.password), None),
                ("serial number", serial_number_request(), "serial"),
                ("coefficients", coefficients_request(), "coefficients"),
                ("variant", variant_request(), "variant"),
            ]
            parsers = {"serial": parse_serial_number, "coefficients": parse_coefficients,
                       "variant": parse_variant}
            for name, request, attr in steps:
                try:
                    response = await self.exchange(request)
                except asyncio.TimeoutError:
                    result.errors.append(f"{name}: no answer")
                    continue
                except MeterHubError as e:
                    result.errors.append(f"{name}: {e}")
                    continue
                if attr is None:
                    result.authenticated = True
                    continue
                try:
                    setattr(result, attr, parsers[attr](response))
                except MeterHubError as e:
                    result.errors.append(f"{name}: {e}")
        finally:
            await self.close()
        return result


async def probe_meter(gateway: GatewayConfig, address: int, password: bytes = DEFAULT_PASSWORD) -> ProbeResult:
    return await ServiceProbe(gateway, address, password).run()
