"""
Polling agent: sequential polling of all meters over one gateway connection.

Every meter sweep starts with the open-channel (password) request, then the
due entries of the meter's poll-plan are requested one by one. Exactly one
request is outstanding at a time. Two things drive the agent:

- the stream reader, which hands every received chunk to handle_response()
- the supervisory task, which calls tick() once per tick_secs and detects
  response timeouts

Both run on the same event loop, so no locking is needed; both check the
suspend state before touching the registry.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from meterhub.config import GatewayConfig, PollingConfig
from meterhub.errors import (
    DecodeError,
    ExchangeStatusError,
    ExitCode,
    FrameError,
    GatewayConnectionError,
    PollTimeoutError,
    UnknownAddressError,
)
from meterhub.meters.registry import MeterRegistry
from meterhub.models import Channel, Meter, Sample
from meterhub.protocol.crc import verify_crc
from meterhub.protocol.frames import (
    MIN_FRAME_LENGTH,
    build_auth_request,
    build_poll_request,
    check_incoming,
    finalize,
    parse_address,
    payload_of,
)
from meterhub.protocol.templates import PollTemplate, channels_served
from meterhub.sinks import SampleSink

log = logging.getLogger(__name__)
frames_log = logging.getLogger("meterhub.frames")

RECV_BUFFER_SIZE = 1024
FAULT_CHSTATUS = 1
AUTH_REPLY_LENGTH = MIN_FRAME_LENGTH


class AgentState(Enum):
    CONNECTING = "connecting"
    POLLING = "polling"
    SUSPENDED = "suspended"
    EXITING = "exiting"


def now_ms() -> int:
    return int(time.time() * 1000)


class PollingAgent:
    def __init__(
        self,
        registry: MeterRegistry,
        catalogue: List[PollTemplate],
        sink: SampleSink,
        gateway: GatewayConfig,
        polling: Optional[PollingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.catalogue = catalogue
        self.sink = sink
        self.gateway = gateway
        self.polling = polling or PollingConfig()
        self.clock = clock

        self.state = AgentState.CONNECTING
        self.waiting = False
        self.send_time = 0.0
        self.exit_code: Optional[ExitCode] = None

        self._first_meter = True
        self._restart_pending = False
        self._rx = bytearray()
        self._reply_length = AUTH_REPLY_LENGTH
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._next_task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Event] = None

    @property
    def timeout_secs(self) -> float:
        return self.gateway.timeout_ms / 1000.0

    # ---- lifecycle -------------------------------------------------------

    async def run(self) -> ExitCode:
        """Connect, poll until a fatal condition or stop(), then return the exit code."""
        self._done = asyncio.Event()
        host, port = self.gateway.host, self.gateway.port
        log.info(f"Connecting to gateway {host}:{port}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.gateway.connect_timeout_secs
            )
        except (OSError, asyncio.TimeoutError) as e:
            err = GatewayConnectionError(f"Cannot connect to gateway {host}:{port}: {e!r}")
            self.stop(err.exit_code, str(err))
        else:
            log.info(f"Connected to gateway {host}:{port}")
            self.start_polling()

        tasks = []
        if self.state is not AgentState.EXITING:
            tasks = [
                asyncio.create_task(self._read_loop(), name="meterhub-reader"),
                asyncio.create_task(self._supervise(), name="meterhub-supervisor"),
            ]
            await self._done.wait()

        for task in tasks + [self._next_task]:
            if task and not task.done():
                task.cancel()
        await asyncio.gather(*[t for t in tasks if t], return_exceptions=True)
        await self._close_connection()
        await asyncio.sleep(self.polling.exit_grace_ms / 1000.0)
        return self.exit_code

    def start_polling(self):
        self._first_meter = True
        if self.state is AgentState.SUSPENDED:
            # Configuration is being rebuilt; resume() restarts the sweep
            self._restart_pending = True
            return
        self.state = AgentState.POLLING
        self.send_next()

    def suspend(self):
        """Stop polling while the meter list is rebuilt. Responses arriving meanwhile are dropped."""
        if self.state in (AgentState.POLLING, AgentState.CONNECTING):
            log.info("Polling suspended")
            self.state = AgentState.SUSPENDED
            self._rx.clear()
            if self._next_task and not self._next_task.done():
                self._next_task.cancel()

    def resume(self):
        """Restart from the first meter on the next supervisory tick."""
        if self.state is not AgentState.SUSPENDED:
            return
        log.info("Polling resumed, restarting sweep from the first meter")
        self.state = AgentState.POLLING if self._writer is not None else AgentState.CONNECTING
        self._first_meter = True
        self._restart_pending = True

    def stop(self, code: ExitCode, message: str = ""):
        if self.state is AgentState.EXITING:
            return
        if code == ExitCode.OK:
            log.info(message or "Polling agent stopped")
        else:
            log.error(message or f"Polling agent stopped with code {int(code)}")
        self.state = AgentState.EXITING
        self.exit_code = code
        self.waiting = False
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()
        if self._done is not None:
            self._done.set()

    async def _close_connection(self):
        if self._writer is None:
            return
        if not self._writer.is_closing():
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ConnectionError) as e:
            log.debug(f"Error while closing gateway connection: {e}")

    # ---- I/O -------------------------------------------------------------

    async def _read_loop(self):
        try:
            while self.state is not AgentState.EXITING:
                data = await self._reader.read(RECV_BUFFER_SIZE)
                if not data:
                    self.stop(ExitCode.TCP_DISCONNECT, "TCP client disconnected")
                    return
                self.handle_response(data)
        except (ConnectionError, OSError) as e:
            err = GatewayConnectionError(f"TCP client connection error: {e!r}")
            self.stop(err.exit_code, str(err))

    async def _supervise(self):
        while self.state is not AgentState.EXITING:
            await asyncio.sleep(self.polling.tick_secs)
            try:
                self.tick()
            except Exception as e:
                log.error(f"Supervisory tick failed: {e}", exc_info=True)

    async def _send_after_delay(self):
        await asyncio.sleep(self.gateway.poll_delay_ms / 1000.0)
        if self.state is AgentState.POLLING and not self._restart_pending:
            self.send_next()

    def _send(self, meter: Meter, frame: bytes, reply_length: int = AUTH_REPLY_LENGTH):
        if self.state is not AgentState.POLLING or self._writer is None:
            return
        out = finalize(frame, meter.addr)
        frames_log.debug(f"{meter.name} <= {out.hex()}")
        self._rx.clear()
        self._reply_length = reply_length
        self.send_time = self.clock()
        self.waiting = True
        self._writer.write(out)

    # ---- state machine ---------------------------------------------------

    def send_next(self):
        """
        Send the next request of the sweep: the password request when a meter
        is started, otherwise the next due poll-plan entry. When the current
        meter's plan is exhausted, move on to the next meter.
        """
        if self.state is not AgentState.POLLING or self.registry.is_empty():
            return
        if self.waiting:
            log.warning("Request skipped, previous request still outstanding")
            return
        if self._first_meter:
            self._first_meter = False
            self._restart_pending = False
            meter = self.registry.first_meter()
            frame = build_auth_request(meter.password)
        else:
            template_idx = self.registry.next_due_poll_index()
            if template_idx is None:
                meter = self.registry.next_meter()
                frame = build_auth_request(meter.password)
            else:
                meter = self.registry.current_meter()
                template = self.catalogue[template_idx]
                self._send(meter, build_poll_request(template), template.reply_length)
                return
        self._send(meter, frame)

    def handle_response(self, data: bytes):
        """
        Collect received bytes until the answer to the outstanding request is
        complete, then decode it and schedule the next request.

        A reply is complete once it carries a valid CRC or reaches the length
        expected for the request. Replies from any meter other than the one
        being polled (late answers after a timeout) are dropped and the agent
        keeps waiting.
        """
        if self.state is not AgentState.POLLING or self._restart_pending:
            # Meter list is being (or has just been) rebuilt, the meter may be gone
            self.waiting = False
            self._rx.clear()
            frames_log.debug(f"Discarded while suspended => {bytes(data).hex()}")
            return
        if not self.waiting:
            frames_log.debug(f"Unsolicited data dropped => {bytes(data).hex()}")
            return

        self._rx.extend(data)
        if not self._reply_complete():
            return
        frame = bytes(self._rx)
        self._rx.clear()

        meter = self.registry.current_meter()
        if verify_crc(frame) and (meter is None or parse_address(frame) != meter.addr):
            expected = meter.name if meter else "no meter"
            log.warning(f"Reply from address {parse_address(frame)} dropped, waiting for {expected}")
            frames_log.debug(f"Dropped => {frame.hex()}")
            return

        self.waiting = False
        self.process_incoming(frame)
        self._next_task = asyncio.ensure_future(self._send_after_delay())

    def _reply_complete(self) -> bool:
        if len(self._rx) < MIN_FRAME_LENGTH:
            return False
        return verify_crc(self._rx) or len(self._rx) >= self._reply_length

    def process_incoming(self, data: bytes) -> List[Sample]:
        """Validate and decode one response; per-frame errors are logged and dropped."""
        samples: List[Sample] = []
        try:
            check_incoming(data)
            samples = self.read_data(data)
        except ExchangeStatusError as e:
            meter = self.registry.meter_by_address(data[0])
            if meter is not None:
                meter.errors = 0
            name = meter.name if meter else f"address {data[0]}"
            log.warning(f"{name}: meter replied with status {e.status:#04x}: {e.message}")
        except FrameError as e:
            log.warning(f"Frame dropped: {e}")
        except UnknownAddressError as e:
            log.warning(f"Response dropped: {e}")
        except DecodeError as e:
            log.error(f"Decode failed: {e}")
        if samples:
            self.sink.send(samples)
        return samples

    def read_data(self, data: bytes) -> List[Sample]:
        addr = parse_address(data)
        meter = self.registry.meter_by_address(addr)
        if meter is None:
            raise UnknownAddressError("No meter with this address", frame=data, address=addr)

        frames_log.debug(f"{meter.name} => {data.hex()}")
        meter.errors = 0

        template_idx = self.registry.current_template_index(meter)
        if template_idx is None:
            return []  # answer to the password request
        template = self.catalogue[template_idx]
        try:
            readings = template.decode(payload_of(data), template, meter.calibration)
        except DecodeError as e:
            e.address = addr
            raise

        ts = now_ms()
        res = []
        for r in readings:
            ch = meter.chans.get(r.chan)
            if ch is None:
                log.debug(f"{meter.name}: channel {r.chan} is not polled, value dropped")
                continue
            res.append(Sample(id=ch.id, chan=r.chan, ts=ts, parentname=meter.name, value=r.value))
        return res

    def tick(self, now: Optional[float] = None):
        """Supervisory check, once per tick_secs."""
        if self.state is not AgentState.POLLING:
            return
        now = self.clock() if now is None else now
        elapsed = now - self.send_time

        if self._restart_pending:
            if self.waiting and elapsed <= self.timeout_secs:
                return  # request sent before the rebuild, let it run out
            self.waiting = False
            self.send_next()
            return

        if self.waiting and elapsed > self.timeout_secs:
            self._on_timeout()

    def _on_timeout(self):
        meter = self.registry.current_meter()
        if meter is None:
            self.waiting = False
            return
        meter.errors += 1
        if meter.errors < self.polling.max_timeouts:
            self.waiting = False
            log.error(f"{meter.name}: timeout error, no answer in {self.gateway.timeout_ms} ms "
                      f"({meter.errors}/{self.polling.max_timeouts})")
            self.send_fault_samples(meter, self.remaining_channels(meter))
            meter = self.registry.next_meter()
            self._send(meter, build_auth_request(meter.password))
        else:
            err = PollTimeoutError(
                f"Timeout error! Number of errors = {meter.errors}, stopped",
                address=meter.addr,
                errors=meter.errors,
            )
            self.stop(err.exit_code, f"{meter.name}: {err}")

    def remaining_channels(self, meter: Meter) -> List[Channel]:
        """Channels of the current sweep that have not been answered yet."""
        res: List[Channel] = []
        seen = set()
        for entry in meter.polls[max(meter.poll_idx, 0):]:
            for ch in channels_served(self.catalogue[entry.template_index], meter.chans):
                if ch.chan not in seen:
                    seen.add(ch.chan)
                    res.append(ch)
        return res

    def send_fault_samples(self, meter: Meter, channels: List[Channel]):
        if not channels:
            return
        ts = now_ms()
        self.sink.send([
            Sample(id=ch.id, chan=ch.chan, ts=ts, parentname=meter.name, chstatus=FAULT_CHSTATUS)
            for ch in channels
        ])
