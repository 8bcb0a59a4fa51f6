"""
Unit tests for PollingAgent
Drives the state machine directly with a fake stream writer and clock
"""

import asyncio
import socket

import pytest
from unittest.mock import Mock

from meterhub.agent import AgentState, PollingAgent
from meterhub.config import ChannelConfig, DevicesConfig, GatewayConfig, NodeConfig, PollingConfig
from meterhub.errors import ExitCode
from meterhub.meters import MeterRegistry, build_meter_list
from meterhub.protocol.crc import append_crc
from meterhub.protocol.frames import build_auth_request, build_request, finalize
from meterhub.protocol.templates import build_catalogue
from meterhub.sinks import SampleSink

ENERGY_PAYLOAD = bytes.fromhex("00001127" "ffffffff" "00008913" "00006500")


class FakeWriter:
    def __init__(self):
        self.frames = []
        self.closed = False

    def write(self, data):
        self.frames.append(bytes(data))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def reply(addr, payload):
    return append_crc(bytes([addr]) + payload)


def auth_frame(addr):
    return finalize(build_auth_request(), addr)


async def settle():
    await asyncio.sleep(0.01)


def two_meter_devices():
    return DevicesConfig(
        nodes=[
            NodeConfig(id="n1", name="Feeder 1", addr=75, channels=[
                ChannelConfig(id="c1", chan="U1", order=1),
                ChannelConfig(id="c2", chan="EAP", order=2),
            ]),
            NodeConfig(id="n2", name="Feeder 2", addr=76, channels=[
                ChannelConfig(id="c3", chan="I1", order=1),
            ]),
        ]
    )


@pytest.fixture
def catalogue():
    return build_catalogue()


@pytest.fixture
def harness(catalogue):
    """Agent wired to a fake writer, mock sink and fake clock, not yet polling"""
    registry = MeterRegistry(build_meter_list(two_meter_devices(), catalogue))
    sink = Mock(spec=SampleSink)
    clock = FakeClock()
    agent = PollingAgent(
        registry, catalogue, sink,
        GatewayConfig(host="127.0.0.1", timeout_ms=5000, poll_delay_ms=0),
        PollingConfig(exit_grace_ms=0),
        clock=clock,
    )
    writer = FakeWriter()
    agent._writer = writer
    return agent, writer, sink, clock


def sent_samples(sink):
    return [s for call in sink.send.call_args_list for s in call.args[0]]


class TestPollSequence:
    """Test request sequencing and decoding"""

    @pytest.mark.asyncio
    async def test_starts_with_auth_for_first_meter(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        assert agent.state is AgentState.POLLING
        assert writer.frames == [auth_frame(75)]
        assert agent.waiting

    @pytest.mark.asyncio
    async def test_full_sweep(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()

        agent.handle_response(reply(75, b"\x00"))
        await settle()
        assert writer.frames[-1] == finalize(build_request(bytes([0x08, 0x11, 0x11])), 75)
        sink.send.assert_not_called()

        agent.handle_response(reply(75, bytes.fromhex("005d0a")))
        await settle()
        samples = sent_samples(sink)
        assert len(samples) == 1
        assert samples[0].id == "c1"
        assert samples[0].chan == "U1"
        assert samples[0].value == 238.18
        assert samples[0].parentname == "Feeder 1"
        assert writer.frames[-1][:4] == bytes([75, 0x05, 0x00, 0x00])

        agent.handle_response(reply(75, ENERGY_PAYLOAD))
        await settle()
        samples = sent_samples(sink)
        # only EAP is configured out of the four energy registers
        assert [s.chan for s in samples] == ["U1", "EAP"]
        assert writer.frames[-1] == auth_frame(76)

        agent.handle_response(reply(76, b"\x00"))
        await settle()
        assert writer.frames[-1][:4] == bytes([76, 0x08, 0x11, 0x21])

        agent.handle_response(reply(76, bytes.fromhex("000058")))
        await settle()
        assert sent_samples(sink)[-1].chan == "I1"
        # wrapped around to the first meter
        assert writer.frames[-1] == auth_frame(75)

    @pytest.mark.asyncio
    async def test_one_request_at_a_time(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.send_next()
        assert len(writer.frames) == 1

    @pytest.mark.asyncio
    async def test_crc_error_dropped_without_escalation(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        bad = bytearray(reply(75, b"\x00"))
        bad[-1] ^= 0xFF
        agent.handle_response(bytes(bad))
        await settle()
        sink.send.assert_not_called()
        assert agent.registry.meter_by_address(75).errors == 0
        assert len(writer.frames) == 2

    @pytest.mark.asyncio
    async def test_unknown_address_dropped(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        agent.handle_response(reply(99, bytes.fromhex("005d0a")))
        await settle()
        sink.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_status_reply_produces_no_samples(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        agent.handle_response(reply(75, b"\x07"))
        await settle()
        sink.send.assert_not_called()
        # moves on to the energy request
        assert writer.frames[-1][:4] == bytes([75, 0x05, 0x00, 0x00])

    @pytest.mark.asyncio
    async def test_response_resets_error_counter(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.registry.meter_by_address(75).errors = 4
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        assert agent.registry.meter_by_address(75).errors == 0


class TestReplyFraming:
    """Test reassembly of replies and matching them to the outstanding request"""

    @pytest.fixture
    def late_reply_agent(self, catalogue):
        devices = DevicesConfig(nodes=[
            NodeConfig(id="n1", name="Feeder 1", addr=75, channels=[ChannelConfig(id="c1", chan="U1")]),
            NodeConfig(id="n2", name="Feeder 2", addr=76, channels=[
                ChannelConfig(id="c3", chan="I1", order=1),
                ChannelConfig(id="c4", chan="I2", order=2),
            ]),
        ])
        clock = FakeClock()
        sink = Mock(spec=SampleSink)
        agent = PollingAgent(
            MeterRegistry(build_meter_list(devices, catalogue)), catalogue, sink,
            GatewayConfig(host="127.0.0.1", timeout_ms=5000, poll_delay_ms=0),
            PollingConfig(exit_grace_ms=0), clock=clock,
        )
        writer = FakeWriter()
        agent._writer = writer
        return agent, writer, sink, clock

    @pytest.mark.asyncio
    async def test_late_reply_after_timeout_dropped(self, late_reply_agent):
        agent, writer, sink, clock = late_reply_agent
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        assert writer.frames[-1][:4] == bytes([75, 0x08, 0x11, 0x11])

        clock.now += 5.1
        agent.tick()
        assert writer.frames[-1] == auth_frame(76)
        sink.send.reset_mock()

        # U1 answer from 75 arrives after the deadline
        agent.handle_response(reply(75, bytes.fromhex("005d0a")))
        await settle()
        assert writer.frames[-1] == auth_frame(76)
        assert agent.waiting
        sink.send.assert_not_called()

        agent.handle_response(reply(76, b"\x00"))
        await settle()
        assert writer.frames[-1][:4] == bytes([76, 0x08, 0x11, 0x21])

        agent.handle_response(reply(76, bytes.fromhex("000058")))
        await settle()
        samples = sent_samples(sink)
        assert [(s.id, s.chan, s.value) for s in samples] == [("c3", "I1", 0.088)]
        assert writer.frames[-1][:4] == bytes([76, 0x08, 0x11, 0x22])

    @pytest.mark.asyncio
    async def test_reply_split_across_reads(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        agent.handle_response(reply(75, bytes.fromhex("005d0a")))
        await settle()
        sent = len(writer.frames)

        energy = reply(75, ENERGY_PAYLOAD)
        agent.handle_response(energy[:8])
        await settle()
        assert len(writer.frames) == sent
        assert agent.waiting

        agent.handle_response(energy[8:])
        await settle()
        assert [s.chan for s in sent_samples(sink)] == ["U1", "EAP"]
        assert len(writer.frames) == sent + 1
        assert writer.frames[-1] == auth_frame(76)

    @pytest.mark.asyncio
    async def test_corrupt_reply_of_full_length_dropped(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()

        bad = bytearray(reply(75, bytes.fromhex("005d0a")))
        bad[2] ^= 0xFF
        agent.handle_response(bytes(bad))
        await settle()
        sink.send.assert_not_called()
        assert agent.registry.meter_by_address(75).errors == 0
        assert writer.frames[-1][:4] == bytes([75, 0x05, 0x00, 0x00])

    @pytest.mark.asyncio
    async def test_partial_reply_discarded_on_timeout(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00")[:2])

        clock.now += 5.1
        agent.tick()
        assert writer.frames[-1] == auth_frame(76)

        agent.handle_response(reply(76, b"\x00"))
        await settle()
        assert writer.frames[-1][:4] == bytes([76, 0x08, 0x11, 0x21])


class TestTimeouts:
    """Test timeout handling and escalation"""

    def test_no_timeout_within_deadline(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        clock.now += 4.9
        agent.tick()
        assert agent.waiting
        assert len(writer.frames) == 1

    def test_timeout_moves_to_next_meter(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        clock.now += 5.1
        agent.tick()
        assert agent.registry.meter_by_address(75).errors == 1
        assert writer.frames[-1] == auth_frame(76)
        assert agent.state is AgentState.POLLING

    def test_auth_timeout_faults_all_channels(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        clock.now += 5.1
        agent.tick()
        faults = sent_samples(sink)
        assert [(s.id, s.chan) for s in faults] == [("c1", "U1"), ("c2", "EAP")]
        assert all(s.is_fault and s.chstatus == 1 for s in faults)
        assert all("value" not in s.to_dict() for s in faults)

    @pytest.mark.asyncio
    async def test_mid_plan_timeout_faults_remaining_channels(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        agent.handle_response(reply(75, bytes.fromhex("005d0a")))
        await settle()
        sink.send.reset_mock()

        clock.now += 5.1
        agent.tick()
        faults = sent_samples(sink)
        assert [s.chan for s in faults] == ["EAP"]

    def test_nine_timeouts_keep_polling(self, catalogue):
        agent, writer, clock = self._single_meter_agent(catalogue)
        for _ in range(9):
            clock.now += 6
            agent.tick()
        assert agent.state is AgentState.POLLING
        assert agent.registry.meter_by_address(75).errors == 9
        assert len(writer.frames) == 10

    def test_tenth_timeout_exits(self, catalogue):
        agent, writer, clock = self._single_meter_agent(catalogue)
        for _ in range(10):
            clock.now += 6
            agent.tick()
        assert agent.state is AgentState.EXITING
        assert agent.exit_code == ExitCode.TIMEOUT_THRESHOLD
        assert writer.closed

    def test_errors_counted_per_meter(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        for _ in range(12):
            clock.now += 6
            agent.tick()
        assert agent.state is AgentState.POLLING
        assert agent.registry.meter_by_address(75).errors == 6
        assert agent.registry.meter_by_address(76).errors == 6

    def _single_meter_agent(self, catalogue):
        devices = DevicesConfig(nodes=[NodeConfig(id="n1", addr=75, channels=[ChannelConfig(id="c1", chan="U1")])])
        clock = FakeClock()
        agent = PollingAgent(
            MeterRegistry(build_meter_list(devices, catalogue)), catalogue, Mock(spec=SampleSink),
            GatewayConfig(host="127.0.0.1", timeout_ms=5000), PollingConfig(max_timeouts=10), clock=clock,
        )
        writer = FakeWriter()
        agent._writer = writer
        agent.start_polling()
        return agent, writer, clock


class TestSuspendResume:
    """Test suspension during meter list rebuild"""

    @pytest.mark.asyncio
    async def test_responses_discarded_while_suspended(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.suspend()
        assert agent.state is AgentState.SUSPENDED

        agent.handle_response(reply(75, b"\x00"))
        await settle()
        sink.send.assert_not_called()
        assert not agent.waiting
        assert len(writer.frames) == 1

    def test_tick_ignored_while_suspended(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.suspend()
        clock.now += 60
        agent.tick()
        assert agent.registry.meter_by_address(75).errors == 0
        assert len(writer.frames) == 1

    def test_resume_restarts_on_next_tick(self, harness, catalogue):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.suspend()
        agent.handle_response(reply(75, b"\x00"))

        devices = DevicesConfig(nodes=[NodeConfig(id="n9", addr=80, channels=[ChannelConfig(id="c9", chan="F")])])
        agent.registry.replace(build_meter_list(devices, catalogue))
        agent.resume()
        assert agent.state is AgentState.POLLING
        assert len(writer.frames) == 1

        agent.tick()
        assert writer.frames[-1] == auth_frame(80)

    def test_restart_waits_for_outstanding_request(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.suspend()
        agent.resume()

        clock.now += 1
        agent.tick()
        assert len(writer.frames) == 1

        clock.now += 5
        agent.tick()
        assert writer.frames[-1] == auth_frame(75)
        assert agent.registry.meter_by_address(75).errors == 0

    @pytest.mark.asyncio
    async def test_stale_response_after_resume_discarded(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.handle_response(reply(75, b"\x00"))
        await settle()
        agent.suspend()
        agent.resume()
        agent.handle_response(reply(75, bytes.fromhex("005d0a")))
        await settle()
        sink.send.assert_not_called()


class TestLifecycle:
    """Test stop and connection handling"""

    def test_stop(self, harness):
        agent, writer, sink, clock = harness
        agent.start_polling()
        agent.stop(ExitCode.OK, "Terminated by signal")
        assert agent.state is AgentState.EXITING
        assert agent.exit_code == ExitCode.OK
        assert writer.closed
        agent.send_next()
        assert len(writer.frames) == 1

    def test_stop_keeps_first_exit_code(self, harness):
        agent, writer, sink, clock = harness
        agent.stop(ExitCode.TCP_DISCONNECT)
        agent.stop(ExitCode.OK)
        assert agent.exit_code == ExitCode.TCP_DISCONNECT

    @pytest.mark.asyncio
    async def test_connection_refused(self, catalogue):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()

        agent = PollingAgent(
            MeterRegistry(build_meter_list(two_meter_devices(), catalogue)), catalogue, Mock(spec=SampleSink),
            GatewayConfig(host="127.0.0.1", port=port, connect_timeout_secs=1.0),
            PollingConfig(exit_grace_ms=0),
        )
        assert await agent.run() == ExitCode.TCP_DISCONNECT
