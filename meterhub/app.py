import asyncio
import logging
import sys
from typing import List, Optional

from meterhub.agent import PollingAgent
from meterhub.config import HubConfig
from meterhub.config_manager import ConfigurationManager
from meterhub.errors import ConfigurationError, ExitCode
from meterhub.meters import MeterRegistry, build_meter_list
from meterhub.models import Meter
from meterhub.mqtt import Mqtt
from meterhub.protocol import build_catalogue
from meterhub.sinks import LogSink, MqttSink, SampleSink

log = logging.getLogger(__name__)

RELOAD_TOPIC_SUFFIX = "config/reload"


class MeterHubApp:
    """Wires configuration, meter registry, sink and polling agent together."""

    def __init__(self, cfg: HubConfig, config_manager: Optional[ConfigurationManager] = None,
                 sink: Optional[SampleSink] = None):
        self.cfg = cfg
        self.config_manager = config_manager
        self._configure_logging()

        self.catalogue = build_catalogue()
        meters = self._build_meters(cfg)
        if not meters:
            raise ConfigurationError("No meters available, check devices configuration")
        self.registry = MeterRegistry(meters)

        self.mqtt: Optional[Mqtt] = None
        if sink is None:
            if cfg.mqtt:
                self.mqtt = Mqtt(cfg.mqtt)
                sink = MqttSink(self.mqtt, cfg.mqtt.base_topic)
            else:
                sink = LogSink()
        self.sink = sink

        self.agent = PollingAgent(self.registry, self.catalogue, self.sink, cfg.gateway, cfg.polling)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._reload_lock: Optional[asyncio.Lock] = None

    def _configure_logging(self):
        """Configure logging based on config settings."""
        log_config = self.cfg.logging
        root_logger = logging.getLogger()
        log_level = getattr(logging, log_config.level.upper())
        # Frame trace is opt-in, even at DEBUG level
        frames_level = logging.DEBUG if log_config.trace_frames else max(log_level, logging.INFO)
        root_logger.setLevel(min(log_level, frames_level))

        if not root_logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(logging.Formatter(log_config.format))
            root_logger.addHandler(console_handler)

        logging.getLogger("meterhub").setLevel(log_level)
        logging.getLogger("meterhub.frames").setLevel(frames_level)

    def _build_meters(self, cfg: HubConfig) -> List[Meter]:
        meters = build_meter_list(cfg.devices, self.catalogue)
        for m in meters:
            log.info(f"Meter {m.name}: address {m.addr}, {len(m.chans)} channels, {len(m.polls)} requests per sweep")
        return meters

    async def run(self) -> int:
        self._loop = asyncio.get_running_loop()
        self._reload_lock = asyncio.Lock()
        log.info(f"Starting meter polling: {len(self.registry)} meters, "
                 f"gateway {self.cfg.gateway.host}:{self.cfg.gateway.port}")

        if self.config_manager is not None:
            self._watch_task = asyncio.create_task(
                self.config_manager.watch(self.on_config_changed, self.cfg.polling.watch_secs)
            )
        if self.mqtt is not None:
            topic = f"{self.cfg.mqtt.base_topic.rstrip('/')}/{RELOAD_TOPIC_SUFFIX}"
            self.mqtt.sub(topic, self._on_reload_message)
            log.info(f"Listening for reload commands on {topic}")

        try:
            code = await self.agent.run()
        finally:
            if self._watch_task:
                self._watch_task.cancel()
                await asyncio.gather(self._watch_task, return_exceptions=True)
            self.sink.close()
        log.info(f"Meter polling finished with exit code {int(code)}")
        return int(code)

    def stop(self, code: ExitCode = ExitCode.OK, message: str = "Terminated by signal"):
        self.agent.stop(code, message)

    def _on_reload_message(self, topic: str, _payload):
        # paho network thread
        log.info(f"Reload requested via {topic}")
        if self._loop is not None:
            fut = asyncio.run_coroutine_threadsafe(self.on_config_changed(), self._loop)
            fut.add_done_callback(self._on_reload_done)

    @staticmethod
    def _on_reload_done(fut):
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.error(f"Configuration reload failed: {exc}", exc_info=exc)

    async def on_config_changed(self):
        """Suspend polling, rebuild the meter list from the configuration, then resume."""
        if self.config_manager is None:
            log.warning("Configuration change ignored, no configuration file in use")
            return
        if self._reload_lock is None:
            self._reload_lock = asyncio.Lock()
        async with self._reload_lock:
            self.agent.suspend()
            try:
                cfg = self.config_manager.reload_config()
            except ConfigurationError as e:
                log.error(f"Configuration reload failed, keeping the current meter list: {e}")
                self.agent.resume()
                return

            meters = self._build_meters(cfg)
            if not meters:
                self.agent.stop(ExitCode.NO_METERS, "No meters available after configuration change")
                return
            self.cfg = cfg
            self.registry.replace(meters)
            log.info(f"Meter list rebuilt: {len(meters)} meters")
            self.agent.resume()
