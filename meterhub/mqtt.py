import json
from typing import Any, Dict, Callable, Optional
from paho.mqtt import client as mqtt
import logging
log = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


class Mqtt:
    """
    paho-mqtt client wrapper. Publishes samples, keeps subscriptions across
    reconnects and maintains a retained availability topic <base_topic>/status.
    """

    def __init__(self, cfg, client: Optional[Any] = None):
        self.cfg = cfg
        self.status_topic = f"{cfg.base_topic.rstrip('/')}/status"
        self._handlers: Dict[str, Callable] = {}
        self.cli = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=cfg.client_id, clean_session=True)
        if cfg.username:
            self.cli.username_pw_set(cfg.username, cfg.password or "")
        self.cli.will_set(self.status_topic, STATUS_OFFLINE, qos=0, retain=True)
        self.cli.on_connect = self._on_connect
        self.cli.on_disconnect = self._on_disconnect
        self.cli.connect_async(cfg.host, cfg.port, keepalive=30)
        self.cli.loop_start()

    def _on_connect(self, _cli, _ud, _flags, reason_code, _props=None):
        log.info(f"MQTT connected to {self.cfg.host}:{self.cfg.port} ({reason_code})")
        self.cli.publish(self.status_topic, STATUS_ONLINE, qos=0, retain=True)
        # clean session: the broker forgot our subscriptions
        for topic in self._handlers:
            self.cli.subscribe(topic, qos=0)

    def _on_disconnect(self, _cli, _ud, _flags, reason_code, _props=None):
        log.warning(f"MQTT disconnected from {self.cfg.host}:{self.cfg.port} ({reason_code})")

    def pub(self, topic: str, payload: Dict[str, Any], retain: bool = False):
        try:
            p = json.dumps(payload, separators=(",", ":"), default=str)
            log.debug("MQTT PUB %s %s", topic, p)
            self.cli.publish(topic, p, qos=0, retain=retain)
        except Exception as e:
            log.error(f"Failed to publish MQTT message to {topic}: {e}", exc_info=True)
            raise

    def sub(self, topic: str, handler: Callable[[str, Any], None]):
        """Handler gets the decoded JSON payload, or the raw text when it is not JSON."""
        def on_message(_cli, _ud, msg):
            text = msg.payload.decode(errors="replace")
            try:
                data = json.loads(text)
            except ValueError:
                data = text
            handler(msg.topic, data)
        self._handlers[topic] = on_message
        self.cli.subscribe(topic, qos=0)
        self.cli.message_callback_add(topic, on_message)

    def disconnect(self):
        self.cli.publish(self.status_topic, STATUS_OFFLINE, qos=0, retain=True)
        self.cli.loop_stop()
        self.cli.disconnect()
