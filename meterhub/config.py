from typing import Optional, List, Union, Iterator
from pydantic import BaseModel, Field, field_validator

from meterhub.models import DEFAULT_PASSWORD


class GatewayConfig(BaseModel):
    """RS485-to-TCP gateway the meters hang off."""
    host: str
    port: int = 4001
    timeout_ms: int = Field(ge=100, default=5000)  # response deadline, checked on the supervisory tick
    poll_delay_ms: int = Field(ge=0, default=200)  # pause between a response and the next request
    connect_timeout_secs: float = 5.0


class PollingConfig(BaseModel):
    tick_secs: float = Field(gt=0, default=1.0)
    max_timeouts: int = Field(ge=1, default=10)  # consecutive timeouts before the agent gives up
    exit_grace_ms: int = Field(ge=0, default=300)
    watch_secs: float = Field(gt=0, default=5.0)  # config file change check interval


class MqttConfig(BaseModel):
    host: str
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    base_topic: str = "meters/fleet"
    client_id: str = "meter-hub"


class LoggingConfig(BaseModel):
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    trace_frames: bool = False  # log every request/response frame in hex


class ChannelConfig(BaseModel):
    id: str
    chan: str  # channel key, e.g. "I1", "EAP"
    parent: Optional[str] = None  # node id; filled in for channels nested under a node
    enabled: bool = True
    poll_factor: int = Field(ge=1, default=1)  # poll every N-th sweep
    order: int = 0


class NodeConfig(BaseModel):
    """One meter (node) with its calibration and optionally its channels."""
    id: str
    name: Optional[str] = None
    addr: Optional[int] = Field(default=None, ge=0, le=255)
    kti: float = Field(gt=0, default=1.0)
    ktu: float = Field(gt=0, default=1.0)
    ks: float = Field(gt=0, default=1.0)
    constant: int = Field(gt=0, default=1250)
    # Six digits ("111111") or six byte values
    password: Optional[Union[str, List[int]]] = None
    channels: List[ChannelConfig] = []

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            if len(v) != 6 or not v.isdigit():
                raise ValueError("password must be exactly 6 digits")
        else:
            if len(v) != 6 or any(b < 0 or b > 255 for b in v):
                raise ValueError("password must be 6 byte values (0-255)")
        return v

    def password_bytes(self) -> bytes:
        if not self.password:
            return DEFAULT_PASSWORD
        if isinstance(self.password, str):
            return bytes(int(ch) for ch in self.password)
        return bytes(self.password)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class DevicesConfig(BaseModel):
    """
    Device description: nodes (meters) and channels.

    Channels may be nested under their node or listed flat with a parent
    reference; both forms can be mixed.
    """
    nodes: List[NodeConfig] = []
    channels: List[ChannelConfig] = []

    def iter_channels(self) -> Iterator[ChannelConfig]:
        for node in self.nodes:
            for ch in node.channels:
                yield ch if ch.parent else ch.model_copy(update={"parent": node.id})
        yield from self.channels


class HubConfig(BaseModel):
    gateway: GatewayConfig
    polling: PollingConfig = PollingConfig()
    mqtt: Optional[MqttConfig] = None
    logging: LoggingConfig = LoggingConfig()
    # Separate YAML file holding the `devices` section; watched for changes
    devices_file: Optional[str] = None
    devices: DevicesConfig = DevicesConfig()
