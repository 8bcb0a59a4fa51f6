"""
Sample sinks. The agent hands every batch of samples, normal and fault, to
one sink through send().
"""
from abc import ABC, abstractmethod
import logging
import re
from typing import List

from meterhub.models import Sample

log = logging.getLogger(__name__)


class SampleSink(ABC):
    @abstractmethod
    def send(self, samples: List[Sample]) -> None: ...

    def close(self) -> None:
        pass


class LogSink(SampleSink):
    """Writes samples to the log. Used when no MQTT broker is configured."""

    def send(self, samples: List[Sample]) -> None:
        for s in samples:
            if s.is_fault:
                log.info(f"{s.parentname} {s.chan} ({s.id}): no answer, chstatus={s.chstatus}")
            else:
                log.info(f"{s.parentname} {s.chan} ({s.id}) = {s.value}")


class MqttSink(SampleSink):
    """Publishes every sample as JSON to <base_topic>/<meter>/<chan>."""

    def __init__(self, mqtt, base_topic: str):
        self.mqtt = mqtt
        self.base_topic = base_topic.rstrip("/")

    @staticmethod
    def _topic_part(text: str) -> str:
        return re.sub(r"[^A-Za-z0-9_\-]+", "_", text.strip()).strip("_").lower() or "meter"

    def topic_for(self, sample: Sample) -> str:
        return f"{self.base_topic}/{self._topic_part(sample.parentname)}/{sample.chan}"

    def send(self, samples: List[Sample]) -> None:
        for s in samples:
            try:
                self.mqtt.pub(self.topic_for(s), s.to_dict())
            except Exception as e:
                log.warning(f"Sample {s.chan} of {s.parentname} not published: {e}")

    def close(self) -> None:
        self.mqtt.disconnect()
