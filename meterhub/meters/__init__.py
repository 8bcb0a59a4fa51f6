from meterhub.meters.builder import build_meter_list
from meterhub.meters.registry import MeterRegistry

__all__ = ["build_meter_list", "MeterRegistry"]
