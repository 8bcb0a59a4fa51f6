from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

DEFAULT_PASSWORD = bytes([1, 1, 1, 1, 1, 1])


class Reading(NamedTuple):
    """One decoded value. value=None is the explicit "no value" marker."""
    chan: str
    value: Optional[float]


@dataclass
class Calibration:
    kti: float = 1.0   # current transformer ratio
    ktu: float = 1.0   # voltage transformer ratio
    ks: float = 1.0    # power coefficient, depends on Inom/Unom
    constant: int = 1250  # pulses per kWh

    @property
    def kt(self) -> float:
        """Energy coefficient = kti*ktu / (2*constant)."""
        return (self.kti * self.ktu) / (2 * self.constant)


@dataclass
class Channel:
    id: str
    chan: str
    mclass: str
    enabled: bool = True
    poll_factor: int = 1
    order: int = 0


@dataclass
class PollPlanEntry:
    template_index: int
    poll_factor: int = 1
    countdown: int = 0


@dataclass
class Meter:
    addr: int
    name: str
    calibration: Calibration = field(default_factory=Calibration)
    password: bytes = DEFAULT_PASSWORD
    polls: List[PollPlanEntry] = field(default_factory=list)
    chans: Dict[str, Channel] = field(default_factory=dict)
    poll_idx: int = -1
    errors: int = 0

    def __repr__(self) -> str:
        return f"Meter(addr={self.addr}, name={self.name}, polls={len(self.polls)}, chans={len(self.chans)})"


@dataclass
class Sample:
    id: str
    chan: str
    ts: int
    parentname: str
    value: Optional[float] = None
    chstatus: Optional[int] = None

    @property
    def is_fault(self) -> bool:
        return bool(self.chstatus)

    def to_dict(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {"id": self.id, "chan": self.chan, "ts": self.ts, "parentname": self.parentname}
        if self.is_fault:
            res["chstatus"] = self.chstatus
        else:
            res["value"] = self.value
        return res
