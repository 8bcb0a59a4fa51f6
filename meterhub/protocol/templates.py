"""
Poll-template catalogue.

One entry per request that can be sent to a meter. Entries with a chan serve
exactly one channel; entries without a chan answer a group of channels of
their measurement class in one read (energy totals, array and float-group
reads).

Built once and shared by every meter; a meter's poll-plan refers to entries
by index.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional

from meterhub.protocol import decoders

# Auxiliary measurement mode register codes (RWRI), phase is added to the base
MEASURE_CODES = {
    "P": 0x00,
    "Q": 0x04,
    "S": 0x08,
    "U": 0x10,
    "I": 0x20,
    "cos": 0x30,
    "F": 0x40,
    "Kuf": 0x80,
}

READ_3BYTE = 0x11
READ_3BYTE_ARRAY = 0x14
READ_FLOAT = 0x1B
FLOAT_GROUP_MODE = 0x02
READ_TEMPERATURE = 0x01

ENERGY_SINCE_RESET = 0x00
ALL_TARIFFS = 0x00


@dataclass(frozen=True)
class PollTemplate:
    mclass: str
    payload: bytes
    decode: Callable
    chan: Optional[str] = None
    quantity: Optional[str] = None  # scaling key, defaults to mclass
    payload_size: int = 3  # answer bytes between address and CRC

    def __post_init__(self):
        if self.quantity is None:
            object.__setattr__(self, "quantity", self.mclass)

    @property
    def reply_length(self) -> int:
        return 1 + self.payload_size + 2

    @property
    def is_group(self) -> bool:
        return self.chan is None


def _rwri(mid: str, phase: int) -> int:
    if mid == "F":
        return MEASURE_CODES["F"]
    return MEASURE_CODES[mid] + phase


def _instant(mid: str, phases: List[int]) -> List[PollTemplate]:
    return [
        PollTemplate(
            mclass=mid,
            payload=bytes([0x08, READ_3BYTE, _rwri(mid, phase)]),
            decode=decoders.decode_3byte,
            chan=f"{mid}{phase}" if len(phases) > 1 else mid,
        )
        for phase in phases
    ]


def _energy() -> List[PollTemplate]:
    return [PollTemplate("E", bytes([0x05, ENERGY_SINCE_RESET, ALL_TARIFFS]), decoders.decode_energy,
                         payload_size=16)]


def _temperature() -> List[PollTemplate]:
    return [PollTemplate("T", bytes([0x08, READ_TEMPERATURE]), decoders.decode_uint16, chan="T", payload_size=2)]


def _array(mid: str) -> List[PollTemplate]:
    return [PollTemplate(f"{mid}A", bytes([0x08, READ_3BYTE_ARRAY, _rwri(mid, 0)]),
                         decoders.decode_3byte_array, quantity=mid, payload_size=16)]


def _float_group(mid: str) -> List[PollTemplate]:
    return [PollTemplate(f"{mid}G", bytes([0x08, READ_FLOAT, FLOAT_GROUP_MODE, MEASURE_CODES[mid]]),
                         decoders.decode_float_group, quantity=mid, payload_size=16)]


def build_catalogue() -> List[PollTemplate]:
    """
    Template list for one meter, in fixed order, e.g.
        P  08 11 00 -> P0, 08 11 01 -> P1, ...
        E  05 00 00 -> EAP, EAM, ERP, ERM (one request)
    """
    res: List[PollTemplate] = []
    for mid in ("P", "Q", "S"):
        res.extend(_instant(mid, [0, 1, 2, 3]))
    for mid in ("I", "U"):
        res.extend(_instant(mid, [1, 2, 3]))
    res.extend(_instant("F", [0]))
    res.extend(_energy())
    for mid in ("cos", "Kuf"):
        res.extend(_instant(mid, [0, 1, 2, 3]))
    res.extend(_temperature())
    for mid in ("P", "Q", "S"):
        res.extend(_array(mid))
    for mid in ("P", "Q", "S", "U", "I", "cos", "Kuf", "F"):
        res.extend(_float_group(mid))
    return res


def known_classes(catalogue: List[PollTemplate]) -> List[str]:
    """Distinct measurement classes, longest first so prefix matching prefers cos over c."""
    return sorted({t.mclass for t in catalogue}, key=len, reverse=True)


def measurement_class(chan: str, catalogue: List[PollTemplate]) -> Optional[str]:
    for mclass in known_classes(catalogue):
        if chan.startswith(mclass):
            return mclass
    return None


def find_template(chan: str, catalogue: List[PollTemplate]) -> Optional[int]:
    """Exact channel-key match first, then a group template of the channel's class."""
    for idx, template in enumerate(catalogue):
        if template.chan == chan:
            return idx
    mclass = measurement_class(chan, catalogue)
    if mclass is None:
        return None
    for idx, template in enumerate(catalogue):
        if template.is_group and template.mclass == mclass:
            return idx
    return None


def channels_served(template: PollTemplate, chans) -> List:
    """Channels of a meter that a template answers: its own key, or every channel of its class."""
    if template.chan:
        return [chans[template.chan]] if template.chan in chans else []
    return [ch for ch in chans.values() if ch.mclass == template.mclass]
