import logging
from typing import Dict, List, Optional

from meterhub.models import Meter

log = logging.getLogger(__name__)


class MeterRegistry:
    """
    Ordered meter list, address index and the current-meter cursor.

    The list is replaced wholesale after every configuration change. Cursor,
    countdowns and error counters are only touched by the polling agent.
    """

    def __init__(self, meters: Optional[List[Meter]] = None):
        self.meters: List[Meter] = []
        self._by_addr: Dict[int, int] = {}
        self.current = 0
        if meters:
            self.replace(meters)

    def replace(self, meters: List[Meter]) -> None:
        by_addr = {}
        for idx, meter in enumerate(meters):
            if meter.addr in by_addr:
                raise ValueError(f"Duplicate meter address {meter.addr}")
            by_addr[meter.addr] = idx
        self.meters = list(meters)
        self._by_addr = by_addr
        self.current = 0
        log.debug(f"Meter registry replaced: {len(self.meters)} meters")

    def is_empty(self) -> bool:
        return not self.meters

    def __len__(self) -> int:
        return len(self.meters)

    def first_meter(self) -> Meter:
        self.current = 0
        meter = self.meters[0]
        meter.poll_idx = -1
        return meter

    def next_meter(self) -> Meter:
        self.current = self.current + 1 if self.current + 1 < len(self.meters) else 0
        meter = self.meters[self.current]
        meter.poll_idx = -1
        return meter

    def current_meter(self) -> Optional[Meter]:
        if 0 <= self.current < len(self.meters):
            return self.meters[self.current]
        return None

    def meter_by_address(self, addr: int) -> Optional[Meter]:
        idx = self._by_addr.get(addr)
        return self.meters[idx] if idx is not None else None

    def next_due_poll_index(self) -> Optional[int]:
        """
        Advance the current meter to its next due poll-plan entry.

        An entry is due when its countdown is <= 1; a due entry with a factor
        above 1 is re-armed with that factor. Entries passed over count down by
        one. Returns the template index of the due entry, or None at the end of
        the plan (move on to the next meter).
        """
        meter = self.current_meter()
        if meter is None:
            return None
        next_idx = meter.poll_idx + 1
        while next_idx < len(meter.polls):
            entry = meter.polls[next_idx]
            if entry.countdown <= 1:
                if entry.poll_factor > 1:
                    entry.countdown = entry.poll_factor
                meter.poll_idx = next_idx
                return entry.template_index
            entry.countdown = max(0, entry.countdown - 1)
            next_idx += 1
        return None

    @staticmethod
    def current_template_index(meter: Meter) -> Optional[int]:
        if meter is not None and 0 <= meter.poll_idx < len(meter.polls):
            return meter.polls[meter.poll_idx].template_index
        return None
