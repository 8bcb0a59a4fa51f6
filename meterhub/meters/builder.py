"""
Meter-list builder.

Joins channels to their nodes and produces the meter list:

    Meter(addr=75, name="Feeder 1",
          polls=[PollPlanEntry(template_index=13, poll_factor=10),   # I1
                 PollPlanEntry(template_index=20, poll_factor=1)],   # E, serves EAP/EAM/ERP/ERM
          chans={"I1": Channel(...), "EAP": Channel(...), ...},
          poll_idx=-1)

Only enabled channels are included. Channels answered by one group request
share a single poll-plan entry whose factor is the smallest of theirs.
"""
import logging
from typing import Dict, List

from meterhub.config import ChannelConfig, DevicesConfig, NodeConfig
from meterhub.models import Calibration, Channel, Meter, PollPlanEntry
from meterhub.protocol.templates import PollTemplate, find_template, measurement_class

log = logging.getLogger(__name__)


def build_meter_list(devices: DevicesConfig, catalogue: List[PollTemplate]) -> List[Meter]:
    nodes: Dict[str, NodeConfig] = {}
    channels: Dict[str, List[ChannelConfig]] = {}
    used_addrs = set()

    # Collect nodes
    for node in devices.nodes:
        if node.addr is None:
            log.warning(f"{node.display_name}: meter address is missing, node is not added to the meter list")
            continue
        if node.addr in used_addrs:
            log.warning(f"{node.display_name}: address {node.addr} is already used by another meter, node skipped")
            continue
        if node.id in nodes:
            log.warning(f"{node.display_name}: duplicate node id {node.id}, node skipped")
            continue
        used_addrs.add(node.addr)
        nodes[node.id] = node
        channels[node.id] = []

    # Collect channels to poll
    for ch in devices.iter_channels():
        if ch.parent not in nodes:
            log.warning(f"No meter node for channel {ch.id} ({ch.chan}, parent={ch.parent}), skipped")
        elif ch.enabled:
            channels[ch.parent].append(ch)

    meters = []
    for node_id, node in nodes.items():
        chan_list = sorted(channels[node_id], key=lambda c: c.order)
        meters.append(Meter(
            addr=node.addr,
            name=node.display_name,
            calibration=Calibration(kti=node.kti, ktu=node.ktu, ks=node.ks, constant=node.constant),
            password=node.password_bytes(),
            polls=_form_polls(node, chan_list, catalogue),
            chans=_form_chans(node, chan_list, catalogue),
        ))
    return meters


def _form_chans(node: NodeConfig, chan_list: List[ChannelConfig], catalogue: List[PollTemplate]) -> Dict[str, Channel]:
    res: Dict[str, Channel] = {}
    for ch in chan_list:
        if ch.chan in res:
            log.warning(f"{node.display_name}: channel key {ch.chan} is declared twice, keeping the first")
            continue
        res[ch.chan] = Channel(
            id=ch.id,
            chan=ch.chan,
            mclass=measurement_class(ch.chan, catalogue) or ch.chan[:1],
            enabled=ch.enabled,
            poll_factor=ch.poll_factor,
            order=ch.order,
        )
    return res


def _form_polls(node: NodeConfig, chan_list: List[ChannelConfig], catalogue: List[PollTemplate]) -> List[PollPlanEntry]:
    res: List[PollPlanEntry] = []
    by_template: Dict[int, PollPlanEntry] = {}
    seen = set()
    for ch in chan_list:
        if ch.chan in seen:
            continue
        seen.add(ch.chan)
        idx = find_template(ch.chan, catalogue)
        if idx is None:
            log.warning(f"{node.display_name}: no polling rule for channel {ch.chan}, it will not be polled")
            continue
        entry = by_template.get(idx)
        if entry is None:
            entry = PollPlanEntry(template_index=idx, poll_factor=ch.poll_factor, countdown=0)
            by_template[idx] = entry
            res.append(entry)
        else:
            # Group request already planned for an earlier channel
            entry.poll_factor = min(entry.poll_factor, ch.poll_factor)
    return res
