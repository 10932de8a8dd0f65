"""Egress IP packet marks and liveness monitoring of remote egress nodes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
REPOLL_INTERVAL = 1.0
MAX_RETRIES = 2

_UINT32 = 0xFFFFFFFF
_MAX_LABEL_LEN = 15


def get_mark_for_vnid(vnid: int, masquerade_bit: int) -> str:
    """Return a hex packet mark for ``vnid``.

    The mark is never 0, never has ``masquerade_bit`` set, and differs from
    the mark of every other valid VNID.
    """
    vnid &= _UINT32
    masquerade_bit &= _UINT32
    if vnid == 0:
        vnid = 0xFF000000
    if vnid & masquerade_bit:
        vnid = ((vnid | 0x01000000) ^ masquerade_bit) & _UINT32
    return f"0x{vnid:08x}"


def egress_ip_label(link_name: str) -> str:
    """Return the address label used for egress IPs on ``link_name``.

    A label must start with the link name plus ":" and be at most 15
    characters long; a ValueError is raised when the link name is too long.
    """
    label = f"{link_name}:eip"
    if len(label) > _MAX_LABEL_LEN:
        raise ValueError(f"link name {link_name!r} is too long")
    return label


@dataclass
class EgressNode:
    """A remote node hosting egress IPs whose reachability is watched."""

    node_ip: str
    offline: bool = False
    egress_ips: set[str] = field(default_factory=set)
    retries: int = 0


PingFunc = Callable[[str, float], bool]
OfflineCallback = Callable[[str, bool], None]


class NodeMonitor:
    """Tracks remote egress nodes and decides which ones are offline.

    ``ping(node_ip, timeout)`` reports whether a node answers. When
    ``background`` is true, a polling thread runs while at least one node is
    monitored and reports each change through ``set_node_offline``.
    """

    def __init__(
        self,
        ping: PingFunc,
        set_node_offline: Optional[OfflineCallback] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        repoll_interval: float = REPOLL_INTERVAL,
        background: bool = True,
    ) -> None:
        self.ping = ping
        self.set_node_offline = set_node_offline
        self.poll_interval = poll_interval
        self.repoll_interval = repoll_interval
        self.background = background
        self._nodes: dict[str, EgressNode] = {}
        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None

    def add_egress_ip(self, node_ip: str, egress_ip: str) -> None:
        """Start (or keep) monitoring ``node_ip`` because it hosts ``egress_ip``."""
        with self._lock:
            node = self._nodes.get(node_ip)
            if node is not None:
                node.egress_ips.add(egress_ip)
                return
            logger.debug("Monitoring node %s", node_ip)
            self._nodes[node_ip] = EgressNode(node_ip=node_ip, egress_ips={egress_ip})
            if len(self._nodes) == 1 and self.background:
                self._stop = threading.Event()
                threading.Thread(
                    target=self._poll_loop, args=(self._stop,), daemon=True
                ).start()

    def remove_egress_ip(self, node_ip: str, egress_ip: str) -> None:
        """Drop ``egress_ip`` from ``node_ip``; stop monitoring it once it has none."""
        with self._lock:
            node = self._nodes.get(node_ip)
            if node is None:
                return
            node.egress_ips.discard(egress_ip)
            if node.egress_ips:
                return
            logger.debug("Unmonitoring node %s", node_ip)
            del self._nodes[node_ip]
            if not self._nodes and self._stop is not None:
                self._stop.set()
                self._stop = None

    def monitored_nodes(self) -> dict[str, frozenset[str]]:
        """Return the monitored node IPs with the egress IPs each one hosts."""
        with self._lock:
            return {ip: frozenset(node.egress_ips) for ip, node in self._nodes.items()}

    def offline_result(self, retrying: bool) -> tuple[dict[str, bool], bool]:
        """Ping the monitored nodes once.

        Returns a mapping of node IP to its new offline state for every node
        whose state changed, and whether a quick retry is needed. When
        ``retrying`` is true only nodes already being retried are pinged.
        """
        timeout = self.repoll_interval if retrying else self.poll_interval
        need_retry = False
        result: dict[str, bool] = {}
        with self._lock:
            for node in self._nodes.values():
                if retrying and node.retries == 0:
                    continue
                online = self.ping(node.node_ip, timeout)
                if node.offline and online:
                    logger.info("Node %s is back online", node.node_ip)
                    node.offline = False
                    result[node.node_ip] = False
                elif not node.offline and not online:
                    node.retries += 1
                    if node.retries > MAX_RETRIES:
                        logger.warning("Node %s is offline", node.node_ip)
                        node.retries = 0
                        node.offline = True
                        result[node.node_ip] = True
                    else:
                        logger.debug("Node %s may be offline... retrying", node.node_ip)
                        need_retry = True
        return result, need_retry

    def _check(self, retrying: bool) -> bool:
        result, need_retry = self.offline_result(retrying)
        if self.set_node_offline is not None:
            for node_ip, offline in result.items():
                self.set_node_offline(node_ip, offline)
        return need_retry

    def _poll_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.poll_interval):
            retry = self._check(False)
            while retry and not stop.wait(self.repoll_interval):
                retry = self._check(True)