"""Node-level SDN metrics: OVS flows, ARP cache headroom, pod IPs and operation counts."""

from __future__ import annotations

import ipaddress
import logging
import os
import time
from collections import Counter
from typing import Optional

logger = logging.getLogger(__name__)

HOST_LOCAL_DATA_DIR = "/var/lib/cni/networks"
POD_IP_DATA_DIR = HOST_LOCAL_DATA_DIR + "/openshift-sdn/"
ARP_TABLE_PATH = "/proc/net/arp"
ARP_GC_THRESH_PATH = "/proc/sys/net/ipv4/neigh/default/gc_thresh2"

SDN_NAMESPACE = "openshift"
SDN_SUBSYSTEM = "sdn"

OVS_FLOWS_KEY = "ovs_flows"
OVS_OPERATIONS_KEY = "ovs_operations"
ARP_CACHE_AVAILABLE_ENTRIES_KEY = "arp_cache_entries"
POD_IPS_KEY = "pod_ips"
POD_OPERATIONS_ERRORS_KEY = "pod_operations_errors"
POD_OPERATIONS_LATENCY_KEY = "pod_operations_latency"
VNID_NOT_FOUND_ERRORS_KEY = "vnid_not_found_errors"

# OVS operation result types
OVS_OPERATION_SUCCESS = "success"
OVS_OPERATION_FAILURE = "failure"
# Pod operation types
POD_OPERATION_SETUP = "setup"
POD_OPERATION_TEARDOWN = "teardown"


def metric_name(key: str) -> str:
    """Return the fully qualified metric name for ``key``."""
    return f"{SDN_NAMESPACE}_{SDN_SUBSYSTEM}_{key}"


def _is_ip(name: str) -> bool:
    if "%" in name:
        return False
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return False
    return True


class NodeMetrics:
    """In-process store of the node's SDN metrics.

    Gauges are plain float attributes; counters are :class:`collections.Counter`
    objects keyed by their label value; latencies are lists of observations in
    microseconds keyed by operation type.
    """

    def __init__(
        self,
        arp_path: str = ARP_TABLE_PATH,
        gc_thresh_path: str = ARP_GC_THRESH_PATH,
        pod_ip_dir: str = POD_IP_DATA_DIR,
    ) -> None:
        self.arp_path = arp_path
        self.gc_thresh_path = gc_thresh_path
        self.pod_ip_dir = pod_ip_dir

        self.ovs_flows = 0.0
        self.arp_cache_available_entries = 0.0
        self.pod_ips = 0.0
        self.vnid_not_found_errors = 0
        self.ovs_operations: Counter[str] = Counter()
        self.pod_operations_errors: Counter[str] = Counter()
        self.pod_operations_latency: dict[str, list[float]] = {}

    def update_arp_metrics(
        self, arp_path: Optional[str] = None, gc_thresh_path: Optional[str] = None
    ) -> None:
        """Set the number of ARP cache entries left before garbage collection starts."""
        arp_path = arp_path or self.arp_path
        gc_thresh_path = gc_thresh_path or self.gc_thresh_path

        try:
            with open(arp_path, encoding="utf-8", errors="replace") as handle:
                data = handle.read()
        except OSError as exc:
            logger.error("failed to read ARP entries for metrics: %s", exc)
            return
        # Skip the header line
        used = len(data.split("\n")) - 1

        # gc_thresh2 isn't the absolute max, but it's where garbage collection
        # (and thus problems) could start.
        try:
            with open(gc_thresh_path, encoding="utf-8", errors="replace") as handle:
                thresh = handle.read()
        except FileNotFoundError:
            # gc_thresh* may not exist in some cases; don't log an error
            return
        except OSError as exc:
            logger.error(
                "failed to read max ARP entries for metrics: %s %s",
                type(exc).__name__,
                exc,
            )
            return

        try:
            maximum = int(thresh.strip())
        except ValueError as exc:
            logger.error(
                "failed to parse max ARP entries %r for metrics: %s", thresh, exc
            )
            return
        self.arp_cache_available_entries = float(max(maximum - used, 0))

    def update_pod_ip_metrics(self, data_dir: Optional[str] = None) -> None:
        """Set the number of pod IPs allocated by the host-local IPAM store."""
        data_dir = data_dir or self.pod_ip_dir
        try:
            names = os.listdir(data_dir)
        except FileNotFoundError:
            # No pods started yet
            return
        except OSError as exc:
            logger.error("failed to read pod IPs for metrics: %s", exc)
            names = []
        self.pod_ips = float(sum(1 for name in names if _is_ip(name)))

    def gather_periodic(self) -> None:
        """Refresh the metrics that are sampled periodically."""
        self.update_arp_metrics()
        self.update_pod_ip_metrics()


def since_in_microseconds(start: float) -> float:
    """Return whole microseconds elapsed since the ``time.monotonic()`` value ``start``."""
    return float(int((time.monotonic() - start) * 1_000_000))