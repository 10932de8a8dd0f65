"""Allocation of per-host subnets out of cluster network CIDRs."""

from __future__ import annotations

import ipaddress
import threading
from typing import Optional, Union

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class SubnetAllocatorError(ValueError):
    """Raised for invalid networks or subnets outside every known range."""


class SubnetAllocatorFullError(SubnetAllocatorError):
    """Raised when no subnets are available."""

    def __init__(self) -> None:
        super().__init__("no subnets available.")


def _parse_cidr(cidr: str) -> Network:
    try:
        return ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise SubnetAllocatorError(f"invalid CIDR address: {cidr}") from exc


class SubnetRange:
    """Allocates subnets of a fixed host size out of a single CIDR."""

    def __init__(self, network: Network, host_bits: int) -> None:
        addr_len = network.max_prefixlen
        available = addr_len - network.prefixlen
        if host_bits == 0:
            raise SubnetAllocatorError("host capacity cannot be zero.")
        if host_bits > available:
            raise SubnetAllocatorError(
                "subnet capacity cannot be larger than number of networks available."
            )
        self.network = network
        self.host_bits = host_bits
        self.subnet_bits = available - host_bits
        self.next = 0
        self._allocated: set[str] = set()

        # For IPv4, when the subnet part spills into the octet shared with the
        # host part, rotate subnet numbers so subnets with all zeros in that
        # octet are handed out first (e.g. 10.1.0.0/26, 10.1.1.0/26, ... before
        # 10.1.0.64/26).
        self._left_shift = 0
        self._left_mask = 0
        self._right_shift = 0
        self._right_mask = 0
        if (
            addr_len == 32
            and host_bits % 8 != 0
            and (host_bits - 1) // 8 != (host_bits + self.subnet_bits - 1) // 8
        ):
            self._left_shift = 8 - (host_bits % 8)
            self._left_mask = (1 << self.subnet_bits) - 1
            self._right_shift = self.subnet_bits - self._left_shift
            self._right_mask = (1 << self._left_shift) - 1

    def mark_allocated(self, network: Network) -> bool:
        """Mark ``network`` as used if it is in this range; return whether it is."""
        key = str(network)
        if network.network_address in self.network:
            self._allocated.add(key)
        return key in self._allocated

    def allocate(self) -> Optional[Network]:
        """Return a newly allocated subnet, or None if the range is full."""
        addr_len = self.network.max_prefixlen
        # Cap at 16M subnets so the subnet arithmetic stays bounded.
        num_subnets = 1 << min(self.subnet_bits, 24)
        prefix = self.network.prefixlen + self.subnet_bits
        net_int = int(self.network.network_address)
        network_type = type(self.network)

        for i in range(num_subnets):
            n = (i + self.next) % num_subnets
            base = n
            if self._left_shift:
                base = ((base << self._left_shift) & self._left_mask) | (
                    (base >> self._right_shift) & self._right_mask
                )
            elif addr_len == 128 and self.subnet_bits >= 16:
                # Skip subnets whose low word is zero; it would be compressed out
                # and make the address look unlike its neighbours.
                if base & 0xFFFF == 0:
                    continue

            candidate = network_type((net_int | (base << self.host_bits), prefix))
            key = str(candidate)
            if key not in self._allocated:
                self._allocated.add(key)
                self.next = n + 1
                return candidate

        self.next = 0
        return None

    def release(self, network: Network) -> bool:
        """Mark ``network`` as free if it is in this range; return whether it is."""
        if network.network_address not in self.network:
            return False
        self._allocated.discard(str(network))
        return True


class SubnetAllocator:
    """Thread-safe allocator of host subnets across several cluster ranges."""

    def __init__(self) -> None:
        self.ranges: list[SubnetRange] = []
        self._lock = threading.Lock()

    def add_network_range(self, network: str, host_bits: int) -> None:
        """Add the CIDR ``network`` split into subnets of ``host_bits`` host bits."""
        with self._lock:
            self.ranges.append(SubnetRange(_parse_cidr(network), host_bits))

    def mark_allocated_network(self, subnet: str) -> None:
        """Record ``subnet`` as already in use."""
        with self._lock:
            parsed = _parse_cidr(subnet)
            if not any(r.mark_allocated(parsed) for r in self.ranges):
                raise SubnetAllocatorError(
                    f"network {subnet} does not belong to any known range"
                )

    def allocate_network(self) -> str:
        """Allocate and return the next free subnet as a CIDR string."""
        with self._lock:
            for subnet_range in self.ranges:
                subnet = subnet_range.allocate()
                if subnet is not None:
                    return str(subnet)
            raise SubnetAllocatorFullError()

    def release_network(self, subnet: str) -> None:
        """Return ``subnet`` to the pool."""
        with self._lock:
            parsed = _parse_cidr(subnet)
            if not any(r.release(parsed) for r in self.ranges):
                raise SubnetAllocatorError(
                    f"network {subnet} does not belong to any known range"
                )