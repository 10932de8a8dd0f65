"""VXLAN network identifier (VNID) ranges and an in-memory VNID allocator."""

from __future__ import annotations

import threading
from dataclasses import dataclass

# Maximum VXLAN Virtual Network Identifier as per RFC 7348.
MAX_VNID = (1 << 24) - 1
# VNIDs 2 to 9 are reserved for future special cases.
MIN_VNID = 10
# VNID 0 belongs to the default namespace and can reach any network in the cluster.
GLOBAL_VNID = 0


class NetIDError(Exception):
    """Base class for netid allocation errors."""


class RangeFullError(NetIDError):
    """Raised when no netids are left in the range."""

    def __init__(self) -> None:
        super().__init__("range is full")


class NotInRangeError(NetIDError):
    """Raised when a netid lies outside the allocator's range."""

    def __init__(self) -> None:
        super().__init__("provided netid is not in the valid range")


class AlreadyAllocatedError(NetIDError):
    """Raised when a netid has already been reserved."""

    def __init__(self) -> None:
        super().__init__("provided netid is already allocated")


@dataclass
class NetIDRange:
    """A contiguous range of netids starting at ``base`` holding ``size`` ids."""

    base: int = 0
    size: int = 0

    def contains(self, netid: int) -> bool:
        """Return whether ``netid`` falls within the range."""
        return netid >= self.base and netid - self.base < self.size

    def __contains__(self, netid: object) -> bool:
        return isinstance(netid, int) and self.contains(netid)

    def offset(self, netid: int) -> int:
        """Return the position of ``netid`` within the range."""
        if not self.contains(netid):
            raise NotInRangeError()
        return netid - self.base

    def set(self, base: int, size: int) -> None:
        """Validate and store a new base and size."""
        if base < MIN_VNID:
            raise ValueError(f"invalid netid base, must be greater than {MIN_VNID}")
        if size <= 0:
            raise ValueError("invalid netid size, must be greater than zero")
        if base + size - 1 > MAX_VNID:
            raise ValueError(f"netid range exceeded max value {MAX_VNID}")
        self.base = base
        self.size = size

    def __str__(self) -> str:
        if self.size == 0:
            return ""
        return f"{self.base}-{self.base + self.size - 1}"


def new_net_id_range(min_id: int, max_id: int) -> NetIDRange:
    """Build a range covering ``min_id`` through ``max_id`` inclusive."""
    netid_range = NetIDRange()
    netid_range.set(min_id, max_id - min_id + 1)
    return netid_range


class NetIDAllocator:
    """Thread-safe allocator of netids out of a :class:`NetIDRange`."""

    def __init__(self, netid_range: NetIDRange) -> None:
        self.netid_range = netid_range
        self._allocated: set[int] = set()
        self._cursor = 0
        self._lock = threading.Lock()

    def free(self) -> int:
        """Return the number of netids left in the range."""
        with self._lock:
            return self.netid_range.size - len(self._allocated)

    def allocate(self, netid: int) -> None:
        """Reserve ``netid``; raise if it is out of range or already taken."""
        offset = self.netid_range.offset(netid)
        with self._lock:
            if offset in self._allocated:
                raise AlreadyAllocatedError()
            self._allocated.add(offset)

    def allocate_next(self) -> int:
        """Reserve and return a free netid; raise RangeFullError if none is left."""
        with self._lock:
            size = self.netid_range.size
            if len(self._allocated) >= size:
                raise RangeFullError()
            for step in range(size):
                offset = (self._cursor + step) % size
                if offset not in self._allocated:
                    self._allocated.add(offset)
                    self._cursor = (offset + 1) % size
                    return self.netid_range.base + offset
            raise RangeFullError()

    def release(self, netid: int) -> None:
        """Return ``netid`` to the pool; unknown or out-of-range ids are ignored."""
        if not self.netid_range.contains(netid):
            return
        with self._lock:
            self._allocated.discard(netid - self.netid_range.base)

    def has(self, netid: int) -> bool:
        """Return whether ``netid`` is currently allocated."""
        if not self.netid_range.contains(netid):
            return False
        with self._lock:
            return (netid - self.netid_range.base) in self._allocated