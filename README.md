# osdn

Building blocks for the control and data plane of an overlay software-defined
network built on VXLAN. The package has no third-party dependencies.

## What is inside

- `osdn.netid`: the VNID limits `MIN_VNID` (10), `MAX_VNID` (2^24 - 1) and
  `GLOBAL_VNID` (0), and a `NetIDRange` / `NetIDAllocator` pair that hands out
  virtual network identifiers from a range. `new_net_id_range(min_id, max_id)`
  builds an inclusive range and raises `ValueError` for a bad one. Allocation
  failures raise `RangeFullError`, `NotInRangeError` or `AlreadyAllocatedError`,
  all of which are `NetIDError`s. `release` of an unknown or out-of-range id is
  silently ignored.
- `osdn.subnets`: `SubnetAllocator`, which carves per-host subnets out of one or
  more cluster CIDRs (IPv4 and IPv6) with `add_network_range`,
  `allocate_network`, `mark_allocated_network` and `release_network`. Bad CIDRs
  and subnets outside every range raise `SubnetAllocatorError`; when every range
  is used up it raises `SubnetAllocatorFullError`. For IPv4 ranges whose subnet
  bits spill into a shared octet, subnets ending in `.0` are handed out first;
  for IPv6 ranges with at least 16 subnet bits, subnets whose low 16 bits are
  zero are skipped.
- `osdn.egressip`: `get_mark_for_vnid`, which turns a VNID into a hex packet
  mark that is never 0 and never carries the masquerade bit; `egress_ip_label`,
  which returns the `<link>:eip` address label (raising `ValueError` when it
  would be longer than 15 characters); and `NodeMonitor`, which tracks remote
  nodes hosting egress IPs and decides when they go offline or come back,
  using a `ping(node_ip, timeout)` callable you supply. A node is declared
  offline after more than two failed retries. With `background=True` a polling
  thread runs while at least one node is monitored and reports changes through
  the `set_node_offline(node_ip, offline)` callback.
- `osdn.cniserver`: `CNIServer`, an HTTP server on a Unix socket that accepts
  pod `ADD`, `UPDATE` and `DEL` requests as JSON. `start(request_func)` resets
  the run directory to mode 0700, writes `config.json` (mode 0444) and serves
  `POST /` in a background thread; `stop()` (or leaving a `with` block) shuts it
  down. `request_func` receives a `PodRequest` and returns the response body;
  an exception it raises, like a malformed request, becomes a 400 response with
  the error message. Helpers: `read_config`, `gather_cni_args`,
  `pod_request_from_json`, and the `Config` and `CNIRequest` data classes.
- `osdn.iptables`: `NodeIPTables`, which creates the node's firewall and
  masquerading chains (`setup`), adds and deletes egress IP SNAT/reject rules,
  and removes stale egress IP rules found in an `iptables-save` dump
  (`sync_egress_ip_rules`). Commands go through an `IPTablesRunner`, which runs
  the `iptables` and `iptables-save` binaries (its `run` argument lets you
  substitute the command runner). `exec_with_retry` retries calls that fail with
  iptables' "resource problem" exit status (4) with exponential backoff.
- `osdn.metrics`: `NodeMetrics`, an in-process store of node metrics. It
  computes ARP cache headroom from `/proc/net/arp` and `gc_thresh2`
  (`update_arp_metrics`) and counts allocated pod IPs in the host-local IPAM
  directory (`update_pod_ip_metrics`); `gather_periodic` does both.
  `since_in_microseconds(start)` measures from a `time.monotonic()` value.

## Installing

```
pip install .
```

## Examples

Allocating VNIDs:

```python
from osdn.netid import new_net_id_range, NetIDAllocator

allocator = NetIDAllocator(new_net_id_range(201, 300))
vnid = allocator.allocate_next()   # 201
allocator.release(vnid)
print(allocator.free())            # 100
```

Allocating host subnets:

```python
from osdn.subnets import SubnetAllocator

allocator = SubnetAllocator()
allocator.add_network_range("10.1.0.0/16", 8)
print(allocator.allocate_network())  # 10.1.0.0/24
print(allocator.allocate_network())  # 10.1.1.0/24
```

Computing the packet mark used for an egress IP:

```python
from osdn.egressip import get_mark_for_vnid

print(get_mark_for_vnid(0xAB, 0x1))  # 0x010000aa
```

Serving CNI requests:

```python
from osdn.cniserver import CNIServer, Config

def handle(request):
    print(request.command, request.pod_namespace, request.pod_name)
    return b"{}"

with CNIServer("/tmp/cniserver", Config(mtu=1450, service_network_cidr="172.30.0.0/16")) as server:
    server.start(handle)
    ...
```

## What this package does not do

- It has no command-line program and no long-running node or master process;
  the pieces above are meant to be wired together by your own code.
- It does not watch a cluster API for namespaces, nodes or host subnets, and
  keeps no map of namespaces to VNIDs; it only allocates the numbers.
- It does not program Open vSwitch flows or add and remove addresses on network
  interfaces; `NodeMonitor` only decides which egress nodes are offline.
- `NodeMetrics` keeps its values in memory; it does not export them over HTTP
  or register them with any metrics system.

## Running the tests

```
pip install .[test]
pytest
```