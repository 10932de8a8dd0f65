"""VNID and subnet allocation, egress IP marks and node monitoring, a CNI request server, iptables rules and node metrics for a VXLAN overlay network."""

__version__ = "0.1.0"