"""Packet parsing helpers: turn captured frames into FlowTuples.

Only IPv4 TCP/UDP packets carrying both ports yield a flow; anything else
(IPv6, ICMP, ARP, non-first fragments, truncated headers) yields None.
"""
from __future__ import annotations

import socket
import typing as t

import dpkt

from .flow import FlowTuple

# pcap link-layer types seen on capture files
LINKTYPE_NULL = 0
LINKTYPE_ETHERNET = 1
LINKTYPE_RAW = 101
LINKTYPE_RAW_BSD = 12
LINKTYPE_RAW_OPENBSD = 14
LINKTYPE_LOOP = 108
LINKTYPE_LINUX_SLL = 113


def _network_layer(raw: bytes, linktype: int):
    if linktype == LINKTYPE_ETHERNET:
        return dpkt.ethernet.Ethernet(raw).data
    if linktype == LINKTYPE_LINUX_SLL:
        return dpkt.sll.SLL(raw).data
    if linktype in (LINKTYPE_NULL, LINKTYPE_LOOP):
        return dpkt.loopback.Loopback(raw).data
    if linktype in (LINKTYPE_RAW, LINKTYPE_RAW_BSD, LINKTYPE_RAW_OPENBSD):
        return dpkt.ip.IP(raw)
    return None


def parse_raw(raw: bytes, linktype: int = LINKTYPE_ETHERNET) -> t.Optional[FlowTuple]:
    """Parse one captured frame and return its FlowTuple, or None."""
    try:
        ip = _network_layer(raw, linktype)
    except (dpkt.UnpackError, ValueError, IndexError):
        return None
    if not isinstance(ip, dpkt.ip.IP):
        return None
    if ip.off & dpkt.ip.IP_OFFMASK:
        # later fragments carry no transport header
        return None

    l4 = ip.data
    if ip.p == dpkt.ip.IP_PROTO_TCP and isinstance(l4, dpkt.tcp.TCP):
        proto = "tcp"
    elif ip.p == dpkt.ip.IP_PROTO_UDP and isinstance(l4, dpkt.udp.UDP):
        proto = "udp"
    else:
        return None

    try:
        src_addr = socket.inet_ntoa(ip.src)
        dst_addr = socket.inet_ntoa(ip.dst)
    except (OSError, TypeError):
        return None
    return FlowTuple(src_addr, int(l4.sport), proto, dst_addr, int(l4.dport))


def flow_from_scapy(pkt) -> t.Optional[FlowTuple]:
    """Same as `parse_raw` for a packet already dissected by scapy."""
    from scapy.layers.inet import IP, TCP, UDP

    ip = pkt.getlayer(IP)
    if ip is None or int(ip.frag or 0):
        return None
    l4 = ip.payload
    if isinstance(l4, TCP):
        proto = "tcp"
    elif isinstance(l4, UDP):
        proto = "udp"
    else:
        return None
    return FlowTuple(str(ip.src), int(l4.sport), proto, str(ip.dst), int(l4.dport))
