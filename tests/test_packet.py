import socket

import dpkt

from tests.frames import build_arp_frame, build_frame
from netpolicy.flow import FlowTuple
from netpolicy.packet import LINKTYPE_LINUX_SLL, LINKTYPE_RAW, parse_raw


def test_parse_tcp_and_udp():
    assert parse_raw(build_frame("192.0.2.1", 12345, "tcp", "198.51.100.2", 80)) == FlowTuple(
        "192.0.2.1", 12345, "tcp", "198.51.100.2", 80
    )
    assert parse_raw(build_frame("192.0.2.1", 5353, "udp", "198.51.100.2", 53)) == FlowTuple(
        "192.0.2.1", 5353, "udp", "198.51.100.2", 53
    )


def test_non_ipv4_yields_nothing():
    assert parse_raw(build_arp_frame()) is None
    assert parse_raw(b"\x00" * 6) is None


def test_icmp_yields_nothing():
    ip = dpkt.ip.IP()
    ip.v = 4
    ip.p = dpkt.ip.IP_PROTO_ICMP
    ip.src = socket.inet_aton("192.0.2.1")
    ip.dst = socket.inet_aton("198.51.100.2")
    ip.data = dpkt.icmp.ICMP(type=8, data=dpkt.icmp.ICMP.Echo(id=1, seq=1))
    assert parse_raw(bytes(ip), LINKTYPE_RAW) is None


def test_raw_ip_linktype():
    frame = build_frame("192.0.2.1", 12345, "tcp", "198.51.100.2", 443)
    raw_ip = bytes(dpkt.ethernet.Ethernet(frame).data)
    assert parse_raw(raw_ip, LINKTYPE_RAW) == FlowTuple("192.0.2.1", 12345, "tcp", "198.51.100.2", 443)


def test_linux_cooked_linktype():
    frame = build_frame("192.0.2.1", 12345, "udp", "198.51.100.2", 53)
    sll = dpkt.sll.SLL()
    sll.type = 0
    sll.hlen = 6
    sll.hdr = b"\x00\x01\x02\x03\x04\x05\x00\x00"
    sll.ethtype = dpkt.ethernet.ETH_TYPE_IP
    sll.data = dpkt.ethernet.Ethernet(frame).data
    assert parse_raw(bytes(sll), LINKTYPE_LINUX_SLL) == FlowTuple("192.0.2.1", 12345, "udp", "198.51.100.2", 53)


def test_later_fragment_is_skipped():
    eth = dpkt.ethernet.Ethernet(build_frame("192.0.2.1", 12345, "tcp", "198.51.100.2", 80))
    ip = eth.data
    ip.off = 10  # fragment offset in 8-byte units
    ip.sum = 0
    assert parse_raw(bytes(ip), LINKTYPE_RAW) is None


def test_unknown_linktype():
    assert parse_raw(build_frame("192.0.2.1", 1, "tcp", "198.51.100.2", 2), 9999) is None
