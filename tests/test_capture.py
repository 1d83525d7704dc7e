import queue
import threading

import dpkt
import pytest

from netpolicy import capture
from netpolicy.capture import CaptureWorker, replay_flows, replay_source, select_interfaces
from netpolicy.errors import StartupError
from netpolicy.flow import FlowTuple
from tests.frames import build_arp_frame, build_frame


FRAMES = [
    ("10.0.0.1", 51000, "tcp", "10.0.0.9", 443),
    build_arp_frame(),
    ("10.0.0.9", 443, "tcp", "10.0.0.1", 51000),
    ("10.0.0.2", 40000, "udp", "10.0.0.53", 53),
]


def test_replay_pcap_skips_non_ip(write_pcap):
    path = write_pcap("mixed.pcap", FRAMES)
    flows = list(replay_flows(str(path)))
    assert flows == [
        FlowTuple("10.0.0.1", 51000, "tcp", "10.0.0.9", 443),
        FlowTuple("10.0.0.9", 443, "tcp", "10.0.0.1", 51000),
        FlowTuple("10.0.0.2", 40000, "udp", "10.0.0.53", 53),
    ]
    # deterministic across runs
    assert list(replay_flows(str(path))) == flows


def test_replay_pcapng(tmp_path):
    path = tmp_path / "one.pcapng"
    with open(path, "wb") as fh:
        writer = dpkt.pcapng.Writer(fh)
        writer.writepkt(build_frame("192.0.2.1", 12345, "tcp", "198.51.100.2", 80), ts=1.0)
        writer.close()
    assert list(replay_flows(str(path))) == [FlowTuple("192.0.2.1", 12345, "tcp", "198.51.100.2", 80)]


def test_replay_max_packets_counts_every_frame(write_pcap):
    path = write_pcap("mixed.pcap", FRAMES)
    # the ARP frame counts towards the limit
    assert len(list(replay_flows(str(path), max_packets=2))) == 1


def test_replay_honours_stop(write_pcap):
    path = write_pcap("mixed.pcap", FRAMES)
    stop = threading.Event()
    stop.set()
    assert list(replay_flows(str(path), stop=stop)) == []


def test_replay_missing_file():
    with pytest.raises(RuntimeError):
        list(replay_flows("does_not_exist.pcap"))


def test_worker_fills_queue_and_counts_drops(write_pcap):
    path = write_pcap("mixed.pcap", FRAMES)
    out = queue.Queue(maxsize=2)
    worker = CaptureWorker("replay", replay_source(str(path)), out)
    worker.start()
    worker.join(5)
    assert not worker.is_alive()
    assert worker.captured == 3
    assert worker.dropped == 1
    assert out.qsize() == 2
    assert worker.error is None


def test_worker_records_source_failure():
    def broken(stop):
        raise OSError("interface went away")
        yield  # pragma: no cover

    worker = CaptureWorker("eth9", broken, queue.Queue())
    worker.start()
    worker.join(5)
    assert isinstance(worker.error, OSError)
    assert worker.name == "capture-eth9"


def test_select_interfaces(monkeypatch):
    assert select_interfaces(["eth0", "eth1", "eth0"]) == ["eth0", "eth1"]
    monkeypatch.setattr(capture.sys, "platform", "linux")
    assert select_interfaces() == ["any"]


def test_select_interfaces_none_found(monkeypatch):
    import scapy.all

    monkeypatch.setattr(capture.sys, "platform", "darwin")
    monkeypatch.setattr(scapy.all, "get_if_list", lambda: [scapy.all.conf.loopback_name])
    with pytest.raises(StartupError):
        select_interfaces()


class FakeSniffer:
    """Stands in for scapy's AsyncSniffer: feeds `packets` to prn from a
    thread, then either fails or runs until stopped."""

    def __init__(self, packets, error=None, **kwargs):
        self.packets = packets
        self.error = error
        self.kwargs = kwargs
        self.running = False
        self.stopped = False
        self.exception = None
        self.thread = None
        self._halt = threading.Event()

    def _run(self):
        self.running = True
        for pkt in self.packets:
            self.kwargs["prn"](pkt)
        if self.error is not None:
            self.exception = self.error
            self.running = False
            return
        self._halt.wait(5)
        self.running = False

    def start(self):
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def stop(self):
        self.stopped = True
        self._halt.set()
        self.thread.join()


def test_sniff_flows_streams_until_stopped(monkeypatch):
    import scapy.all
    from scapy.layers.inet import IP, TCP, UDP
    from scapy.layers.l2 import ARP

    packets = [
        IP(src="10.0.0.1", dst="10.0.0.9") / TCP(sport=51000, dport=443),
        ARP(),
        IP(src="10.0.0.1", dst="10.0.0.53") / UDP(sport=5353, dport=53),
    ]
    sniffers = []

    def factory(**kwargs):
        sniffers.append(FakeSniffer(packets, **kwargs))
        return sniffers[-1]

    monkeypatch.setattr(scapy.all, "AsyncSniffer", factory)
    stop = threading.Event()
    flows = capture.sniff_flows("eth0", "tcp or udp", stop)

    got = [next(flows), next(flows)]
    stop.set()
    assert list(flows) == []
    assert got == [
        FlowTuple("10.0.0.1", 51000, "tcp", "10.0.0.9", 443),
        FlowTuple("10.0.0.1", 5353, "udp", "10.0.0.53", 53),
    ]
    sniffer = sniffers[0]
    assert sniffer.stopped
    assert sniffer.kwargs["iface"] == "eth0"
    assert sniffer.kwargs["filter"] == "tcp or udp"
    assert sniffer.kwargs["store"] is False


def test_sniff_flows_raises_sniffer_failure(monkeypatch):
    import scapy.all
    from scapy.layers.inet import IP, TCP

    pkt = IP(src="10.0.0.1", dst="10.0.0.9") / TCP(sport=51000, dport=443)
    monkeypatch.setattr(
        scapy.all, "AsyncSniffer", lambda **kw: FakeSniffer([pkt], error=OSError("no such device"), **kw)
    )
    flows = capture.sniff_flows("eth9", None, threading.Event())

    assert next(flows) == FlowTuple("10.0.0.1", 51000, "tcp", "10.0.0.9", 443)
    with pytest.raises(OSError, match="no such device"):
        next(flows)
