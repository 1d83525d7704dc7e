"""Capture sources feeding FlowTuples into the ingestion queue.

Two sources exist:

- `replay_flows()` reads a pcap (dpkt) or pcapng (python-pcapng) file and is
  deterministic; tests and offline runs use it.
- `sniff_flows()` sniffs an interface with a scapy `AsyncSniffer` using a
  BPF filter and streams its packets out as flows until asked to stop.

Each source runs inside a `CaptureWorker` thread that pushes flows into a
bounded queue without ever blocking; when the queue is full the flow is
dropped and counted.
"""
from __future__ import annotations

import collections
import logging
import os
import queue
import sys
import threading
import typing as t

import dpkt
from pcapng import FileScanner

from .errors import StartupError
from .flow import FlowTuple
from .packet import LINKTYPE_ETHERNET, flow_from_scapy, parse_raw

log = logging.getLogger("netpolicy.capture")

ANY_INTERFACE = "any"
_PCAPNG_MAGIC = b"\x0a\x0d\x0d\x0a"
_POLL_SECONDS = 0.05

FlowSource = t.Callable[[threading.Event], t.Iterable[FlowTuple]]


def _is_pcapng(path: str) -> bool:
    with open(path, "rb") as fh:
        return fh.read(4) == _PCAPNG_MAGIC


def iter_frames(path: str) -> t.Iterator[t.Tuple[t.Optional[float], bytes, int]]:
    """Yield (timestamp, raw frame, link type) for every packet in `path`."""
    if not os.path.exists(path):
        raise RuntimeError(f"pcap file not found: {path}")
    if _is_pcapng(path):
        with open(path, "rb") as fh:
            for block in FileScanner(fh):
                data = getattr(block, "packet_data", None)
                if data is None:
                    continue
                try:
                    linktype = block.interface.link_type
                except (AttributeError, IndexError, KeyError):
                    linktype = LINKTYPE_ETHERNET
                yield getattr(block, "timestamp", None), bytes(data), linktype
        return
    with open(path, "rb") as fh:
        reader = dpkt.pcap.Reader(fh)
        linktype = reader.datalink()
        for ts, buf in reader:
            yield ts, buf, linktype


def replay_flows(path: str, stop: t.Optional[threading.Event] = None, max_packets: t.Optional[int] = None) -> t.Iterator[FlowTuple]:
    count = 0
    for _ts, raw, linktype in iter_frames(path):
        if stop is not None and stop.is_set():
            break
        if max_packets is not None and count >= max_packets:
            break
        count += 1
        flow = parse_raw(raw, linktype)
        if flow is not None:
            yield flow


def sniff_flows(interface: t.Optional[str], bpf_filter: t.Optional[str], stop: threading.Event) -> t.Iterator[FlowTuple]:
    from scapy.all import AsyncSniffer, get_if_list

    # scapy sniffs a list of interfaces together; None would mean conf.iface only
    iface = get_if_list() if interface in (None, ANY_INTERFACE) else interface
    pending: t.Deque[FlowTuple] = collections.deque()

    def _prn(pkt):
        try:
            flow = flow_from_scapy(pkt)
        except Exception:
            # malformed packet: skip it, keep sniffing
            return
        if flow is not None:
            pending.append(flow)

    sniffer = AsyncSniffer(iface=iface, filter=bpf_filter or None, prn=_prn, store=False)
    sniffer.start()
    try:
        while not stop.is_set() and sniffer.thread.is_alive():
            while pending:
                yield pending.popleft()
            stop.wait(_POLL_SECONDS)
        while pending:
            yield pending.popleft()
    finally:
        if sniffer.running:
            try:
                sniffer.stop()
            except Exception as e:
                log.debug("stopping sniffer on %s: %s", interface, e)
    error = getattr(sniffer, "exception", None)
    if error is not None:
        raise error


def select_interfaces(requested: t.Optional[t.Sequence[str]] = None) -> t.List[str]:
    """Pick the interfaces to capture on, one worker each.

    Linux sniffs everything through the ``any`` pseudo-interface; elsewhere
    every non-loopback interface gets its own worker.
    """
    if requested:
        return list(dict.fromkeys(requested))
    if sys.platform.startswith("linux"):
        return [ANY_INTERFACE]
    from scapy.all import conf, get_if_list

    loopback = getattr(conf, "loopback_name", None)
    names = [n for n in get_if_list() if n != loopback]
    if not names:
        raise StartupError("could not find any eligible network interface")
    return names


class CaptureWorker(threading.Thread):
    daemon = True

    def __init__(self, name: str, source: FlowSource, out: "queue.Queue[FlowTuple]"):
        super().__init__(name=f"capture-{name}")
        self.source = source
        self.out = out
        self.captured = 0
        self.dropped = 0
        self.error: t.Optional[BaseException] = None
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        log.info("started %s", self.name)
        try:
            for flow in self.source(self._stop_event):
                if self._stop_event.is_set():
                    break
                self.captured += 1
                try:
                    self.out.put_nowait(flow)
                except queue.Full:
                    self.dropped += 1
        except Exception as e:
            self.error = e
            log.exception("capture failed on %s", self.name)
            return
        log.info("ended %s (captured=%d dropped=%d)", self.name, self.captured, self.dropped)


def replay_source(path: str, max_packets: t.Optional[int] = None) -> FlowSource:
    return lambda stop: replay_flows(path, stop=stop, max_packets=max_packets)


def live_source(interface: t.Optional[str], bpf_filter: t.Optional[str]) -> FlowSource:
    return lambda stop: sniff_flows(interface, bpf_filter, stop)
