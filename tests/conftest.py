import threading

import dpkt
import pytest

from netpolicy.addresses import AddressCatalog
from netpolicy.engine import InferenceEngine
from netpolicy.listeners import ListenerIndex
from tests.frames import build_frame


class FakeProbe:
    """Answers TCP probes from a fixed set of open (host, port) endpoints."""

    def __init__(self, open_endpoints=()):
        self.open = set(open_endpoints)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, host, port, timeout=1.0):
        with self._lock:
            self.calls.append((host, port))
        return (host, port) in self.open


class MemoryRepository:
    def __init__(self, policies=(), fail=False):
        self.policies = list(policies)
        self.saves = 0
        self.fail = fail

    def load(self):
        return list(self.policies)

    def save(self, policies):
        if self.fail:
            raise OSError("disk full")
        self.policies = list(policies)
        self.saves += 1


@pytest.fixture
def write_pcap(tmp_path):
    """Return a writer: write_pcap(name, frames) -> path of a new pcap file.

    `frames` holds raw bytes or (src, sport, proto, dst, dport) tuples.
    """

    def _write(name, frames):
        path = tmp_path / name
        with open(path, "wb") as fh:
            writer = dpkt.pcap.Writer(fh)
            for i, f in enumerate(frames):
                raw = f if isinstance(f, bytes) else build_frame(*f)
                writer.writepkt(raw, ts=1.0 + i)
            writer.close()
        return path

    return _write


@pytest.fixture
def fake_probe():
    return FakeProbe


@pytest.fixture
def memory_repo():
    return MemoryRepository


@pytest.fixture
def catalog():
    return AddressCatalog.from_addresses([("192.168.1.10", 24)])


@pytest.fixture
def make_engine(catalog):
    engines = []

    def _make(probe=None, listeners=None, **kwargs):
        engine = InferenceEngine(
            catalog,
            listeners if listeners is not None else ListenerIndex(),
            probe=probe if probe is not None else FakeProbe(),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for e in engines:
        e.close(wait=True)
