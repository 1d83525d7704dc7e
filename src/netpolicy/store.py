"""Inferred policy table and its classification state machine.

A policy is stored client-first: ``src`` is the client, ``dst`` the server.
An *initial* policy carries the concrete client port it was first seen
with, e.g. ``192.168.0.2:28374 -> 192.168.0.1:80/tcp``. Once a second,
different client port is seen for the same client/server/protocol, the row
*converges*: its client port becomes the wildcard ``0`` and any further
client port is subsumed, e.g. ``192.168.0.2:* -> 192.168.0.1:80/tcp``.

The table keeps exactly one row per (src_addr, proto, dst_addr, dst_port)
key, so rows are held as ``key -> src_port`` in insertion order and
convergence rewrites the port in place.

Every classify-then-mutate sequence runs under one lock; callers on
different threads never observe or produce a half-applied update.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import typing as t

from .flow import FlowTuple

log = logging.getLogger("netpolicy.store")

WILDCARD_PORT = 0

_Key = t.Tuple[str, str, str, int]


@dataclasses.dataclass(frozen=True)
class Policy:
    src_addr: str
    src_port: int
    proto: str
    dst_addr: str
    dst_port: int

    @property
    def converged(self) -> bool:
        return self.src_port == WILDCARD_PORT

    def __str__(self) -> str:
        return f"[{self.src_addr}:{self.src_port},{self.proto},{self.dst_addr}:{self.dst_port}]"


class MatchStatus(enum.Enum):
    EXACT_INITIAL = "exact_initial"
    PARTIAL_INITIAL = "partial_initial"
    CONVERGED = "converged"
    UNKNOWN = "unknown"


def _key(src_addr: str, proto: str, dst_addr: str, dst_port: int) -> _Key:
    return (src_addr, proto, dst_addr, dst_port)


class PolicyStore:
    def __init__(self, policies: t.Iterable[Policy] = ()):
        self._rows: t.Dict[_Key, int] = {}
        self._lock = threading.RLock()
        self.load(policies)

    # lookups

    def _classify(self, src_addr: str, src_port: int, proto: str, dst_addr: str, dst_port: int) -> MatchStatus:
        port = self._rows.get(_key(src_addr, proto, dst_addr, dst_port))
        if port is None:
            return MatchStatus.UNKNOWN
        if port == src_port:
            return MatchStatus.EXACT_INITIAL
        if port != WILDCARD_PORT:
            return MatchStatus.PARTIAL_INITIAL
        return MatchStatus.CONVERGED

    def classify(self, src_addr: str, src_port: int, proto: str, dst_addr: str, dst_port: int) -> MatchStatus:
        """Match one orientation against the table without changing it."""
        with self._lock:
            return self._classify(src_addr, src_port, proto, dst_addr, dst_port)

    # mutations

    def _converge(self, src_addr: str, proto: str, dst_addr: str, dst_port: int) -> None:
        self._rows[_key(src_addr, proto, dst_addr, dst_port)] = WILDCARD_PORT
        log.info("converged policy %s", Policy(src_addr, WILDCARD_PORT, proto, dst_addr, dst_port))

    def _observe(self, flow: FlowTuple) -> MatchStatus:
        status = self._classify(flow.src_addr, flow.src_port, flow.proto, flow.dst_addr, flow.dst_port)
        matched = flow
        if status is MatchStatus.UNKNOWN:
            matched = flow.swapped()
            status = self._classify(matched.src_addr, matched.src_port, matched.proto, matched.dst_addr, matched.dst_port)
        if status is MatchStatus.PARTIAL_INITIAL:
            self._converge(matched.src_addr, matched.proto, matched.dst_addr, matched.dst_port)
        return status

    def observe(self, flow: FlowTuple) -> MatchStatus:
        """Classify `flow` in both orientations and apply any convergence.

        Returns UNKNOWN when neither orientation matches a stored policy;
        the table is then unchanged and the caller has to resolve direction.
        """
        with self._lock:
            return self._observe(flow)

    def record(self, client_addr: str, client_port: int, proto: str, server_addr: str, server_port: int) -> MatchStatus:
        """Insert a new initial policy unless the flow is already covered.

        The flow is re-classified under the lock first, so a policy inserted
        or converged by a concurrent caller is honoured. Returns the match
        status; UNKNOWN means a new row was inserted.
        """
        flow = FlowTuple(client_addr, client_port, proto, server_addr, server_port)
        with self._lock:
            status = self._observe(flow)
            if status is MatchStatus.UNKNOWN:
                self._rows[_key(client_addr, proto, server_addr, server_port)] = client_port
                log.info("inserted policy %s", Policy(client_addr, client_port, proto, server_addr, server_port))
            return status

    def load(self, policies: t.Iterable[Policy]) -> int:
        """Seed the table, e.g. from a previous run. Returns rows added.

        Several initial rows for one key collapse into a convergent row,
        and a convergent row absorbs initial rows, as the state machine would
        have done had the rows been observed.
        """
        added = 0
        with self._lock:
            for p in policies:
                key = _key(p.src_addr, p.proto, p.dst_addr, p.dst_port)
                existing = self._rows.get(key)
                if existing is None:
                    self._rows[key] = p.src_port
                    added += 1
                elif existing != p.src_port:
                    log.debug("collapsing duplicate policy %s on load", p)
                    self._rows[key] = WILDCARD_PORT
        return added

    # views

    def snapshot(self) -> t.List[Policy]:
        """Point-in-time copy of the table, in insertion order."""
        with self._lock:
            items = list(self._rows.items())
        return [Policy(src, port, proto, dst, dport) for (src, proto, dst, dport), port in items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
