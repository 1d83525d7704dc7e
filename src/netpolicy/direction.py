"""Decide which endpoint of a flow is the server.

The local socket table is consulted first. When it is not conclusive both
endpoints are probed with a TCP connect, source side first. If neither
answers the direction stays unresolved and the flow is dropped: a firewalled
service looks exactly like a missing one from here.
"""
from __future__ import annotations

import logging
import typing as t

from .flow import FlowTuple
from .listeners import ListenerIndex, ListenerSide
from .probe import DEFAULT_TIMEOUT, Probe, probe_open

log = logging.getLogger("netpolicy.direction")


class DirectionResolver:
    def __init__(self, listeners: ListenerIndex, probe: Probe = probe_open, timeout: float = DEFAULT_TIMEOUT):
        # swapped wholesale on refresh, never mutated
        self.listeners = listeners
        self.probe = probe
        self.timeout = timeout

    def from_listeners(self, flow: FlowTuple) -> t.Optional[FlowTuple]:
        """Orient `flow` client-first using the socket table only."""
        side = self.listeners.find_listener_side(flow.src_addr, flow.src_port, flow.dst_addr, flow.dst_port, flow.proto)
        if side is ListenerSide.A_IS_SERVER:
            return flow.swapped()
        if side is ListenerSide.B_IS_SERVER:
            return flow
        return None

    def from_probes(self, flow: FlowTuple) -> t.Optional[FlowTuple]:
        """Orient `flow` client-first by probing both ends. Blocks."""
        if self.probe(flow.src_addr, flow.src_port, self.timeout):
            return flow.swapped()
        if self.probe(flow.dst_addr, flow.dst_port, self.timeout):
            return flow
        log.debug("direction unresolved for %s", flow)
        return None

    def resolve(self, flow: FlowTuple) -> t.Optional[FlowTuple]:
        oriented = self.from_listeners(flow)
        if oriented is not None:
            return oriented
        return self.from_probes(flow)
