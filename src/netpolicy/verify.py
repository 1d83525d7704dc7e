"""Reachability check for exported policies.

Each distinct destination is probed once; the unreachable ones are reported
as ``{"dst_addr", "dst_port"}`` records in first-seen order. Policies are
never removed here.
"""
from __future__ import annotations

import concurrent.futures
import logging
import typing as t

from .probe import DEFAULT_TIMEOUT, Probe, probe_open
from .store import Policy

log = logging.getLogger("netpolicy.verify")


def find_unreachable(
    policies: t.Iterable[Policy],
    timeout: float = DEFAULT_TIMEOUT,
    workers: int = 16,
    probe: Probe = probe_open,
) -> t.List[t.Dict[str, str]]:
    destinations = list(dict.fromkeys((p.dst_addr, p.dst_port) for p in policies))
    log.info("verifying %d destinations", len(destinations))
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        states = list(pool.map(lambda d: probe(d[0], d[1], timeout), destinations))
    unreachable = [
        {"dst_addr": addr, "dst_port": str(port)}
        for (addr, port), is_open in zip(destinations, states)
        if not is_open
    ]
    log.info("unreachable destinations: %d", len(unreachable))
    return unreachable
