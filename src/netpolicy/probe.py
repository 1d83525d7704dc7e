"""TCP connect probes.

`probe_open` cannot tell an actively refused connection from an unreachable
or filtered one: every connection error is reported as closed.
"""
from __future__ import annotations

import concurrent.futures
import logging
import socket
import typing as t

from .subnet import expand_subnet

log = logging.getLogger("netpolicy.probe")

DEFAULT_TIMEOUT = 1.0

Probe = t.Callable[[str, int, float], bool]


def probe_open(host: str, port: int, timeout: float = DEFAULT_TIMEOUT) -> bool:
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except (OSError, OverflowError, ValueError):
        return False


def parse_port_spec(spec: str) -> t.List[int]:
    """Parse ``21``, ``21-29`` or ``21,23,29`` (mixed forms allowed)."""
    ports: t.List[int] = []
    for part in str(spec).split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo_s, hi_s = part.split("-", 1)
            lo, hi = int(lo_s), int(hi_s)
            if lo > hi:
                lo, hi = hi, lo
            ports.extend(range(lo, hi + 1))
        else:
            ports.append(int(part))
    for p in ports:
        if not 0 < p <= 65535:
            raise ValueError(f"port out of range: {p}")
    return list(dict.fromkeys(ports))


def sweep(
    host: str,
    mask: str,
    ports: t.Sequence[int],
    timeout: float = DEFAULT_TIMEOUT,
    workers: int = 32,
    probe: Probe = probe_open,
) -> t.List[t.Dict[str, t.Any]]:
    """Probe every address in the subnet of `host`/`mask` for each port.

    Results come back in address order, then port order.
    """
    addrs = expand_subnet(host, mask, include_self=True)
    if not addrs:
        raise ValueError(f"invalid address or mask: {host} {mask}")
    targets = [(a, p) for a in addrs for p in ports]
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        states = list(pool.map(lambda ap: probe(ap[0], ap[1], timeout), targets))
    results = []
    for (addr, port), is_open in zip(targets, states):
        log.info("%s's port %s opened : %s", addr, port, is_open)
        results.append({"addr": addr, "port": port, "open": bool(is_open)})
    return results
