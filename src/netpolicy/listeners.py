"""Local socket table used to bias direction resolution.

A binding whose local address is a wildcard (``0.0.0.0`` or ``::``) accepts
traffic on every local address, so it is expanded into one binding per
address of the AddressCatalog. Only bindings whose remote side is unbound
count as evidence that a local endpoint is the server of arbitrary traffic.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import socket
import typing as t

import psutil

from .errors import StartupError
from .subnet import is_ipv4

if t.TYPE_CHECKING:
    from .addresses import AddressCatalog

log = logging.getLogger("netpolicy.listeners")

WILDCARD_ADDR = "0.0.0.0"
WILDCARD_PORT = 0
_IPV6_ANY = "::"
_V4_MAPPED = "::ffff:"


@dataclasses.dataclass(frozen=True)
class ListenerBinding:
    local_addr: str
    local_port: int
    proto: str
    remote_addr: str = WILDCARD_ADDR
    remote_port: int = WILDCARD_PORT

    @property
    def accepts_any_remote(self) -> bool:
        return self.remote_addr == WILDCARD_ADDR and self.remote_port == WILDCARD_PORT


class ListenerSide(enum.Enum):
    NONE = "none"
    A_IS_SERVER = "a"
    B_IS_SERVER = "b"


def _normalize_addr(addr: str) -> str:
    if addr.lower().startswith(_V4_MAPPED) and is_ipv4(addr[len(_V4_MAPPED):]):
        return addr[len(_V4_MAPPED):]
    return addr


class ListenerIndex:
    """Immutable set of local bindings with wildcard addresses expanded."""

    def __init__(self, bindings: t.Iterable[ListenerBinding] = ()):
        self._bindings = tuple(bindings)
        self._servers = frozenset(
            (b.local_addr, b.local_port, b.proto) for b in self._bindings if b.accepts_any_remote
        )

    @classmethod
    def build(cls, records: t.Iterable[ListenerBinding], catalog: "AddressCatalog") -> "ListenerIndex":
        bindings = []
        for rec in records:
            local = _normalize_addr(rec.local_addr)
            remote = _normalize_addr(rec.remote_addr)
            if remote == _IPV6_ANY:
                remote = WILDCARD_ADDR
            if local in (WILDCARD_ADDR, _IPV6_ANY):
                for addr in catalog.addresses:
                    bindings.append(ListenerBinding(addr, rec.local_port, rec.proto, remote, rec.remote_port))
            elif is_ipv4(local):
                bindings.append(ListenerBinding(local, rec.local_port, rec.proto, remote, rec.remote_port))
        # drop duplicates, keep first-seen order
        return cls(dict.fromkeys(bindings))

    @property
    def bindings(self) -> t.Tuple[ListenerBinding, ...]:
        return self._bindings

    def find_listener_side(self, addr_a: str, port_a: int, addr_b: str, port_b: int, proto: str) -> ListenerSide:
        a_serves = (addr_a, port_a, proto) in self._servers
        b_serves = (addr_b, port_b, proto) in self._servers
        if a_serves and not b_serves:
            return ListenerSide.A_IS_SERVER
        if b_serves and not a_serves:
            return ListenerSide.B_IS_SERVER
        return ListenerSide.NONE

    def __len__(self) -> int:
        return len(self._bindings)

    def __iter__(self) -> t.Iterator[ListenerBinding]:
        return iter(self._bindings)


def get_listeners() -> t.List[ListenerBinding]:
    """Return the raw local socket table (listening and connected sockets)."""
    try:
        conns = psutil.net_connections(kind="inet")
    except Exception as e:
        raise StartupError(f"cannot enumerate local sockets: {e}") from e

    out = []
    for c in conns:
        if not c.laddr:
            continue
        proto = "tcp" if c.type == socket.SOCK_STREAM else "udp"
        if c.raddr:
            remote_addr, remote_port = c.raddr.ip, c.raddr.port
        else:
            remote_addr, remote_port = WILDCARD_ADDR, WILDCARD_PORT
        out.append(ListenerBinding(c.laddr.ip, c.laddr.port, proto, remote_addr, remote_port))
    log.info("found %d local sockets", len(out))
    return out
