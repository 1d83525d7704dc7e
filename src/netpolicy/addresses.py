"""Local interface addresses and their subnets.

`get_local_addresses()` is the address provider backed by psutil.
`AddressCatalog` is the immutable snapshot built from its output; it answers
same-subnet questions used to suppress intra-subnet traffic.
"""
from __future__ import annotations

import dataclasses
import functools
import logging
import socket
import typing as t

import psutil

from .errors import StartupError
from .subnet import expand_subnet, ip_to_int, is_ipv4, is_netmask, mask_from_prefix, network_bounds, prefix_from_mask

log = logging.getLogger("netpolicy.addresses")


@dataclasses.dataclass(frozen=True)
class LocalSubnet:
    interface_addr: str
    prefix_length: int

    @property
    def mask(self) -> str:
        return mask_from_prefix(self.prefix_length)

    @functools.cached_property
    def bounds(self) -> t.Tuple[int, int]:
        return network_bounds(self.interface_addr, self.prefix_length)

    @functools.cached_property
    def members(self) -> t.Tuple[str, ...]:
        """Every address of the subnet, the interface address included."""
        return tuple(expand_subnet(self.interface_addr, self.mask, include_self=True))

    def contains(self, addr: str) -> bool:
        # same answer as `addr in self.members` without materialising the list
        if not is_ipv4(addr):
            return False
        first, last = self.bounds
        return first <= ip_to_int(addr) <= last


class AddressCatalog:
    def __init__(self, subnets: t.Iterable[LocalSubnet] = ()):
        self._subnets: t.Dict[str, LocalSubnet] = {}
        for s in subnets:
            self._subnets[s.interface_addr] = s

    @classmethod
    def from_addresses(cls, pairs: t.Iterable[t.Tuple[str, int]]) -> "AddressCatalog":
        subnets = []
        for addr, prefix in pairs:
            mask = mask_from_prefix(prefix)
            if not is_ipv4(addr) or not is_netmask(mask):
                log.warning("skipping local address %s/%s: cannot expand subnet", addr, prefix)
                continue
            subnets.append(LocalSubnet(addr, prefix_from_mask(mask)))
        return cls(subnets)

    @property
    def addresses(self) -> t.Tuple[str, ...]:
        return tuple(self._subnets)

    @property
    def subnets(self) -> t.List[LocalSubnet]:
        return list(self._subnets.values())

    def get(self, addr: str) -> t.Optional[LocalSubnet]:
        return self._subnets.get(addr)

    def is_same_subnet(self, addr_a: str, addr_b: str) -> bool:
        for subnet in self._subnets.values():
            if subnet.contains(addr_a) and subnet.contains(addr_b):
                return True
        return False

    def to_dict(self) -> t.Dict[str, str]:
        return {s.interface_addr: f"{s.interface_addr}/{s.prefix_length}" for s in self._subnets.values()}

    def __len__(self) -> int:
        return len(self._subnets)

    def __contains__(self, addr: object) -> bool:
        return addr in self._subnets


def _is_loopback(addr: str, stats) -> bool:
    if addr.startswith("127."):
        return True
    flags = getattr(stats, "flags", "") or ""
    return "loopback" in flags.split(",")


def get_local_addresses() -> t.List[t.Tuple[str, int]]:
    """Return (address, prefix length) for every up, non-loopback IPv4 interface."""
    try:
        if_addrs = psutil.net_if_addrs()
        if_stats = psutil.net_if_stats()
    except Exception as e:
        raise StartupError(f"cannot enumerate interface addresses: {e}") from e

    out = []
    for name in sorted(if_addrs):
        stats = if_stats.get(name)
        if stats is None or not stats.isup:
            continue
        for entry in if_addrs[name]:
            if entry.family != socket.AF_INET:
                continue
            if _is_loopback(entry.address, stats):
                continue
            prefix = prefix_from_mask(entry.netmask) if entry.netmask else None
            out.append((entry.address, 32 if prefix is None else prefix))
    log.info("local addresses: %s", ", ".join(f"{a}/{p}" for a, p in out) or "none")
    return out
