"""IPv4 subnet arithmetic.

Addresses are handled as dotted-quad strings at the edges and as unsigned
32-bit integers internally. Enumeration walks the integer range upwards from
the network base, so the produced order is always ascending.

Only canonical dotted quads are accepted (no leading zeros, no whitespace);
a mask must have contiguous high bits and a non-zero first octet.
"""
from __future__ import annotations

import re
import typing as t

_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"
_IPV4_RE = re.compile(rf"{_OCTET}(?:\.{_OCTET}){{3}}")

FULL_MASK = 0xFFFFFFFF


def is_ipv4(addr: t.Any) -> bool:
    return isinstance(addr, str) and _IPV4_RE.fullmatch(addr) is not None


def ip_to_int(addr: str) -> int:
    if not is_ipv4(addr):
        raise ValueError(f"not an IPv4 address: {addr!r}")
    a, b, c, d = (int(x) for x in addr.split("."))
    return (a << 24) | (b << 16) | (c << 8) | d


def int_to_ip(value: int) -> str:
    value &= FULL_MASK
    return f"{value >> 24}.{(value >> 16) & 0xFF}.{(value >> 8) & 0xFF}.{value & 0xFF}"


def prefix_to_int(prefix: int) -> int:
    prefix = clamp_prefix(prefix)
    return (FULL_MASK << (32 - prefix)) & FULL_MASK


def clamp_prefix(prefix: int) -> int:
    if prefix > 32:
        return 32
    if prefix < 0:
        return 0
    return prefix


def mask_from_prefix(prefix: int) -> str:
    """Return the dotted-quad mask for `prefix`, clamped into [0, 32]."""
    return int_to_ip(prefix_to_int(int(prefix)))


def prefix_from_mask(mask: str) -> t.Optional[int]:
    """Return the prefix length of a contiguous mask, or None."""
    if not is_ipv4(mask):
        return None
    value = ip_to_int(mask)
    inverted = ~value & FULL_MASK
    # contiguous high bits <=> the host part is 2**n - 1
    if inverted & (inverted + 1):
        return None
    return 32 - inverted.bit_length()


def is_netmask(mask: str) -> bool:
    prefix = prefix_from_mask(mask)
    return prefix is not None and prefix >= 1


def network_bounds(addr: str, prefix: int) -> t.Tuple[int, int]:
    """Return the (first, last) integer addresses of the subnet of `addr`."""
    mask = prefix_to_int(prefix)
    base = ip_to_int(addr) & mask
    return base, base | (~mask & FULL_MASK)


def expand_subnet(
    addr: str,
    mask: str,
    include_self: bool = False,
    exclude_network_and_broadcast: bool = False,
) -> t.List[str]:
    """List every address in the subnet of `addr`/`mask` in ascending order.

    Returns an empty list if `addr` or `mask` is malformed.
    """
    if not is_ipv4(addr) or not is_netmask(mask):
        return []
    own = ip_to_int(addr)
    first, last = network_bounds(addr, prefix_from_mask(mask))
    out = []
    for value in range(first, last + 1):
        if exclude_network_and_broadcast and value in (first, last):
            continue
        if not include_self and value == own:
            continue
        out.append(int_to_ip(value))
    return out
