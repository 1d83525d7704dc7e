"""Flow tuples: the L3/L4 identity of one observed packet."""
from __future__ import annotations

import dataclasses
import typing as t

PROTOCOLS = ("tcp", "udp")


@dataclasses.dataclass(frozen=True)
class FlowTuple:
    src_addr: str
    src_port: int
    proto: str
    dst_addr: str
    dst_port: int

    def swapped(self) -> "FlowTuple":
        return FlowTuple(self.dst_addr, self.dst_port, self.proto, self.src_addr, self.src_port)

    @property
    def endpoint_key(self) -> t.Tuple[str, t.FrozenSet[t.Tuple[str, int]]]:
        """Orientation-free identity: both directions of a flow share it."""
        return self.proto, frozenset(((self.src_addr, self.src_port), (self.dst_addr, self.dst_port)))

    def __str__(self) -> str:
        return f"{self.src_addr}:{self.src_port}-{self.dst_addr}:{self.dst_port}/{self.proto}"
