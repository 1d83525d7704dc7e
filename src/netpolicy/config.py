"""Run configuration and named presets."""
from __future__ import annotations

import dataclasses
import typing as t

# Skips Kubernetes service (10.233.0.0/18) and pod (10.222.64.0/18)
# networks, pod-to-pod traffic, link-local multicast, broadcast, loopback
# and non-transport traffic.
K8S_BPF_FILTER = (
    "not net 10.233.0.0/18 and not net 10.222.64.0/18 and not net 224.0.0.0/24"
    " and not ( ip[20+12:1]=10 and ip[20+13:1]=222 and ip[20+16:1]=10 and ip[20+17:1]=222 )"
    " and not host 255.255.255.255 and not host 127.0.0.1"
    " and not arp and not icmp and not icmp6"
)
PLAIN_BPF_FILTER = "tcp or udp"

PROFILE_PRESETS: t.Dict[str, t.Dict[str, t.Any]] = {
    "k8s": {"bpf_filter": K8S_BPF_FILTER, "export_interval": 60.0},
    "plain": {"bpf_filter": PLAIN_BPF_FILTER, "export_interval": 30.0},
}
DEFAULT_PROFILE = "k8s"


@dataclasses.dataclass
class RebuildConfig:
    duration_minutes: float = 1.0
    export_interval: float = 60.0
    listener_refresh_interval: float = 0.0
    probe_timeout: float = 1.0
    probe_workers: int = 8
    max_pending: int = 256
    queue_size: int = 10000
    bpf_filter: str = K8S_BPF_FILTER
    excluded_ports: t.Tuple[int, ...] = (20,)
    interfaces: t.List[str] = dataclasses.field(default_factory=list)
    pcap_file: t.Optional[str] = None
    max_packets: t.Optional[int] = None
    out: t.Optional[str] = None
    db: t.Optional[str] = None
    resume: bool = False
    profile: str = DEFAULT_PROFILE

    @property
    def duration_seconds(self) -> t.Optional[float]:
        """Run length in seconds; None runs until stopped."""
        if not self.duration_minutes or self.duration_minutes <= 0:
            return None
        return float(self.duration_minutes) * 60.0

    @classmethod
    def from_args(cls, args) -> "RebuildConfig":
        """Apply the profile preset, then every explicitly given argument."""
        cfg = cls()
        profile = getattr(args, "profile", None) or DEFAULT_PROFILE
        if profile not in PROFILE_PRESETS:
            raise ValueError(f"unknown profile {profile!r}")
        cfg.profile = profile
        for k, v in PROFILE_PRESETS[profile].items():
            setattr(cfg, k, v)
        for f in dataclasses.fields(cls):
            if f.name == "profile":
                continue
            v = getattr(args, f.name, None)
            if v is None:
                continue
            if f.name == "excluded_ports":
                v = tuple(int(p) for p in v)
            setattr(cfg, f.name, v)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.export_interval <= 0:
            raise ValueError("export interval must be positive")
        if self.probe_timeout <= 0:
            raise ValueError("probe timeout must be positive")
        if self.probe_workers < 1:
            raise ValueError("need at least one probe worker")
        if self.max_pending < 1:
            raise ValueError("max pending probes must be positive")
        if self.queue_size < 1:
            raise ValueError("queue size must be positive")
