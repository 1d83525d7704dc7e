"""Policy inference pipeline.

`InferenceEngine.ingest()` is the per-packet hot path:

1. drop flows touching an excluded port (FTP active-mode data, port 20);
2. drop flows between two addresses of the same local subnet;
3. match both orientations against the PolicyStore, converging if needed;
4. for unknown flows, orient with the local socket table when it is
   conclusive and record the policy inline;
5. otherwise hand the flow to the probe pool. Flows waiting for a probe are
   tracked by their orientation-free endpoint key so that one flow is never
   probed twice concurrently. At most `max_pending` flows wait at once;
   the rest are counted as `probe_overflow` and retried when seen again.

Ingest never blocks on network I/O. Probe results are recorded through
`PolicyStore.record`, which re-classifies under the store lock, so a policy
inserted meanwhile by another path is honoured instead of duplicated.
"""
from __future__ import annotations

import collections
import concurrent.futures
import logging
import threading
import typing as t

from .addresses import AddressCatalog, get_local_addresses
from .direction import DirectionResolver
from .errors import StartupError
from .flow import FlowTuple
from .listeners import ListenerBinding, ListenerIndex, get_listeners
from .probe import DEFAULT_TIMEOUT, Probe, probe_open
from .store import MatchStatus, PolicyStore

log = logging.getLogger("netpolicy.engine")

FTP_DATA_PORT = 20
DEFAULT_MAX_PENDING = 256

AddressProvider = t.Callable[[], t.Iterable[t.Tuple[str, int]]]
ListenerProvider = t.Callable[[], t.Iterable[ListenerBinding]]

_KNOWN = {
    MatchStatus.EXACT_INITIAL: "known",
    MatchStatus.CONVERGED: "known",
    MatchStatus.PARTIAL_INITIAL: "converged",
}


class InferenceEngine:
    def __init__(
        self,
        catalog: AddressCatalog,
        listeners: ListenerIndex,
        store: t.Optional[PolicyStore] = None,
        repository=None,
        probe: Probe = probe_open,
        probe_timeout: float = DEFAULT_TIMEOUT,
        probe_workers: int = 8,
        excluded_ports: t.Iterable[int] = (FTP_DATA_PORT,),
        max_pending: int = DEFAULT_MAX_PENDING,
    ):
        self.catalog = catalog
        self.resolver = DirectionResolver(listeners, probe=probe, timeout=probe_timeout)
        self.store = store if store is not None else PolicyStore()
        self.repository = repository
        self.excluded_ports = frozenset(excluded_ports)
        self.stats: t.Counter[str] = collections.Counter()
        self._stats_lock = threading.Lock()
        self._pending: t.Set[t.Hashable] = set()
        self._pending_lock = threading.Lock()
        self._futures: t.Set[concurrent.futures.Future] = set()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, probe_workers), thread_name_prefix="probe"
        )
        self.max_pending = max(1, max_pending)
        self._closed = False
        self._export_lock = threading.Lock()

    @classmethod
    def from_providers(
        cls,
        address_provider: AddressProvider = get_local_addresses,
        listener_provider: ListenerProvider = get_listeners,
        **kwargs,
    ) -> "InferenceEngine":
        """Build the startup snapshots, local addresses strictly before listeners.

        Wildcard listeners expand over the local addresses, so the order is a
        precondition. Any provider failure is fatal.
        """
        try:
            catalog = AddressCatalog.from_addresses(address_provider())
        except StartupError:
            raise
        except Exception as e:
            raise StartupError(f"cannot enumerate local addresses: {e}") from e
        try:
            listeners = ListenerIndex.build(listener_provider(), catalog)
        except StartupError:
            raise
        except Exception as e:
            raise StartupError(f"cannot enumerate listeners: {e}") from e
        log.info("startup snapshot: %d local addresses, %d listener bindings", len(catalog), len(listeners))
        return cls(catalog, listeners, **kwargs)

    @property
    def listeners(self) -> ListenerIndex:
        return self.resolver.listeners

    def refresh_listeners(self, listener_provider: ListenerProvider = get_listeners) -> ListenerIndex:
        index = ListenerIndex.build(listener_provider(), self.catalog)
        self.resolver.listeners = index
        log.info("listener bindings refreshed: %d", len(index))
        return index

    def count(self, name: str, n: int = 1) -> None:
        with self._stats_lock:
            self.stats[name] += n

    # hot path

    def ingest(self, flow: FlowTuple) -> t.Optional[MatchStatus]:
        """Process one flow. Returns the store match status, or None when
        the flow was filtered out or handed to the probe pool."""
        self.count("seen")
        if flow.src_port in self.excluded_ports or flow.dst_port in self.excluded_ports:
            self.count("excluded_port")
            return None
        if self.catalog.is_same_subnet(flow.src_addr, flow.dst_addr):
            self.count("same_subnet")
            return None

        status = self.store.observe(flow)
        if status is not MatchStatus.UNKNOWN:
            self.count(_KNOWN[status])
            return status

        oriented = self.resolver.from_listeners(flow)
        if oriented is not None:
            return self._record(oriented)

        self._schedule_probe(flow)
        return None

    def _record(self, oriented: FlowTuple) -> MatchStatus:
        status = self.store.record(
            oriented.src_addr, oriented.src_port, oriented.proto, oriented.dst_addr, oriented.dst_port
        )
        self.count("inserted" if status is MatchStatus.UNKNOWN else _KNOWN[status])
        return status

    def _schedule_probe(self, flow: FlowTuple) -> None:
        key = flow.endpoint_key
        with self._pending_lock:
            if self._closed or key in self._pending:
                self.count("probe_skipped")
                return
            if len(self._pending) >= self.max_pending:
                self.count("probe_overflow")
                return
            self._pending.add(key)
            try:
                future = self._executor.submit(self._probe_and_record, flow, key)
            except RuntimeError:
                # executor already shut down
                self._pending.discard(key)
                return
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: concurrent.futures.Future) -> None:
        with self._pending_lock:
            self._futures.discard(future)

    def _probe_and_record(self, flow: FlowTuple, key: t.Hashable) -> None:
        try:
            oriented = self.resolver.from_probes(flow)
            if oriented is None:
                self.count("unresolved")
                return
            self._record(oriented)
        except Exception:
            log.exception("failed to resolve %s", flow)
        finally:
            with self._pending_lock:
                self._pending.discard(key)

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def wait_pending(self, timeout: t.Optional[float] = None) -> bool:
        """Block until every scheduled probe finished. True if none is left."""
        with self._pending_lock:
            futures = list(self._futures)
        done, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    # export

    def export(self) -> bool:
        """Save a point-in-time snapshot to the repository.

        Failures are logged and reported, never raised: the in-memory store
        stays authoritative until the next successful export. Exports are
        serialised, so a save never overtakes an older snapshot.
        """
        if self.repository is None:
            return True
        with self._export_lock:
            policies = self.store.snapshot()
            try:
                self.repository.save(policies)
            except Exception as e:
                log.warning("policy export to %r failed: %s", self.repository, e)
                self.count("export_failed")
                return False
        log.info("exported %d policies to %r", len(policies), self.repository)
        return True

    def resume(self) -> int:
        """Seed the store from the repository. Returns rows loaded."""
        if self.repository is None:
            return 0
        try:
            loaded = self.store.load(self.repository.load())
        except Exception as e:
            log.warning("cannot resume from %r: %s", self.repository, e)
            return 0
        log.info("resumed %d policies from %r", loaded, self.repository)
        return loaded

    def close(self, wait: bool = True) -> None:
        """Stop accepting probes. Queued probes are cancelled, running ones
        finish when `wait` is set; their flows are recorded or dropped."""
        with self._pending_lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        with self._pending_lock:
            self._pending.clear()

    def summary(self) -> t.Dict[str, int]:
        with self._stats_lock:
            out = dict(self.stats)
        out["policies"] = len(self.store)
        return out
