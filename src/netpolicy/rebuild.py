"""Run lifecycle: capture workers, ingestion loop, periodic and final export.

Capture workers push into one bounded queue; the thread calling `run()` is
the single consumer. The run ends when its duration elapses, when `stop()` is
called (e.g. from a signal handler) or when every capture source is
exhausted. Whatever ends it, the policy table is exported one last time.
"""
from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
import typing as t

from .capture import CaptureWorker, FlowSource
from .config import RebuildConfig
from .engine import InferenceEngine, ListenerProvider
from .flow import FlowTuple

log = logging.getLogger("netpolicy.rebuild")

_POLL_SECONDS = 0.2
_JOIN_SECONDS = 2.0


@dataclasses.dataclass
class RunResult:
    policies: int
    exported: bool
    capture_errors: t.Dict[str, str]
    stats: t.Dict[str, int]
    reason: str


class _Every(threading.Thread):
    daemon = True

    def __init__(self, name: str, interval: float, fn: t.Callable[[], t.Any]):
        super().__init__(name=name)
        self.interval = interval
        self.fn = fn
        self._halt = threading.Event()

    def cancel(self) -> None:
        self._halt.set()

    def run(self) -> None:
        while not self._halt.wait(self.interval):
            try:
                self.fn()
            except Exception:
                log.exception("%s failed", self.name)


class Rebuild:
    def __init__(
        self,
        config: RebuildConfig,
        engine: InferenceEngine,
        sources: t.Mapping[str, FlowSource],
        listener_provider: t.Optional[ListenerProvider] = None,
    ):
        self.config = config
        self.engine = engine
        self.sources = dict(sources)
        self.listener_provider = listener_provider
        self.queue: "queue.Queue[FlowTuple]" = queue.Queue(maxsize=config.queue_size)
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def _ingest(self, flow: FlowTuple) -> None:
        try:
            self.engine.ingest(flow)
        except Exception:
            log.exception("failed to ingest %s", flow)

    def _consume(self, workers: t.List[CaptureWorker]) -> str:
        duration = self.config.duration_seconds
        deadline = time.monotonic() + duration if duration else None
        while True:
            if self._stop.is_set():
                return "stopped"
            if deadline is not None and time.monotonic() >= deadline:
                return "duration elapsed"
            try:
                flow = self.queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if not any(w.is_alive() for w in workers):
                    return "capture ended"
                continue
            self._ingest(flow)

    def _drain(self) -> None:
        while True:
            try:
                flow = self.queue.get_nowait()
            except queue.Empty:
                return
            self._ingest(flow)

    def run(self) -> RunResult:
        workers = [CaptureWorker(name, src, self.queue) for name, src in self.sources.items()]
        timers = [_Every("exporter", self.config.export_interval, self.engine.export)]
        if self.listener_provider is not None and self.config.listener_refresh_interval > 0:
            timers.append(
                _Every(
                    "listener-refresh",
                    self.config.listener_refresh_interval,
                    lambda: self.engine.refresh_listeners(self.listener_provider),
                )
            )

        duration = self.config.duration_seconds
        log.info("network policy reconstruction started, %s", f"running for {duration:.0f}s" if duration else "running until stopped")
        reason = "aborted"
        exported = False
        try:
            for w in workers:
                w.start()
            for tm in timers:
                tm.start()
            reason = self._consume(workers)
        finally:
            for w in workers:
                w.stop()
            for w in workers:
                w.join(_JOIN_SECONDS)
            self._drain()
            if reason == "capture ended":
                # replayed sources: let every scheduled probe complete
                self.engine.wait_pending()
            self.engine.close(wait=True)
            for tm in timers:
                tm.cancel()
            # an export already in flight must land before the final one
            if timers[0].is_alive():
                timers[0].join()
            for tm in timers[1:]:
                if tm.is_alive():
                    tm.join(_JOIN_SECONDS)
            exported = self.engine.export()

        dropped = sum(w.dropped for w in workers)
        if dropped:
            self.engine.count("queue_dropped", dropped)
        errors = {w.name: str(w.error) for w in workers if w.error is not None}
        stats = self.engine.summary()
        log.info("reconstruction finished (%s): %s", reason, ", ".join(f"{k}={v}" for k, v in sorted(stats.items())))
        if not exported:
            log.error("final policy export failed")
        return RunResult(policies=stats["policies"], exported=exported, capture_errors=errors, stats=stats, reason=reason)
