"""Command line interface for netpolicy.

Exit codes: 0 success, 2 partial (final export failed or a capture worker
failed), 3 capture/permission/startup failure, 10 internal error.
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from . import __version__
from .config import PROFILE_PRESETS, DEFAULT_PROFILE, RebuildConfig
from .errors import StartupError
from .logging_config import setup_logging

EXIT_OK = 0
EXIT_PARTIAL = 2
EXIT_CAPTURE = 3
EXIT_INTERNAL = 10

DEFAULT_UNREACHABLE_FILE = "plc_outbound_unreachable.json"


def _doctor_checks():
    """Run environment checks and return (exit_code, report_dict)."""
    import socket

    import psutil

    report = {"python": sys.version.splitlines()[0], "checks": []}
    py_ok = sys.version_info >= (3, 10)
    report["checks"].append({"name": "python_version", "ok": py_ok, "detail": sys.version})

    # live capture needs raw socket permission
    live_ok = True
    live_detail = "ok"
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_TCP)
        s.close()
    except PermissionError:
        live_ok = False
        live_detail = "permission denied for raw socket"
    except OSError as e:
        live_ok = False
        live_detail = f"raw socket check failed: {e}"
    report["checks"].append({"name": "live_capture_permission", "ok": live_ok, "detail": live_detail})

    try:
        n = len(psutil.net_connections(kind="inet"))
        table_ok, table_detail = True, f"{n} sockets visible"
    except Exception as e:
        table_ok, table_detail = False, f"socket table unavailable: {e}"
    report["checks"].append({"name": "socket_table", "ok": table_ok, "detail": table_detail})

    out_dir = Path(".")
    try:
        probe_file = out_dir / ".netpolicy_doctor_test"
        probe_file.write_text("ok")
        probe_file.unlink()
        out_ok, out_detail = True, str(out_dir.resolve())
    except OSError as e:
        out_ok, out_detail = False, str(e)
    report["checks"].append({"name": "writable_output_dir", "ok": out_ok, "detail": out_detail})

    if not py_ok or not out_ok:
        code = EXIT_INTERNAL
    elif not live_ok or not table_ok:
        code = EXIT_CAPTURE
    else:
        code = EXIT_OK
    return code, report


def build_parser():
    p = argparse.ArgumentParser(prog="netpolicy", description="Rebuild network access policies from observed traffic")
    p.add_argument("--log", default="INFO", help="Log level")
    p.add_argument("--log-file", help="Also write logs to FILE", metavar="FILE")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="cmd")

    r = sub.add_parser("rebuild", help="Capture traffic and infer client->server policies")
    r.add_argument("--minutes", type=float, dest="duration_minutes", help="Capture duration in minutes, 0 runs until interrupted (default: 1)")
    r.add_argument("--interface", action="append", dest="interfaces", metavar="IFACE", help="Interface to capture on (repeatable; default: all)")
    r.add_argument("--pcap-file", help="Replay a pcap/pcapng file instead of live capture")
    r.add_argument("--max-packets", type=int, help="Stop replay after N packets")
    r.add_argument("--out", help="Policy JSON file (default: ./plc_<serial>.json)", metavar="FILE")
    r.add_argument("--db", help="Also keep policies in this SQLite database", metavar="FILE")
    r.add_argument("--resume", action="store_true", default=None, help="Start from the policies already stored")
    r.add_argument("--export-interval", type=float, help="Seconds between periodic exports")
    r.add_argument("--listener-refresh", type=float, dest="listener_refresh_interval", help="Seconds between socket table refreshes (default: never)")
    r.add_argument("--probe-timeout", type=float, help="TCP probe timeout in seconds (default: 1)")
    r.add_argument("--probe-workers", type=int, help="Concurrent probes (default: 8)")
    r.add_argument("--max-pending", type=int, help="Flows waiting for a probe before new ones are skipped (default: 256)")
    r.add_argument("--queue-size", type=int, help="Capture queue capacity (default: 10000)")
    r.add_argument("--bpf", dest="bpf_filter", help="BPF capture filter (overrides the profile)")
    r.add_argument("--exclude-port", type=int, action="append", dest="excluded_ports", metavar="PORT", help="Ignore flows touching PORT (default: 20)")
    r.add_argument("--local-address", action="append", metavar="ADDR/PREFIX", help="Use these local addresses instead of the host's (repeatable)")
    r.add_argument("--no-listeners", action="store_true", help="Do not read the local socket table")
    r.add_argument("--profile", choices=sorted(PROFILE_PRESETS), default=DEFAULT_PROFILE, help="Preset profile")
    r.add_argument("--quiet", action="store_true", help="Suppress the stdout summary")

    s = sub.add_parser("sweep", help="Probe every address of a subnet for open TCP ports")
    s.add_argument("host", help="Address inside the subnet, e.g. 192.168.0.1")
    s.add_argument("mask", help="Subnet mask, e.g. 255.255.255.0")
    s.add_argument("ports", help="Port, range (21-29) or list (21,23,29)")
    s.add_argument("--timeout", type=float, default=1.0, help="Probe timeout in seconds")
    s.add_argument("--workers", type=int, default=32, help="Concurrent probes")
    s.add_argument("--open-only", action="store_true", help="Only print open ports")
    s.add_argument("--json", action="store_true", help="Emit JSON instead of text")

    v = sub.add_parser("verify", help="List policy destinations that no longer accept connections")
    v.add_argument("policy_file", help="Policy JSON file")
    v.add_argument("--out", default=DEFAULT_UNREACHABLE_FILE, help="Where to write unreachable destinations", metavar="FILE")
    v.add_argument("--timeout", type=float, default=1.0, help="Probe timeout in seconds")
    v.add_argument("--workers", type=int, default=16, help="Concurrent probes")

    i = sub.add_parser("import", help="Load plc_*.json policy files into an SQLite database")
    i.add_argument("directory", nargs="?", default=".", help="Directory holding plc_*.json files")
    i.add_argument("--db", required=True, help="SQLite database file", metavar="FILE")

    d = sub.add_parser("doctor", help="Run environment checks and exit with a machine-friendly code")
    d.add_argument("--json", action="store_true", help="Emit a JSON report instead of a human summary")
    return p, {"rebuild": r, "sweep": s, "verify": v, "import": i, "doctor": d}


def _parse_local_addresses(values):
    out = []
    for v in values:
        addr, _, prefix = v.partition("/")
        out.append((addr, int(prefix) if prefix else 32))
    return out


def _cmd_rebuild(args, log) -> int:
    from .capture import live_source, replay_source, select_interfaces
    from .engine import InferenceEngine
    from .listeners import get_listeners
    from .addresses import get_local_addresses
    from .rebuild import Rebuild
    from .repository import FanoutRepository, JsonPolicyRepository, SqlitePolicyRepository, default_export_path

    try:
        cfg = RebuildConfig.from_args(args)
    except ValueError as e:
        log.error("invalid configuration: %s", e)
        return EXIT_INTERNAL

    out_path = Path(cfg.out) if cfg.out else default_export_path()
    repos = [JsonPolicyRepository(out_path)]
    if cfg.db:
        repos.append(SqlitePolicyRepository(cfg.db))
    repository = repos[0] if len(repos) == 1 else FanoutRepository(repos)

    if args.local_address:
        local = _parse_local_addresses(args.local_address)
        address_provider = lambda: local
    else:
        address_provider = get_local_addresses
    listener_provider = (lambda: []) if args.no_listeners else get_listeners

    try:
        engine = InferenceEngine.from_providers(
            address_provider,
            listener_provider,
            repository=repository,
            probe_timeout=cfg.probe_timeout,
            probe_workers=cfg.probe_workers,
            max_pending=cfg.max_pending,
            excluded_ports=cfg.excluded_ports,
        )
        if cfg.pcap_file:
            if not Path(cfg.pcap_file).exists():
                raise StartupError(f"pcap file not found: {cfg.pcap_file}")
            sources = {"replay": replay_source(cfg.pcap_file, cfg.max_packets)}
        else:
            sources = {name: live_source(name, cfg.bpf_filter) for name in select_interfaces(cfg.interfaces)}
    except StartupError as e:
        log.error("%s", e)
        return EXIT_CAPTURE

    if cfg.resume:
        engine.resume()

    run = Rebuild(cfg, engine, sources, listener_provider=None if args.no_listeners else listener_provider)
    previous = {}

    def _on_signal(signum, frame):
        log.warning("received signal %s, finishing", signum)
        run.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _on_signal)
        except ValueError:
            # not the main thread
            pass
    try:
        result = run.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if not args.quiet:
        print(f"netpolicy v{__version__} - {result.policies} policies written to {out_path} ({result.reason})")
    if result.capture_errors and len(result.capture_errors) == len(sources):
        return EXIT_CAPTURE
    if not result.exported or result.capture_errors:
        return EXIT_PARTIAL
    return EXIT_OK


def _cmd_sweep(args, log) -> int:
    from .probe import parse_port_spec, sweep

    try:
        ports = parse_port_spec(args.ports)
        results = sweep(args.host, args.mask, ports, timeout=args.timeout, workers=args.workers)
    except ValueError as e:
        log.error("%s", e)
        return EXIT_INTERNAL
    if args.open_only:
        results = [r for r in results if r["open"]]
    if args.json:
        print(json.dumps(results, indent=2))
    else:
        for r in results:
            print(f"{r['addr']}:{r['port']} {'open' if r['open'] else 'closed'}")
    return EXIT_OK


def _cmd_verify(args, log) -> int:
    from .repository import JsonPolicyRepository, write_json
    from .verify import find_unreachable

    src = Path(args.policy_file)
    if not src.exists():
        log.error("policy file not found: %s", src)
        return EXIT_INTERNAL
    try:
        policies = JsonPolicyRepository(src).load()
    except (OSError, ValueError) as e:
        log.error("cannot read policy file %s: %s", src, e)
        return EXIT_INTERNAL
    log.info("policy count: %d", len(policies))
    unreachable = find_unreachable(policies, timeout=args.timeout, workers=args.workers)
    write_json(Path(args.out), unreachable)
    print(f"{len(unreachable)} unreachable destinations written to {args.out}")
    return EXIT_OK


def _cmd_import(args, log) -> int:
    from .repository import import_policy_files

    if not Path(args.directory).is_dir():
        log.error("not a directory: %s", args.directory)
        return EXIT_INTERNAL
    counts = import_policy_files(args.directory, args.db)
    for table, n in sorted(counts.items()):
        print(f"{table}: {n} policies")
    return EXIT_OK


def _cmd_doctor(args, log) -> int:
    code, report = _doctor_checks()
    report.setdefault("meta", {})["version"] = __version__
    if args.json:
        print(json.dumps(report, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    else:
        ok = all(c.get("ok") for c in report.get("checks", []))
        print(f"netpolicy v{__version__} - Doctor checks: {'OK' if ok else 'ISSUES'}")
        for c in report.get("checks", []):
            status = "OK" if c.get("ok") else "FAIL"
            print(f"- {c.get('name')}: {status} ({c.get('detail')})")
    return code


COMMANDS = {
    "rebuild": _cmd_rebuild,
    "sweep": _cmd_sweep,
    "verify": _cmd_verify,
    "import": _cmd_import,
    "doctor": _cmd_doctor,
}


def main(argv=None) -> int:
    parser, _ = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log, args.log_file)
    log = logging.getLogger("netpolicy.cli")
    handler = COMMANDS.get(args.cmd)
    if handler is None:
        parser.print_help()
        return EXIT_OK
    try:
        return handler(args, log)
    except Exception:
        log.exception("%s failed unexpectedly", args.cmd)
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
