"""Policy persistence.

Two repositories share the same contract: ``load() -> list[Policy]`` and
``save(policies)``, where every save fully replaces what was stored before.

The exported record is a mapping with the fields ``src_addr, src_port,
proto, dst_addr, dst_port`` in that order, every value a string; a
converged client port is written as ``"0"``.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import subprocess
import tempfile
import typing as t
from pathlib import Path

from .store import Policy

log = logging.getLogger("netpolicy.repository")

FIELDS = ("src_addr", "src_port", "proto", "dst_addr", "dst_port")
DEFAULT_TABLE = "network_policy"
IMPORT_BATCH_SIZE = 1000
_TABLE_NAME_MAX = 20


def policy_to_record(p: Policy) -> t.Dict[str, str]:
    return {
        "src_addr": p.src_addr,
        "src_port": str(p.src_port),
        "proto": p.proto,
        "dst_addr": p.dst_addr,
        "dst_port": str(p.dst_port),
    }


def policy_from_record(rec: t.Mapping[str, t.Any]) -> Policy:
    missing = [f for f in FIELDS if rec.get(f) in (None, "")]
    if missing:
        raise ValueError(f"policy record missing {', '.join(missing)}")
    src_port = int(rec["src_port"])
    dst_port = int(rec["dst_port"])
    proto = str(rec["proto"]).lower()
    if proto not in ("tcp", "udp"):
        raise ValueError(f"unsupported protocol {rec['proto']!r}")
    return Policy(str(rec["src_addr"]), src_port, proto, str(rec["dst_addr"]), dst_port)


def records_from_json(data: t.Any) -> t.List[Policy]:
    if not isinstance(data, list):
        raise ValueError("policy file must hold a JSON array")
    out = []
    for rec in data:
        try:
            out.append(policy_from_record(rec))
        except (TypeError, ValueError, AttributeError) as e:
            log.warning("skipping malformed policy record %r: %s", rec, e)
    return out


def system_serial() -> str:
    try:
        proc = subprocess.run(
            ["dmidecode", "-s", "system-serial-number"], capture_output=True, text=True, timeout=5
        )
        serial = proc.stdout.strip().splitlines()[0].strip() if proc.returncode == 0 else ""
    except (OSError, subprocess.SubprocessError, IndexError):
        serial = ""
    return serial or "unavailable"


def default_export_path(directory: str | os.PathLike = ".") -> Path:
    return Path(directory) / f"plc_{system_serial()}.json"


def write_json(path: Path, obj: t.Any) -> None:
    """Overwrite `path` with pretty JSON, replacing the file atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(obj, indent=2, ensure_ascii=False) + "\n"
    fh = tempfile.NamedTemporaryFile(
        "w", dir=path.parent, prefix=path.name + ".", suffix=".tmp", delete=False, encoding="utf-8"
    )
    try:
        with fh:
            fh.write(text)
        os.replace(fh.name, path)
    except OSError:
        os.unlink(fh.name)
        raise


class JsonPolicyRepository:
    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def load(self) -> t.List[Policy]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return []
        return records_from_json(json.loads(text))

    def save(self, policies: t.Iterable[Policy]) -> None:
        write_json(self.path, [policy_to_record(p) for p in policies])

    def __repr__(self) -> str:
        return f"JsonPolicyRepository({str(self.path)!r})"


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _create_table(conn: sqlite3.Connection, table: str, dst_index: bool = False) -> None:
    q = _quote(table)
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS {q} ("
        "src_addr TEXT NOT NULL, src_port TEXT NOT NULL, proto TEXT NOT NULL, "
        "dst_addr TEXT NOT NULL, dst_port TEXT NOT NULL)"
    )
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS {_quote('idx_1_' + table)} ON {q}(src_addr, src_port, proto, dst_addr, dst_port)"
    )
    if dst_index:
        conn.execute(f"CREATE INDEX IF NOT EXISTS {_quote('idx_2_' + table)} ON {q}(dst_addr, dst_port)")


_INSERT = "INSERT INTO {table}(src_addr, src_port, proto, dst_addr, dst_port) VALUES (?, ?, ?, ?, ?)"


def _row(p: Policy) -> t.Tuple[str, ...]:
    rec = policy_to_record(p)
    return tuple(rec[f] for f in FIELDS)


class SqlitePolicyRepository:
    def __init__(self, path: str | os.PathLike, table: str = DEFAULT_TABLE):
        self.path = str(path)
        self.table = table

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        _create_table(conn, self.table)
        return conn

    def load(self) -> t.List[Policy]:
        conn = self._connect()
        try:
            cur = conn.execute(f"SELECT {', '.join(FIELDS)} FROM {_quote(self.table)} ORDER BY rowid")
            return records_from_json([dict(zip(FIELDS, row)) for row in cur])
        finally:
            conn.close()

    def save(self, policies: t.Iterable[Policy]) -> None:
        rows = [_row(p) for p in policies]
        conn = self._connect()
        try:
            with conn:
                conn.execute(f"DELETE FROM {_quote(self.table)}")
                conn.executemany(_INSERT.format(table=_quote(self.table)), rows)
        finally:
            conn.close()

    def __repr__(self) -> str:
        return f"SqlitePolicyRepository({self.path!r}, table={self.table!r})"


class FanoutRepository:
    """Save to several repositories; load from the first one.

    Every target is attempted on save. If any failed, the first error is
    re-raised after the others were written.
    """

    def __init__(self, repositories: t.Sequence[t.Any]):
        if not repositories:
            raise ValueError("need at least one repository")
        self.repositories = list(repositories)

    def load(self) -> t.List[Policy]:
        return self.repositories[0].load()

    def save(self, policies: t.Iterable[Policy]) -> None:
        policies = list(policies)
        first_error: t.Optional[Exception] = None
        for repo in self.repositories:
            try:
                repo.save(policies)
            except Exception as e:
                log.warning("saving to %r failed: %s", repo, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def __repr__(self) -> str:
        return f"FanoutRepository({self.repositories!r})"


def table_name_for(path: Path) -> str:
    name = re.sub(r"\W", "_", path.name.split(".")[0])
    return name[:_TABLE_NAME_MAX] or "policies"


def import_policy_files(directory: str | os.PathLike, db_path: str | os.PathLike) -> t.Dict[str, int]:
    """Load every ``plc_*.json`` under `directory` into its own table.

    A table that already exists is dropped first. Returns rows per table.
    """
    counts: t.Dict[str, int] = {}
    files = sorted(p for p in Path(directory).iterdir() if p.is_file() and p.name.lower().startswith("plc_") and p.name.lower().endswith(".json"))
    conn = sqlite3.connect(str(db_path))
    try:
        for f in files:
            try:
                policies = records_from_json(json.loads(f.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                log.warning("cannot read policy file %s: %s", f, e)
                continue
            table = table_name_for(f)
            with conn:
                conn.execute(f"DROP TABLE IF EXISTS {_quote(table)}")
                _create_table(conn, table, dst_index=True)
                insert = _INSERT.format(table=_quote(table))
                for i in range(0, len(policies), IMPORT_BATCH_SIZE):
                    conn.executemany(insert, [_row(p) for p in policies[i : i + IMPORT_BATCH_SIZE]])
            counts[table] = len(policies)
            log.info("imported %d policies from %s into table %s", len(policies), f.name, table)
    finally:
        conn.close()
    return counts
