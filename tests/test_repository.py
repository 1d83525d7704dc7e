import json
import sqlite3
import threading

import pytest

from netpolicy import repository
from netpolicy.repository import (
    FanoutRepository,
    JsonPolicyRepository,
    SqlitePolicyRepository,
    default_export_path,
    import_policy_files,
    policy_to_record,
    records_from_json,
    table_name_for,
)
from netpolicy.store import Policy

POLICIES = [
    Policy("10.0.0.1", 0, "tcp", "10.0.0.9", 443),
    Policy("10.0.0.2", 51000, "udp", "10.0.0.53", 53),
]


def test_record_field_order_and_types():
    rec = policy_to_record(POLICIES[0])
    assert list(rec) == ["src_addr", "src_port", "proto", "dst_addr", "dst_port"]
    assert rec == {"src_addr": "10.0.0.1", "src_port": "0", "proto": "tcp", "dst_addr": "10.0.0.9", "dst_port": "443"}


def test_json_export_overwrites(tmp_path):
    path = tmp_path / "plc_test.json"
    repo = JsonPolicyRepository(path)
    repo.save(POLICIES)
    repo.save(POLICIES[:1])
    data = json.loads(path.read_text())
    assert data == [
        {"src_addr": "10.0.0.1", "src_port": "0", "proto": "tcp", "dst_addr": "10.0.0.9", "dst_port": "443"}
    ]
    assert list(tmp_path.glob("*.tmp")) == []
    assert repo.load() == POLICIES[:1]


def test_json_concurrent_saves_leave_a_whole_file(tmp_path):
    path = tmp_path / "plc_test.json"
    repo = JsonPolicyRepository(path)
    batches = [POLICIES, POLICIES[:1]] * 10
    threads = [threading.Thread(target=repo.save, args=(batch,)) for batch in batches]
    for th in threads:
        th.start()
    for th in threads:
        th.join(5)
    assert repo.load() in (POLICIES, POLICIES[:1])
    assert list(tmp_path.glob("*.tmp")) == []


def test_json_load_missing_or_empty(tmp_path):
    assert JsonPolicyRepository(tmp_path / "absent.json").load() == []
    empty = tmp_path / "empty.json"
    empty.write_text("")
    assert JsonPolicyRepository(empty).load() == []


def test_malformed_records_are_skipped(caplog):
    data = [
        {"src_addr": "10.0.0.1", "src_port": "0", "proto": "TCP", "dst_addr": "10.0.0.9", "dst_port": "443"},
        {"src_addr": "10.0.0.1", "proto": "tcp", "dst_addr": "10.0.0.9", "dst_port": "443"},
        {"src_addr": "10.0.0.1", "src_port": "0", "proto": "icmp", "dst_addr": "10.0.0.9", "dst_port": "0"},
        "garbage",
    ]
    assert records_from_json(data) == [POLICIES[0]]
    assert caplog.text.count("skipping malformed policy record") == 3
    with pytest.raises(ValueError):
        records_from_json({"src_addr": "10.0.0.1"})


def test_sqlite_round_trip(tmp_path):
    repo = SqlitePolicyRepository(tmp_path / "policies.db")
    assert repo.load() == []
    repo.save(POLICIES)
    repo.save(list(reversed(POLICIES)))
    assert repo.load() == list(reversed(POLICIES))
    conn = sqlite3.connect(str(tmp_path / "policies.db"))
    try:
        rows = conn.execute("SELECT src_port, dst_port FROM network_policy").fetchall()
    finally:
        conn.close()
    assert sorted(rows) == [("0", "443"), ("51000", "53")]


def test_fanout_saves_everywhere(tmp_path, memory_repo):
    broken = memory_repo(fail=True)
    good = memory_repo()
    json_repo = JsonPolicyRepository(tmp_path / "out.json")
    fan = FanoutRepository([json_repo, broken, good])
    with pytest.raises(OSError):
        fan.save(POLICIES)
    assert good.policies == POLICIES
    assert fan.load() == POLICIES


def test_default_export_path_uses_serial(monkeypatch, tmp_path):
    monkeypatch.setattr(repository, "system_serial", lambda: "ABC123")
    assert default_export_path(tmp_path) == tmp_path / "plc_ABC123.json"


def test_system_serial_unavailable(monkeypatch):
    def missing(*args, **kwargs):
        raise FileNotFoundError("dmidecode")

    monkeypatch.setattr(repository.subprocess, "run", missing)
    assert repository.system_serial() == "unavailable"


def test_table_name_for(tmp_path):
    assert table_name_for(tmp_path / "plc_ABC-123.json") == "plc_ABC_123"
    assert table_name_for(tmp_path / "plc_0123456789abcdefghijk.json") == "plc_0123456789abcdef"


def test_import_policy_files(tmp_path):
    JsonPolicyRepository(tmp_path / "plc_host1.json").save(POLICIES)
    JsonPolicyRepository(tmp_path / "plc_host2.json").save(POLICIES[:1])
    (tmp_path / "plc_broken.json").write_text("{not json")
    (tmp_path / "other.json").write_text("[]")
    db = tmp_path / "import.db"

    assert import_policy_files(tmp_path, db) == {"plc_host1": 2, "plc_host2": 1}
    # re-import replaces instead of appending
    assert import_policy_files(tmp_path, db) == {"plc_host1": 2, "plc_host2": 1}
    assert SqlitePolicyRepository(db, table="plc_host1").load() == POLICIES
    conn = sqlite3.connect(str(db))
    try:
        names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    finally:
        conn.close()
    assert {"idx_1_plc_host1", "idx_2_plc_host1", "idx_1_plc_host2", "idx_2_plc_host2"} <= names
