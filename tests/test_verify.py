from netpolicy.store import Policy
from netpolicy.verify import find_unreachable


def test_unreachable_destinations_in_first_seen_order(fake_probe):
    policies = [
        Policy("10.0.0.1", 0, "tcp", "10.0.0.9", 443),
        Policy("10.0.0.2", 51000, "tcp", "10.0.0.8", 22),
        Policy("10.0.0.3", 0, "tcp", "10.0.0.9", 443),
        Policy("10.0.0.1", 0, "udp", "10.0.0.7", 53),
    ]
    probe = fake_probe({("10.0.0.8", 22)})
    assert find_unreachable(policies, probe=probe) == [
        {"dst_addr": "10.0.0.9", "dst_port": "443"},
        {"dst_addr": "10.0.0.7", "dst_port": "53"},
    ]
    # each destination probed once
    assert sorted(probe.calls) == [("10.0.0.7", 53), ("10.0.0.8", 22), ("10.0.0.9", 443)]


def test_nothing_to_verify(fake_probe):
    assert find_unreachable([], probe=fake_probe()) == []
