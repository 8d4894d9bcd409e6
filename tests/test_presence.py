"""
Tests for duo_relay.core.presence - last-writer-wins registry with guarded removal
"""

import threading

from duo_relay.core.presence import PresenceRegistry

from conftest import make_connection


def test_register_and_lookup():
    registry = PresenceRegistry()
    conn = make_connection()

    assert registry.register("alice", conn) is None
    assert registry.lookup("alice") is conn
    assert len(registry) == 1


def test_lookup_absent():
    registry = PresenceRegistry()
    assert registry.lookup("nobody") is None


def test_register_overwrites_prior_entry():
    registry = PresenceRegistry()
    first, second = make_connection(), make_connection()
    registry.register("alice", first)

    previous = registry.register("alice", second)

    assert previous is first
    assert registry.lookup("alice") is second
    assert len(registry) == 1


def test_stale_unregister_keeps_newer_session():
    registry = PresenceRegistry()
    first, second = make_connection(), make_connection()
    registry.register("alice", first)
    registry.register("alice", second)

    assert registry.unregister("alice", first) is False
    assert registry.lookup("alice") is second

    assert registry.unregister("alice", second) is True
    assert registry.lookup("alice") is None


def test_unregister_unknown_user():
    registry = PresenceRegistry()
    assert registry.unregister("ghost", make_connection()) is False


def test_online_user_ids_sorted():
    registry = PresenceRegistry()
    for name in ["carol", "alice", "bob"]:
        registry.register(name, make_connection())
    assert registry.online_user_ids() == ["alice", "bob", "carol"]


def test_concurrent_register_unregister():
    registry = PresenceRegistry()
    conns = {f"user{i}": make_connection() for i in range(50)}

    def churn(user_id, conn):
        for _ in range(100):
            registry.register(user_id, conn)
            registry.unregister(user_id, conn)
        registry.register(user_id, conn)

    threads = [threading.Thread(target=churn, args=item) for item in conns.items()]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(registry) == 50
    assert all(registry.lookup(u) is c for u, c in conns.items())
