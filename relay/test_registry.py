"""Tests for relay.registry - ClientRegistry bindings and broadcast."""

from relay.events import status
from relay.registry import ClientRegistry


class FakeConnection:
    """Minimal Sink that records what it was sent."""

    def __init__(self, fail: bool = False):
        self.alive = True
        self.fail = fail
        self.sent = []
        self.closed = False

    def send(self, envelope):
        if self.fail:
            raise ConnectionResetError("gone")
        self.sent.append(envelope)

    def close(self):
        self.closed = True
        self.alive = False


class TestRegister:

    def test_first_binding_wins(self):
        registry = ClientRegistry()
        first, second = FakeConnection(), FakeConnection()

        assert registry.register(first, "c1") is True
        assert registry.register(second, "c1") is False
        assert registry.lookup("c1") is first
        assert registry.size() == 1

    def test_reregistering_same_connection_is_noop(self):
        registry = ClientRegistry()
        conn = FakeConnection()
        registry.register(conn, "c1")

        assert registry.register(conn, "c1") is False
        assert len(registry) == 1

    def test_dead_binding_is_replaced(self):
        registry = ClientRegistry()
        old, new = FakeConnection(), FakeConnection()
        registry.register(old, "c1")
        old.alive = False

        assert registry.register(new, "c1") is True
        assert registry.lookup("c1") is new

    def test_unregister_returns_client_id(self):
        registry = ClientRegistry()
        conn = FakeConnection()
        registry.register(conn, "c1")

        assert registry.unregister(conn) == "c1"
        assert "c1" not in registry
        assert registry.unregister(conn) is None


class TestBroadcast:

    def test_delivers_to_every_client(self):
        registry = ClientRegistry()
        conns = [FakeConnection() for _ in range(3)]
        for i, conn in enumerate(conns):
            registry.register(conn, f"c{i}")

        env = status("hello")
        assert registry.broadcast(env) == 3
        assert all(conn.sent == [env] for conn in conns)

    def test_failed_client_is_dropped_and_others_still_receive(self):
        registry = ClientRegistry()
        good, bad, other = FakeConnection(), FakeConnection(fail=True), FakeConnection()
        registry.register(good, "good")
        registry.register(bad, "bad")
        registry.register(other, "other")

        assert registry.broadcast(status("x")) == 2
        assert "bad" not in registry
        assert bad.closed
        assert len(good.sent) == 1
        assert len(other.sent) == 1

    def test_empty_registry(self):
        assert ClientRegistry().broadcast(status("x")) == 0
