"""Tests for the namespaced key store."""

from apiguard.app.core.keystore import InMemoryKeyStore, Write, is_expired


class TestIsExpired:
    """The shared expiry predicate."""

    def test_none_never_expires(self):
        """expires_at=None is never expired."""
        assert not is_expired(None, 10**12)

    def test_boundary_is_expired(self):
        """A record is dead from expires_at on."""
        assert not is_expired(100.0, 99.999)
        assert is_expired(100.0, 100.0)
        assert is_expired(100.0, 100.1)


class TestInMemoryKeyStore:
    """Atomic update and housekeeping."""

    def test_update_writes_value(self):
        """A mutator's Write is stored and its result returned."""
        store = InMemoryKeyStore()
        result = store.update("ns", "k", 0.0, lambda current: ("ok", Write(1, 10.0)))
        assert result == "ok"
        assert store.get("ns", "k", 5.0) == 1

    def test_update_sees_current_value(self):
        """The mutator receives the live value."""
        store = InMemoryKeyStore()
        store.update("ns", "k", 0.0, lambda current: (None, Write(1)))
        seen = []
        store.update("ns", "k", 1.0, lambda current: (seen.append(current), Write(current + 1)))
        assert seen == [1]
        assert store.get("ns", "k", 2.0) == 2

    def test_expired_value_is_hidden(self):
        """Expired records read as None and are dropped when left unwritten."""
        store = InMemoryKeyStore()
        store.update("ns", "k", 0.0, lambda current: (None, Write("v", 10.0)))

        seen = []
        store.update("ns", "k", 10.0, lambda current: (seen.append(current), None))
        assert seen == [None]
        assert store.count("ns") == 0

    def test_no_write_keeps_live_value(self):
        """Returning no Write leaves a live slot untouched."""
        store = InMemoryKeyStore()
        store.update("ns", "k", 0.0, lambda current: (None, Write("v", 10.0)))
        store.update("ns", "k", 5.0, lambda current: (None, None))
        assert store.get("ns", "k", 5.0) == "v"

    def test_namespaces_are_isolated(self):
        """Clearing one namespace leaves the others."""
        store = InMemoryKeyStore()
        store.update("a", "k", 0.0, lambda c: (None, Write(1)))
        store.update("a", "j", 0.0, lambda c: (None, Write(1)))
        store.update("b", "k", 0.0, lambda c: (None, Write(2)))

        assert store.clear_namespace("a") == 2
        assert store.get("b", "k", 0.0) == 2
        assert store.count() == 1

    def test_delete(self):
        """delete reports whether the slot existed."""
        store = InMemoryKeyStore()
        store.update("ns", "k", 0.0, lambda c: (None, Write(1)))
        assert store.delete("ns", "k")
        assert not store.delete("ns", "k")
        assert store.keys("ns") == []

    def test_purge_expired(self):
        """purge_expired removes only dead slots."""
        store = InMemoryKeyStore()
        store.update("ns", "old", 0.0, lambda c: (None, Write(1, 5.0)))
        store.update("ns", "new", 0.0, lambda c: (None, Write(1, 50.0)))
        store.update("ns", "forever", 0.0, lambda c: (None, Write(1)))

        assert store.purge_expired(10.0) == 1
        assert sorted(store.keys("ns")) == ["forever", "new"]

    def test_clear(self):
        """clear empties every namespace."""
        store = InMemoryKeyStore()
        store.update("a", "k", 0.0, lambda c: (None, Write(1)))
        store.update("b", "k", 0.0, lambda c: (None, Write(1)))
        assert store.clear() == 2
        assert store.count() == 0
