"""Key/value store with expiry metadata.

The rate limiter keeps one record per ``(config_key, identifier)`` slot in a
``KeyStore``. Namespaces keep one policy's slots apart from another's so a
whole policy can be reset without scanning key prefixes.

Only an in-process backend ships. A shared backend (e.g. a remote KV) would
implement the same interface, with ``update`` mapped onto the store's own
atomic primitive.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, TypeVar

R = TypeVar("R")


def is_expired(expires_at: Optional[float], now: float) -> bool:
    """Return True if a record with ``expires_at`` is dead at ``now``.

    ``None`` means the record never expires. Every read path and every
    sweep uses this one predicate.
    """
    if expires_at is None:
        return False
    return now >= expires_at


@dataclass
class _Slot:
    """Internal record with TTL tracking."""

    value: Any
    expires_at: Optional[float] = None


class Write(NamedTuple):
    """New state for a slot, returned by an ``update`` mutator."""

    value: Any
    expires_at: Optional[float] = None


# A mutator receives the live value (None if absent or expired) and returns
# the caller's result plus the Write to apply, or None to leave the slot as is.
Mutator = Callable[[Optional[Any]], Tuple[R, Optional[Write]]]


class KeyStore(ABC):
    """Abstract base class for rate limit state stores."""

    @abstractmethod
    def get(self, namespace: str, key: str, now: float) -> Optional[Any]:
        """Return the live value of a slot, or None if absent or expired."""

    @abstractmethod
    def update(self, namespace: str, key: str, now: float, mutator: Mutator) -> R:
        """Atomically read, decide and write one slot.

        Args:
            namespace: Slot namespace (the rate limit config key)
            key: Slot key (the caller identifier)
            now: Current time, used for lazy expiry of the existing value
            mutator: Function computing ``(result, write_or_none)``

        Returns:
            The mutator's result
        """

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Remove one slot. Returns True if it existed."""

    @abstractmethod
    def clear_namespace(self, namespace: str) -> int:
        """Remove every slot in a namespace. Returns the number removed."""

    @abstractmethod
    def clear(self) -> int:
        """Remove every slot in every namespace."""

    @abstractmethod
    def count(self, namespace: Optional[str] = None) -> int:
        """Number of stored slots, expired or not."""

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        """Remove expired slots. Returns the number removed."""


class InMemoryKeyStore(KeyStore):
    """In-memory key store guarded by a re-entrant lock.

    The lock is a ``threading.RLock`` and no method awaits while holding it,
    so ``update`` is atomic both between asyncio tasks and between threads.

    Note: data is lost when the process restarts.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, _Slot]] = {}
        self._lock = threading.RLock()

    def get(self, namespace: str, key: str, now: float) -> Optional[Any]:
        with self._lock:
            slot = self._data.get(namespace, {}).get(key)
            if slot is None or is_expired(slot.expires_at, now):
                return None
            return slot.value

    def update(self, namespace: str, key: str, now: float, mutator: Mutator) -> R:
        with self._lock:
            bucket = self._data.get(namespace, {})
            slot = bucket.get(key)
            current = None
            if slot is not None and not is_expired(slot.expires_at, now):
                current = slot.value

            result, write = mutator(current)

            if write is not None:
                self._data.setdefault(namespace, {})[key] = _Slot(
                    value=write.value, expires_at=write.expires_at
                )
            elif slot is not None and current is None:
                # Expired slot touched by a read-only decision
                del bucket[key]
            return result

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            bucket = self._data.get(namespace)
            if bucket is None or key not in bucket:
                return False
            del bucket[key]
            if not bucket:
                del self._data[namespace]
            return True

    def clear_namespace(self, namespace: str) -> int:
        with self._lock:
            bucket = self._data.pop(namespace, None)
            return len(bucket) if bucket else 0

    def clear(self) -> int:
        with self._lock:
            removed = sum(len(bucket) for bucket in self._data.values())
            self._data.clear()
            return removed

    def count(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            if namespace is not None:
                return len(self._data.get(namespace, {}))
            return sum(len(bucket) for bucket in self._data.values())

    def keys(self, namespace: str) -> List[str]:
        """Snapshot of the keys stored in a namespace."""
        with self._lock:
            return list(self._data.get(namespace, {}))

    def purge_expired(self, now: float) -> int:
        with self._lock:
            removed = 0
            for namespace in list(self._data):
                bucket = self._data[namespace]
                expired = [
                    key for key, slot in bucket.items()
                    if is_expired(slot.expires_at, now)
                ]
                for key in expired:
                    del bucket[key]
                removed += len(expired)
                if not bucket:
                    del self._data[namespace]
            return removed
