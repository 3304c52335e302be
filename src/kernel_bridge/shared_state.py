"""Bounded, thread-safe key/value mailbox shared by host and child.

Values put here by the host are visible to the child's side-channel calls
and vice versa.  The store is hard-bounded: once it holds ``capacity``
entries a put of a new key fails with CapacityExceededError and nothing is
evicted, since values may be references the other side still needs.
"""

from __future__ import annotations

import threading
from typing import Any

from kernel_bridge._logging import get_logger
from kernel_bridge.exceptions import CapacityExceededError, StateKeyNotFoundError

logger = get_logger(__name__)

_MISSING: Any = object()


class SharedState:
    """Fixed-capacity associative store guarded by a single lock.

    Every operation takes the same ``threading.Lock``, so callers on the host
    thread and on the supervisor thread observe one serialized order.

    Attributes:
        capacity: Maximum number of entries.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._entries: dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def put(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``.

        Overwriting an existing key never counts against capacity.

        Raises:
            CapacityExceededError: Store is full and ``key`` is new.
        """
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._capacity:
                raise CapacityExceededError(
                    f"Shared state is full ({self._capacity} entries), cannot store {key!r}",
                    capacity=self._capacity,
                    context={"key": key},
                )
            self._entries[key] = value

    def get(self, key: str, default: Any = _MISSING) -> Any:
        """Return the value under ``key``.

        Raises:
            StateKeyNotFoundError: Key absent and no default given.
        """
        with self._lock:
            try:
                return self._entries[key]
            except KeyError:
                if default is not _MISSING:
                    return default
                raise StateKeyNotFoundError(f"No shared state entry for {key!r}", context={"key": key}) from None

    def lookup(self, key: str) -> tuple[bool, Any]:
        """Return ``(found, value)`` in one locked step."""
        with self._lock:
            if key in self._entries:
                return True, self._entries[key]
            return False, None

    def remove(self, key: str) -> bool:
        """Delete ``key``. Returns whether it was present."""
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def keys(self) -> list[str]:
        """Snapshot of the current keys in insertion order."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.debug("Shared state cleared", extra={"entries": count})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
