"""Per-key locking and observer lists for the detector components."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Registry of one lock per key.

    Unrelated markets or wallets never contend on the same lock. The
    registry lock is held only while looking up or creating a key's lock.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}

    def get(self, key: Hashable) -> threading.RLock:
        """Return the lock for ``key``, creating it on first use."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Context manager that holds the lock for ``key``."""
        lock = self.get(key)
        with lock:
            yield

    def discard(self, key: Hashable) -> None:
        """Forget the lock for ``key`` (after its state is cleared)."""
        with self._registry_lock:
            self._locks.pop(key, None)

    def clear(self) -> None:
        """Forget every lock."""
        with self._registry_lock:
            self._locks.clear()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class ObserverList(Generic[T]):
    """Explicit list of callbacks notified with a single payload.

    Callbacks run synchronously in subscription order. A callback that
    raises is logged and skipped so the remaining observers still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[T], None]:
        """Register a callback. Returns it so this can be used as a decorator."""
        with self._lock:
            self._callbacks.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[T], None]) -> bool:
        """Remove a callback. Returns False if it was not registered."""
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                return False
            return True

    def notify(self, payload: T) -> None:
        """Invoke every callback with ``payload``."""
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Observer for %s failed", self.name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
