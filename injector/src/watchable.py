from __future__ import annotations

import copy
import queue
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

V = TypeVar("V")

Predicate = Callable[[str, Any], bool]

# Upper bound on how long a blocked reader goes without noticing that its
# lifetime event has been set.
_LIFETIME_POLL_SECONDS = 0.05


class Subscription(Generic[V]):
    """A reader's view of an :class:`ObservableMap`.

    The first delivery is the content of the map at the moment of
    subscribing.  After that, every write that touches a matching entry marks
    the subscription dirty and the next snapshot is taken when the reader
    collects it, so any number of writes between two reads collapse into a
    single, complete snapshot of the state after the last write.

    The subscription closes when its map is closed or its lifetime event is
    set.  A closed subscription never yields another snapshot, even if writes
    were pending at the time it closed.
    """

    def __init__(
        self,
        owner: ObservableMap[V],
        lifetime: threading.Event,
        predicate: Predicate | None,
    ) -> None:
        self._owner = owner
        self._lifetime = lifetime
        self._predicate = predicate
        self._pending: dict[str, V] | None = None
        self._dirty = False
        self._closed = False

    def _matches(self, key: str, value: V) -> bool:
        return self._predicate is None or bool(self._predicate(key, value))

    def _expired_locked(self) -> bool:
        if not self._closed and self._lifetime.is_set():
            self._closed = True
        return self._closed

    @property
    def closed(self) -> bool:
        with self._owner._cond:
            return self._expired_locked()

    def get(self, timeout: float | None = None) -> dict[str, V] | None:
        """Return the next snapshot, or ``None`` once the subscription is closed.

        Blocks until a snapshot is pending.  Raises :class:`queue.Empty` if
        *timeout* seconds pass without one.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        cond = self._owner._cond
        with cond:
            while True:
                if self._expired_locked():
                    return None
                if self._pending is not None:
                    snapshot, self._pending = self._pending, None
                    return snapshot
                if self._dirty:
                    self._dirty = False
                    return self._owner._snapshot_locked(self._predicate)

                wait_seconds = _LIFETIME_POLL_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise queue.Empty
                    wait_seconds = min(wait_seconds, remaining)
                cond.wait(timeout=wait_seconds)

    def __iter__(self) -> Iterator[dict[str, V]]:
        while True:
            snapshot = self.get()
            if snapshot is None:
                return
            yield snapshot


class ObservableMap(Generic[V]):
    """Thread-safe ``str -> V`` map with coalesced snapshot subscriptions.

    Values are copied on the way in and on the way out, so no caller can
    observe or cause aliasing with the stored state.  Writers never block on
    subscribers: a write only flags matching subscriptions as dirty and wakes
    any blocked readers.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._values: dict[str, V] = {}
        self._subscriptions: list[Subscription[V]] = []
        self._closed = False

    def _snapshot_locked(self, predicate: Predicate | None) -> dict[str, V]:
        return {
            key: copy.deepcopy(value)
            for key, value in self._values.items()
            if predicate is None or predicate(key, value)
        }

    def _matching_locked(self, key: str, *values: V) -> list[Subscription[V]]:
        """Return the live subscriptions that match *key* under any of *values*.

        Runs every predicate before the caller mutates the map, so a predicate
        that raises leaves the map unchanged.
        """
        live: list[Subscription[V]] = []
        matched: list[Subscription[V]] = []
        for subscription in self._subscriptions:
            if subscription._expired_locked():
                continue
            live.append(subscription)
            if any(subscription._matches(key, value) for value in values):
                matched.append(subscription)
        self._subscriptions = live
        return matched

    def _notify_locked(self, matched: list[Subscription[V]]) -> None:
        for subscription in matched:
            subscription._dirty = True
        self._cond.notify_all()

    def load(self, key: str) -> tuple[V | None, bool]:
        with self._cond:
            if key not in self._values:
                return None, False
            return copy.deepcopy(self._values[key]), True

    def load_all(self) -> dict[str, V]:
        with self._cond:
            return self._snapshot_locked(None)

    def store(self, key: str, value: V) -> None:
        value = copy.deepcopy(value)
        with self._cond:
            if self._closed:
                return
            if key in self._values:
                previous = self._values[key]
                if previous == value:
                    return
                matched = self._matching_locked(key, previous, value)
            else:
                matched = self._matching_locked(key, value)
            self._values[key] = value
            self._notify_locked(matched)

    def load_or_store(self, key: str, value: V) -> tuple[V, bool]:
        """Return the value stored under *key*, storing *value* first if absent.

        The boolean is ``True`` when the key already existed.  The returned
        value is always a copy of what the map now holds.
        """
        stored = copy.deepcopy(value)
        with self._cond:
            if key in self._values:
                return copy.deepcopy(self._values[key]), True
            if self._closed:
                return stored, False
            matched = self._matching_locked(key, stored)
            self._values[key] = stored
            self._notify_locked(matched)
            return copy.deepcopy(stored), False

    def load_and_delete(self, key: str) -> tuple[V | None, bool]:
        with self._cond:
            if self._closed or key not in self._values:
                return None, False
            matched = self._matching_locked(key, self._values[key])
            previous = self._values.pop(key)
            self._notify_locked(matched)
            return copy.deepcopy(previous), True

    def delete(self, key: str) -> None:
        self.load_and_delete(key)

    def subscribe(self, lifetime: threading.Event) -> Subscription[V]:
        """Subscribe to every entry; the first delivery is the content at subscribe time."""
        return self.subscribe_subset(lifetime, None)

    def subscribe_subset(
        self, lifetime: threading.Event, predicate: Predicate | None
    ) -> Subscription[V]:
        """Subscribe to entries for which ``predicate(key, value)`` holds.

        An entry that stops matching is dropped from later snapshots, exactly
        as if it had been deleted.
        """
        subscription: Subscription[V] = Subscription(self, lifetime, predicate)
        with self._cond:
            if self._closed:
                subscription._closed = True
            else:
                subscription._pending = self._snapshot_locked(predicate)
                self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        """Close the map and every subscription.  Later writes are ignored."""
        with self._cond:
            self._closed = True
            for subscription in self._subscriptions:
                subscription._closed = True
            self._subscriptions = []
            self._cond.notify_all()
