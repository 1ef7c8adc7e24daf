from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable, Sequence
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from injector.src.agent import CONFIG_MAP_NAME, INJECTOR_KEY, Entry
from injector.src.metrics import METRICS
from injector.src.store import ConfigStore, normalize_data

DELETED = "deleted"
MODIFIED = "modified"


class ConfigWatcher:
    """Keeps one watch stream per namespace open on the agents ConfigMap.

    Each stream runs in its own daemon thread.  The API server closes watch
    connections routinely (``timeout_seconds``, load balancer idle timeouts,
    ``410 Gone``); every such close simply reopens the stream until the stop
    event fires.  Any other ``ApiException`` while opening or reading the
    stream ends that namespace's thread, leaving it unwatched.

    Every ADDED / MODIFIED / DELETED event is diffed against the
    :class:`~injector.src.store.ConfigStore` cache and the resulting entries
    are put on two bounded queues, deletions first.  Puts block until the
    consumer takes the entry or the stop event fires, so a slow consumer
    stalls the watch stream instead of growing a backlog.  The reserved
    injector settings key is never dispatched.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        store: ConfigStore,
        name: str = CONFIG_MAP_NAME,
        namespaces: Sequence[str] = (),
        queue_size: int = 1,
        timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        poll_seconds: float = 0.5,
    ) -> None:
        self.core_api = core_api
        self.store = store
        self.name = name
        self.namespaces = tuple(namespaces)
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.poll_seconds = poll_seconds

        self.modified: queue.Queue[Entry] = queue.Queue(maxsize=queue_size)
        self.deleted: queue.Queue[Entry] = queue.Queue(maxsize=queue_size)
        # One permit per entry sitting in either queue.
        self._pending = threading.Semaphore(0)

        self._threads: list[threading.Thread] = []
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def start(self, stop: threading.Event) -> tuple[queue.Queue[Entry], queue.Queue[Entry]]:
        """Start the watch threads and return the ``(modified, deleted)`` queues.

        With no configured namespaces a single cluster-wide watch is started.
        """
        self._external_stop.clear()
        namespaces = self.namespaces or ("",)
        for namespace in namespaces:
            thread = threading.Thread(
                target=self._watch_namespace,
                args=(namespace, stop),
                name=f"agent-config-watch-{namespace or 'all'}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        METRICS.watched_namespaces.set(len(namespaces))
        return self.modified, self.deleted

    def request_stop(self) -> None:
        """Stop every watch thread and interrupt any open stream."""
        self._external_stop.set()
        with self._watchers_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        METRICS.watched_namespaces.set(len(self._threads))

    def next_entry(self, stop: threading.Event) -> tuple[str, Entry] | None:
        """Block until a deleted or modified entry is available.

        Returns ``(DELETED | MODIFIED, entry)``, or ``None`` once *stop* fires.
        Deleted entries are preferred when both queues hold one.
        """
        while not self._should_stop(stop):
            if not self._pending.acquire(timeout=self.poll_seconds):
                continue
            # Every permit is released after its put, so at least one entry is queued.
            try:
                return DELETED, self.deleted.get_nowait()
            except queue.Empty:
                return MODIFIED, self.modified.get_nowait()
        return None

    def _watch_namespace(self, namespace: str, stop: threading.Event) -> None:
        label = namespace or "*"
        self.logger.info("Started watcher for ConfigMap %s.%s", self.name, label)
        try:
            while not self._should_stop(stop):
                if not self._stream_once(namespace, stop):
                    return
                if not self._should_stop(stop):
                    METRICS.watch_restarts_total.labels(namespace=label).inc()
        finally:
            self.logger.info("Ended watcher for ConfigMap %s.%s", self.name, label)

    def _open_stream(self, watcher: watch.Watch, namespace: str) -> Iterable[dict[str, Any]]:
        field_selector = f"metadata.name={self.name}"
        if namespace:
            return watcher.stream(
                self.core_api.list_namespaced_config_map,
                namespace=namespace,
                field_selector=field_selector,
                timeout_seconds=self.timeout_seconds,
            )
        return watcher.stream(
            self.core_api.list_config_map_for_all_namespaces,
            field_selector=field_selector,
            timeout_seconds=self.timeout_seconds,
        )

    def _stream_once(self, namespace: str, stop: threading.Event) -> bool:
        """Consume one watch stream.  Returns ``True`` if the stream should be reopened."""
        label = namespace or "*"
        watcher = watch.Watch()
        with self._watchers_lock:
            self._active_watchers.add(watcher)
        received = False
        try:
            for event in self._open_stream(watcher, namespace):
                if self._should_stop(stop):
                    return False
                received = True
                self.handle_event(event, stop)
            return True
        except ApiException as exc:
            if exc.status == 410:
                self.logger.info("Watch for ConfigMap %s.%s expired; restarting", self.name, label)
                return True
            self.logger.error(
                "Unable to watch ConfigMap %s.%s (status=%s): %s",
                self.name,
                label,
                exc.status,
                exc.reason,
            )
            METRICS.watch_errors_total.inc()
            return False
        except Exception:
            METRICS.watch_errors_total.inc()
            if not received:
                self.logger.exception("Unable to open watch for ConfigMap %s.%s", self.name, label)
                return False
            self.logger.warning(
                "Watch for ConfigMap %s.%s disconnected; restarting",
                self.name,
                label,
                exc_info=True,
            )
            return True
        finally:
            watcher.stop()
            with self._watchers_lock:
                self._active_watchers.discard(watcher)

    def handle_event(self, event: dict[str, Any], stop: threading.Event) -> None:
        """Diff one watch event against the cache and dispatch the resulting entries."""
        event_type = str(event.get("type", ""))
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return

        obj = event.get("object")
        metadata = getattr(obj, "metadata", None)
        if metadata is None or metadata.name != self.name:
            return

        namespace = metadata.namespace or ""
        self.logger.info("%s %s.%s", event_type, metadata.name, namespace)
        if event_type == "DELETED":
            deleted, modified = self.store.apply(namespace, None)
        else:
            deleted, modified = self.store.apply(namespace, normalize_data(getattr(obj, "data", None)))

        self._dispatch(deleted, self.deleted, stop)
        self._dispatch(modified, self.modified, stop)

    def _dispatch(self, entries: list[Entry], target: queue.Queue[Entry], stop: threading.Event) -> None:
        for entry in entries:
            if entry.name == INJECTOR_KEY:
                continue
            if not self._put(target, entry, stop):
                return

    def _put(self, target: queue.Queue[Entry], entry: Entry, stop: threading.Event) -> bool:
        while not self._should_stop(stop):
            try:
                target.put(entry, timeout=self.poll_seconds)
            except queue.Full:
                continue
            self._pending.release()
            return True
        return False
