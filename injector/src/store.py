from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta

from injector.src.agent import (
    CONFIG_MAP_NAME,
    AgentConfig,
    Entry,
    decode_agent_config,
    encode_agent_config,
)
from injector.src.metrics import METRICS
from injector.src.watchable import ObservableMap

LOGGER = logging.getLogger(__name__)


def snapshot_key(name: str, namespace: str) -> str:
    return f"{name}.{namespace}"


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a stable ``dict[str, str]``."""
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


class ConfigStore:
    """Local mirror of the agents ConfigMap of every watched namespace.

    The cache maps ``namespace -> {agent name: YAML}`` and is guarded by a
    single lock shared by all namespaces.  No API call is ever made while the
    lock is held.  The same content is mirrored into :attr:`snapshots`, keyed
    ``name.namespace``, for in-process subscribers.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config_map_name: str = CONFIG_MAP_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.config_map_name = config_map_name
        self.logger = logger or LOGGER
        self.snapshots: ObservableMap[str] = ObservableMap()
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, str]] = {}

    def get(self, key: str, namespace: str) -> AgentConfig | None:
        """Return the cached agent config for ``(key, namespace)``, if any.

        Raises :class:`~injector.src.agent.AgentConfigError` when the cached
        value is not a valid agent config.
        """
        with self._lock:
            value = self._data.get(namespace, {}).get(key)
        if value is None:
            return None
        return decode_agent_config(value)

    def _set_locked(self, namespace: str, key: str, value: str) -> None:
        self._data.setdefault(namespace, {})[key] = value
        self.snapshots.store(snapshot_key(key, namespace), value)

    def apply(
        self, namespace: str, data: Mapping[str, str] | None
    ) -> tuple[list[Entry], list[Entry]]:
        """Replace the cached content of *namespace* with *data* and return the diff.

        Returns ``(deleted, modified)``.  Keys that disappeared become deleted
        entries carrying their last cached value; keys that are new or whose
        value changed become modified entries.  Unchanged keys produce nothing.
        ``data=None`` means the ConfigMap itself was deleted.
        """
        incoming = dict(data or {})
        deleted: list[Entry] = []
        modified: list[Entry] = []
        with self._lock:
            cached = self._data.setdefault(namespace, {})
            for key in sorted(cached):
                if key not in incoming:
                    deleted.append(Entry(name=key, namespace=namespace, value=cached.pop(key)))
                    self.snapshots.delete(snapshot_key(key, namespace))
            for key in sorted(incoming):
                value = incoming[key]
                if cached.get(key) != value:
                    modified.append(Entry(name=key, namespace=namespace, value=value))
                    self._set_locked(namespace, key, value)
        return deleted, modified

    def store(self, config: AgentConfig, update_cache: bool) -> bool:
        """Write *config* into the agents ConfigMap of its namespace.

        Returns ``False`` without touching the API when the cache already
        holds an identical encoding.  With ``update_cache=True`` the cache is
        updated before the write, so the watcher's own diff of the resulting
        change comes out empty and no rollout follows.  The ConfigMap is
        created when it does not exist yet.  API failures propagate.
        """
        value = encode_agent_config(config)
        namespace = config.namespace
        key = config.agent_name

        with self._lock:
            unchanged = self._data.get(namespace, {}).get(key) == value
        if unchanged:
            METRICS.store_writes_total.labels(operation="unchanged").inc()
            return False

        existing: Any = None
        try:
            existing = self.core_api.read_namespaced_config_map(
                name=self.config_map_name, namespace=namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                raise

        if update_cache:
            with self._lock:
                self._set_locked(namespace, key, value)

        if existing is None:
            self.logger.info("Creating new ConfigMap %s.%s", self.config_map_name, namespace)
            body = V1ConfigMap(
                api_version="v1",
                kind="ConfigMap",
                metadata=V1ObjectMeta(name=self.config_map_name, namespace=namespace),
                data={key: value},
            )
            self.core_api.create_namespaced_config_map(namespace=namespace, body=body)
            METRICS.store_writes_total.labels(operation="create").inc()
        else:
            self.logger.info("Updating ConfigMap %s.%s", self.config_map_name, namespace)
            data = normalize_data(getattr(existing, "data", None))
            data[key] = value
            existing.data = data
            self.core_api.replace_namespaced_config_map(
                name=self.config_map_name, namespace=namespace, body=existing
            )
            METRICS.store_writes_total.labels(operation="update").inc()
        return True
