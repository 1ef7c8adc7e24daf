from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from injector.src.agent import (
    CONFIG_MAP_NAME,
    DOMAIN_PREFIX,
    INJECTOR_KEY,
    AgentConfig,
    AgentConfigError,
    Entry,
    InjectorConfig,
    decode_agent_config,
    decode_injector_config,
)
from injector.src.config import ControllerConfig, load_config
from injector.src.generator import ConfigGenerator
from injector.src.kube import (
    Workload,
    WorkloadError,
    get_workload,
    patch_workload_restart,
    utc_now_rfc3339,
)
from injector.src.metrics import METRICS
from injector.src.store import ConfigStore
from injector.src.watchable import Predicate, Subscription
from injector.src.watcher import DELETED, ConfigWatcher

LOGGER = logging.getLogger(__name__)

Generator = Callable[[Workload, Any], AgentConfig]


class AgentConfigController:
    """Reconciles workloads with the agent configs stored in the agents ConfigMaps.

    A :class:`~injector.src.watcher.ConfigWatcher` turns ConfigMap watch
    events into deleted / modified entries; this class consumes them one at a
    time on the thread that calls :meth:`run_forever`:

    * deleted entry: roll the workload out, unless the config still had
      ``create=True`` (it was deleted before anything was generated for it);
    * modified entry with ``create=True``: generate the config and store it
      with the cache pre-updated, so the resulting ConfigMap change does not
      come back as another modified entry.  No rollout;
    * modified entry with ``create=False``: roll the workload out.

    Entries whose config cannot be decoded or whose workload cannot be read
    are logged and dropped.  Failed rollout patches are logged and not retried;
    the next change to the entry is the retry.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        generator: Generator,
        namespaces: Sequence[str] = (),
        config_map_name: str = CONFIG_MAP_NAME,
        annotation_prefix: str = DOMAIN_PREFIX,
        queue_size: int = 1,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.generator = generator
        self.restart_annotation_key = f"{annotation_prefix}restartedAt"
        self.logger = logger or LOGGER
        self.now_fn = now_fn

        self.config_store = ConfigStore(core_api, config_map_name=config_map_name)
        self.watcher = ConfigWatcher(
            core_api,
            self.config_store,
            name=config_map_name,
            namespaces=namespaces,
            queue_size=queue_size,
            timeout_seconds=watch_timeout_seconds,
        )
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def get(self, key: str, namespace: str) -> AgentConfig | None:
        """Return the cached agent config stored under *key* in *namespace*."""
        return self.config_store.get(key, namespace)

    def store(self, config: AgentConfig, update_cache: bool = False) -> bool:
        """Store an externally generated agent config.  See :meth:`ConfigStore.store`."""
        return self.config_store.store(config, update_cache)

    def subscribe(
        self, lifetime: threading.Event, predicate: Predicate | None = None
    ) -> Subscription[str]:
        """Subscribe to the cached agent configs, keyed ``name.namespace``."""
        return self.config_store.snapshots.subscribe_subset(lifetime, predicate)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt the open watch streams."""
        self._external_stop.set()
        self.watcher.request_stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _resolve(self, entry: Entry) -> tuple[AgentConfig, Workload] | None:
        try:
            config = decode_agent_config(entry.value)
        except AgentConfigError as exc:
            self.logger.error(
                "Failed to decode ConfigMap entry %s.%s into an agent config: %s",
                entry.name,
                entry.namespace,
                exc,
            )
            METRICS.event_errors_total.labels(reason="decode").inc()
            return None

        try:
            workload = get_workload(
                self.apps_api,
                name=config.workload_name,
                namespace=config.namespace,
                kind=config.workload_kind,
            )
        except WorkloadError as exc:
            self.logger.error("%s", exc)
            METRICS.event_errors_total.labels(reason="resolve").inc()
            return None
        except ApiException as exc:
            self.logger.error(
                "Unable to get %s %s.%s: %s",
                config.workload_kind,
                config.workload_name,
                config.namespace,
                exc.reason,
            )
            METRICS.event_errors_total.labels(reason="resolve").inc()
            return None
        return config, workload

    def trigger_rollout(self, workload: Workload) -> bool:
        """Restart the workload's pods.  Returns ``False`` if the patch failed."""
        try:
            patch_workload_restart(
                workload,
                annotation_key=self.restart_annotation_key,
                timestamp=self.now_fn(),
            )
        except ApiException as exc:
            self.logger.error(
                "Unable to patch %s %s.%s: %s",
                workload.kind,
                workload.name,
                workload.namespace,
                exc.reason,
            )
            METRICS.rollout_errors_total.labels(kind=workload.kind).inc()
            return False
        self.logger.info("Successfully rolled out %s.%s", workload.name, workload.namespace)
        METRICS.rollouts_total.labels(kind=workload.kind).inc()
        return True

    def handle_deleted_entry(self, entry: Entry) -> bool:
        """Process a deleted entry.  Returns ``True`` when a rollout was triggered."""
        self.logger.info("del %s.%s", entry.name, entry.namespace)
        resolved = self._resolve(entry)
        if resolved is None:
            return False
        config, workload = resolved
        if config.create:
            # Deleted before it was generated; nothing to undo.
            return False
        return self.trigger_rollout(workload)

    def handle_modified_entry(self, entry: Entry) -> bool:
        """Process an added or modified entry.  Returns ``True`` when a rollout was triggered."""
        self.logger.info("add %s.%s", entry.name, entry.namespace)
        resolved = self._resolve(entry)
        if resolved is None:
            return False
        config, workload = resolved
        if not config.create:
            return self.trigger_rollout(workload)

        try:
            generated = self.generator(workload, workload.pod_template)
        except AgentConfigError as exc:
            self.logger.error("Unable to generate agent config for %s.%s: %s", entry.name, entry.namespace, exc)
            METRICS.event_errors_total.labels(reason="generate").inc()
            return False
        METRICS.generated_total.inc()

        try:
            self.config_store.store(generated, update_cache=True)
        except ApiException as exc:
            self.logger.error(
                "Unable to store agent config %s.%s: %s",
                generated.agent_name,
                generated.namespace,
                exc.reason,
            )
            METRICS.event_errors_total.labels(reason="store").inc()
        return False

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the watchers and process entries until shutdown.

        Entries from every namespace are handled one at a time on the calling
        thread.  A failure while handling one entry is logged and never stops
        the loop.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self._should_stop(stop):
            return

        self.watcher.start(stop)
        self.ready.set()
        try:
            while not self._should_stop(stop):
                item = self.watcher.next_entry(stop)
                if item is None or self._should_stop(stop):
                    break
                kind, entry = item
                METRICS.events_total.labels(type=kind).inc()
                try:
                    if kind == DELETED:
                        self.handle_deleted_entry(entry)
                    else:
                        self.handle_modified_entry(entry)
                except Exception:
                    self.logger.exception(
                        "Unexpected error while processing %s entry %s.%s",
                        kind,
                        entry.name,
                        entry.namespace,
                    )
        finally:
            self.watcher.request_stop()
            self.ready.clear()


def load_injector_config(
    core_api: CoreV1Api,
    namespace: str,
    name: str = CONFIG_MAP_NAME,
) -> InjectorConfig:
    """Read the injector-wide settings from the agents ConfigMap in *namespace*.

    A missing or unreadable ConfigMap, or one without the reserved key,
    yields the defaults.  A present but malformed entry raises
    :class:`~injector.src.agent.AgentConfigError`.
    """
    try:
        config_map = core_api.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status != 404:
            LOGGER.warning("Unable to read ConfigMap %s.%s: %s", name, namespace, exc.reason)
        return InjectorConfig()

    data: Mapping[str, Any] = getattr(config_map, "data", None) or {}
    value = data.get(INJECTOR_KEY)
    if value is None:
        return InjectorConfig()

    injector_config = decode_injector_config(value)
    LOGGER.info("Using %r entry from ConfigMap %s", INJECTOR_KEY, name)
    return injector_config


def build_controller(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    config: ControllerConfig,
) -> AgentConfigController:
    """Construct an :class:`AgentConfigController` from a loaded :class:`ControllerConfig`.

    ``WATCH_NAMESPACES`` takes precedence over the ``namespaces`` listed in
    the injector settings; with neither, the controller watches cluster-wide.
    """
    injector_config = load_injector_config(
        core_api, namespace=config.manager_namespace, name=config.config_map_name
    )
    namespaces = config.watch_namespaces or injector_config.namespaces
    LOGGER.info("Loading ConfigMaps from %s", list(namespaces) or "all namespaces")

    return AgentConfigController(
        core_api=core_api,
        apps_api=apps_api,
        generator=ConfigGenerator(
            agent_image=config.agent_image,
            manager_host=config.manager_host,
            manager_port=config.manager_port,
        ),
        namespaces=namespaces,
        config_map_name=config.config_map_name,
        annotation_prefix=config.annotation_prefix,
        queue_size=config.queue_size,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )


def build_controller_from_env(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    env: Mapping[str, str] | None = None,
) -> AgentConfigController:
    """Construct an :class:`AgentConfigController` from environment variables."""
    return build_controller(core_api, apps_api, load_config(env))
