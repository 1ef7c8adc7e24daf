from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

# kind -> (read method, patch method) on AppsV1Api
WORKLOAD_KINDS: dict[str, tuple[str, str]] = {
    "Deployment": ("read_namespaced_deployment", "patch_namespaced_deployment"),
    "ReplicaSet": ("read_namespaced_replica_set", "patch_namespaced_replica_set"),
    "StatefulSet": ("read_namespaced_stateful_set", "patch_namespaced_stateful_set"),
}


class WorkloadError(RuntimeError):
    """Raised when a workload reference cannot be resolved."""


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Workload:
    """A resolved pod-owning resource together with the API used to patch it."""

    kind: str
    name: str
    namespace: str
    obj: Any
    apps_api: AppsV1Api

    @property
    def pod_template(self) -> Any:
        return getattr(getattr(self.obj, "spec", None), "template", None)

    def patch(self, body: dict[str, Any]) -> None:
        """Apply *body* as a strategic merge patch."""
        _, patch_method = WORKLOAD_KINDS[self.kind]
        getattr(self.apps_api, patch_method)(name=self.name, namespace=self.namespace, body=body)


def get_workload(apps_api: AppsV1Api, name: str, namespace: str, kind: str) -> Workload:
    """Read the workload identified by ``(kind, name, namespace)``.

    Raises :class:`WorkloadError` for kinds that cannot carry an agent;
    API failures (including not found) surface as ``ApiException``.
    """
    methods = WORKLOAD_KINDS.get(kind)
    if methods is None:
        raise WorkloadError(f"unsupported workload kind {kind!r} for {name}.{namespace}")
    read_method, _ = methods
    obj = getattr(apps_api, read_method)(name=name, namespace=namespace)
    return Workload(kind=kind, name=name, namespace=namespace, obj=obj, apps_api=apps_api)


def patch_workload_restart(workload: Workload, annotation_key: str, timestamp: str) -> None:
    """Patch a workload's pod template annotation to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation makes the owning controller replace its pods.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }
    workload.patch(body)
