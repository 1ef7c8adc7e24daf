from __future__ import annotations

from typing import Any

from injector.src.agent import AgentConfig, AgentConfigError
from injector.src.kube import Workload


class ConfigGenerator:
    """Default injection config generator.

    Produces a complete (``create=False``) agent config for a workload from
    its current pod template.  Every container in the template is listed so
    the agent can intercept any of them.
    """

    def __init__(self, agent_image: str, manager_host: str, manager_port: int) -> None:
        self.agent_image = agent_image
        self.manager_host = manager_host
        self.manager_port = manager_port

    def __call__(self, workload: Workload, pod_template: Any) -> AgentConfig:
        pod_spec = getattr(pod_template, "spec", None)
        containers = [
            name
            for name in (getattr(c, "name", None) for c in getattr(pod_spec, "containers", None) or [])
            if name
        ]
        if not containers:
            raise AgentConfigError(
                f"pod template of {workload.kind} {workload.name}.{workload.namespace} has no containers"
            )

        return AgentConfig(
            agent_name=workload.name,
            namespace=workload.namespace,
            workload_name=workload.name,
            workload_kind=workload.kind,
            create=False,
            agent_image=self.agent_image,
            manager_host=self.manager_host,
            manager_port=self.manager_port,
            containers=containers,
        )
