from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml

CONFIG_MAP_NAME = "telepresence-agents"
INJECTOR_KEY = "agent-injector"
DOMAIN_PREFIX = "telepresence.getambassador.io/"


class AgentConfigError(ValueError):
    """Raised when an agent or injector configuration cannot be decoded or generated."""


@dataclass(frozen=True)
class Entry:
    """One key of a namespace's agents ConfigMap, as carried by a diff event."""

    name: str
    namespace: str
    value: str


# (attribute, YAML key) pairs in the order they are written.
_AGENT_FIELDS: tuple[tuple[str, str], ...] = (
    ("agent_name", "agentName"),
    ("namespace", "namespace"),
    ("workload_name", "workloadName"),
    ("workload_kind", "workloadKind"),
    ("create", "create"),
    ("agent_image", "agentImage"),
    ("manager_host", "managerHost"),
    ("manager_port", "managerPort"),
    ("containers", "containers"),
)
_REQUIRED_KEYS = ("agentName", "namespace", "workloadName", "workloadKind")


@dataclass
class AgentConfig:
    """Per-workload sidecar injection configuration.

    ``create=True`` marks a placeholder: the workload has been seen but no
    configuration has been generated for it yet.
    """

    agent_name: str
    namespace: str
    workload_name: str
    workload_kind: str
    create: bool = False
    agent_image: str = ""
    manager_host: str = ""
    manager_port: int = 0
    containers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML document form, omitting empty optional fields."""
        result: dict[str, Any] = {}
        for attr, key in _AGENT_FIELDS:
            value = getattr(self, attr)
            if key in _REQUIRED_KEYS or key == "create" or value:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: Any) -> AgentConfig:
        if not isinstance(data, dict):
            raise AgentConfigError(f"agent config must be a mapping, got {type(data).__name__}")

        missing = [key for key in _REQUIRED_KEYS if not isinstance(data.get(key), str)]
        if missing:
            raise AgentConfigError(f"agent config is missing {', '.join(missing)}")

        create = data.get("create", False)
        if not isinstance(create, bool):
            raise AgentConfigError(f"agent config field create must be a boolean, got {create!r}")

        port = data.get("managerPort", 0)
        if isinstance(port, bool) or not isinstance(port, int):
            raise AgentConfigError(f"agent config field managerPort must be an integer, got {port!r}")

        containers = data.get("containers") or []
        if not isinstance(containers, list) or not all(isinstance(c, str) for c in containers):
            raise AgentConfigError("agent config field containers must be a list of strings")

        return cls(
            agent_name=data["agentName"],
            namespace=data["namespace"],
            workload_name=data["workloadName"],
            workload_kind=data["workloadKind"],
            create=create,
            agent_image=str(data.get("agentImage") or ""),
            manager_host=str(data.get("managerHost") or ""),
            manager_port=port,
            containers=list(containers),
        )


@dataclass(frozen=True)
class InjectorConfig:
    """Injector-wide settings held under the reserved ``agent-injector`` key."""

    namespaced: bool = False
    namespaces: tuple[str, ...] = ()


def _load_yaml(value: str, what: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise AgentConfigError(f"failed to decode {what}: {exc}") from exc


def encode_agent_config(config: AgentConfig) -> str:
    """Serialize *config* to YAML.

    Keys are sorted so that equal configs always encode to identical text,
    which is what the store relies on to suppress no-op writes.
    """
    return yaml.safe_dump(config.to_dict(), sort_keys=True, default_flow_style=False)


def decode_agent_config(value: str) -> AgentConfig:
    return AgentConfig.from_dict(_load_yaml(value, "agent config"))


def decode_injector_config(value: str) -> InjectorConfig:
    data = _load_yaml(value, "injector config")
    if data is None:
        return InjectorConfig()
    if not isinstance(data, dict):
        raise AgentConfigError(f"injector config must be a mapping, got {type(data).__name__}")

    namespaced = data.get("namespaced", False)
    if not isinstance(namespaced, bool):
        raise AgentConfigError(f"injector config field namespaced must be a boolean, got {namespaced!r}")

    namespaces = data.get("namespaces") or []
    if not isinstance(namespaces, list) or not all(isinstance(ns, str) for ns in namespaces):
        raise AgentConfigError("injector config field namespaces must be a list of strings")

    return InjectorConfig(namespaced=namespaced, namespaces=tuple(namespaces))
