from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from injector.src.agent import CONFIG_MAP_NAME, DOMAIN_PREFIX


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        manager_namespace: Namespace whose agents ConfigMap holds the
            injector-wide settings.
        config_map_name: Name of the agents ConfigMap in every namespace.
        watch_namespaces: Namespaces to watch; empty means "use the injector
            settings", and if those are empty too, watch cluster-wide.
        annotation_prefix: Prefix of the ``restartedAt`` pod template annotation.
    """

    manager_namespace: str
    config_map_name: str
    watch_namespaces: tuple[str, ...]
    annotation_prefix: str
    agent_image: str
    manager_host: str
    manager_port: int
    queue_size: int
    watch_timeout_seconds: int
    health_port: int


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_namespaces(raw: str | None) -> tuple[str, ...]:
    """Parse a comma-separated namespace list, dropping blanks and duplicates."""
    if not raw:
        return ()
    return tuple(dict.fromkeys(part.strip() for part in raw.split(",") if part.strip()))


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``MANAGER_NAMESPACE``         ``ambassador``
        ``AGENT_CONFIG_MAP_NAME``     ``telepresence-agents``
        ``WATCH_NAMESPACES``          comma-separated, empty
        ``ROLLOUT_ANNOTATION_PREFIX`` ``telepresence.getambassador.io/``
        ``AGENT_IMAGE``               empty
        ``MANAGER_HOST``              ``traffic-manager.<MANAGER_NAMESPACE>``
        ``MANAGER_PORT``              ``8081``
        ``QUEUE_SIZE``                ``1``
        ``WATCH_TIMEOUT_SECONDS``     ``300``
        ``HEALTH_PORT``               ``8080``
    """
    values = env if env is not None else os.environ

    manager_namespace = values.get("MANAGER_NAMESPACE", "ambassador").strip()
    if not manager_namespace:
        raise ConfigError("MANAGER_NAMESPACE must be a non-empty string")

    config_map_name = values.get("AGENT_CONFIG_MAP_NAME", CONFIG_MAP_NAME).strip()
    if not config_map_name:
        raise ConfigError("AGENT_CONFIG_MAP_NAME must be a non-empty string")

    annotation_prefix = values.get("ROLLOUT_ANNOTATION_PREFIX", DOMAIN_PREFIX).strip()
    if annotation_prefix and not annotation_prefix.endswith("/"):
        raise ConfigError(
            f"ROLLOUT_ANNOTATION_PREFIX must end with '/', got: {annotation_prefix!r}"
        )

    return ControllerConfig(
        manager_namespace=manager_namespace,
        config_map_name=config_map_name,
        watch_namespaces=parse_namespaces(values.get("WATCH_NAMESPACES")),
        annotation_prefix=annotation_prefix,
        agent_image=values.get("AGENT_IMAGE", "").strip(),
        manager_host=values.get("MANAGER_HOST", f"traffic-manager.{manager_namespace}").strip(),
        manager_port=env_int("MANAGER_PORT", 8081, minimum=1, maximum=65535, env=values),
        queue_size=env_int("QUEUE_SIZE", 1, minimum=1, maximum=1000, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values),
    )
