from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from injector.src.agent import (
    CONFIG_MAP_NAME,
    AgentConfig,
    AgentConfigError,
    Entry,
    decode_agent_config,
    encode_agent_config,
)
from injector.src.store import ConfigStore, normalize_data


class FakeCoreApi:
    def __init__(
        self,
        config_maps: dict[str, Any] | None = None,
        read_error: ApiException | None = None,
    ) -> None:
        self.config_maps = config_maps or {}
        self.read_error = read_error
        self.reads = 0
        self.created: list[tuple[str, Any]] = []
        self.replaced: list[tuple[str, str, Any]] = []

    def read_namespaced_config_map(self, name: str, namespace: str) -> Any:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        config_map = self.config_maps.get(namespace)
        if config_map is None or config_map.metadata.name != name:
            raise ApiException(status=404, reason="Not Found")
        return config_map

    def create_namespaced_config_map(self, namespace: str, body: Any) -> None:
        self.created.append((namespace, body))
        self.config_maps[namespace] = body

    def replace_namespaced_config_map(self, name: str, namespace: str, body: Any) -> None:
        self.replaced.append((name, namespace, body))
        self.config_maps[namespace] = body


def make_config_map(namespace: str, data: dict[str, str] | None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=CONFIG_MAP_NAME, namespace=namespace),
        data=data,
    )


def make_config(name: str = "echo", **overrides: Any) -> AgentConfig:
    values: dict[str, Any] = {
        "agent_name": name,
        "namespace": "demo",
        "workload_name": name,
        "workload_kind": "Deployment",
        "agent_image": "agent:1.0",
    }
    values.update(overrides)
    return AgentConfig(**values)


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------


def test_apply_computes_symmetric_diff() -> None:
    store = ConfigStore(FakeCoreApi())
    store.apply("demo", {"a": "1", "b": "2"})

    deleted, modified = store.apply("demo", {"b": "2", "c": "3"})

    assert deleted == [Entry(name="a", namespace="demo", value="1")]
    assert modified == [Entry(name="c", namespace="demo", value="3")]
    assert store.snapshots.load_all() == {"b.demo": "2", "c.demo": "3"}


def test_apply_reports_changed_values_as_modified() -> None:
    store = ConfigStore(FakeCoreApi())
    store.apply("demo", {"a": "1"})

    deleted, modified = store.apply("demo", {"a": "2"})

    assert deleted == []
    assert modified == [Entry(name="a", namespace="demo", value="2")]


def test_apply_none_deletes_every_cached_key() -> None:
    store = ConfigStore(FakeCoreApi())
    store.apply("demo", {"a": "1", "b": "2"})
    store.apply("other", {"a": "9"})

    deleted, modified = store.apply("demo", None)

    assert deleted == [
        Entry(name="a", namespace="demo", value="1"),
        Entry(name="b", namespace="demo", value="2"),
    ]
    assert modified == []
    assert store.snapshots.load_all() == {"a.other": "9"}


def test_apply_mirrors_cache_into_snapshots() -> None:
    store = ConfigStore(FakeCoreApi())
    subscription = store.snapshots.subscribe(threading.Event())
    assert subscription.get(timeout=1) == {}

    store.apply("demo", {"a": "1", "b": "2"})
    store.apply("other", {"a": "3"})
    store.apply("demo", {"b": "2"})

    assert subscription.get(timeout=1) == {"b.demo": "2", "a.other": "3"}


def test_normalize_data_handles_none_values_and_non_dicts() -> None:
    assert normalize_data({"a": None, "b": 1}) == {"a": "", "b": "1"}
    assert normalize_data(None) == {}


# ---------------------------------------------------------------------------
# Typed lookup
# ---------------------------------------------------------------------------


def test_get_decodes_cached_value() -> None:
    store = ConfigStore(FakeCoreApi())
    config = make_config()
    store.apply("demo", {"echo": encode_agent_config(config)})

    assert store.get("echo", "demo") == config
    assert store.get("missing", "demo") is None
    assert store.get("echo", "elsewhere") is None


def test_get_raises_on_malformed_value() -> None:
    store = ConfigStore(FakeCoreApi())
    store.apply("demo", {"echo": "- not a config"})

    with pytest.raises(AgentConfigError):
        store.get("echo", "demo")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_store_skips_api_when_cached_value_is_identical() -> None:
    core_api = FakeCoreApi()
    store = ConfigStore(core_api)
    config = make_config()
    store.apply("demo", {"echo": encode_agent_config(config)})

    assert store.store(config, update_cache=True) is False
    assert core_api.reads == 0
    assert core_api.created == []
    assert core_api.replaced == []


def test_store_creates_config_map_when_missing() -> None:
    core_api = FakeCoreApi()
    store = ConfigStore(core_api)
    config = make_config()

    assert store.store(config, update_cache=False) is True

    assert len(core_api.created) == 1
    namespace, body = core_api.created[0]
    assert namespace == "demo"
    assert body.metadata.name == CONFIG_MAP_NAME
    assert body.metadata.namespace == "demo"
    assert body.data == {"echo": encode_agent_config(config)}


def test_store_merges_into_existing_config_map() -> None:
    core_api = FakeCoreApi({"demo": make_config_map("demo", {"other": "x", "agent-injector": "y"})})
    store = ConfigStore(core_api)
    config = make_config()

    store.store(config, update_cache=False)

    assert core_api.created == []
    name, namespace, body = core_api.replaced[0]
    assert (name, namespace) == (CONFIG_MAP_NAME, "demo")
    assert body.data == {
        "other": "x",
        "agent-injector": "y",
        "echo": encode_agent_config(config),
    }


def test_store_with_existing_config_map_without_data() -> None:
    core_api = FakeCoreApi({"demo": make_config_map("demo", None)})
    store = ConfigStore(core_api)

    store.store(make_config(), update_cache=False)

    _, _, body = core_api.replaced[0]
    assert list(body.data) == ["echo"]


def test_store_raises_on_read_failure_other_than_not_found() -> None:
    core_api = FakeCoreApi(read_error=ApiException(status=500, reason="boom"))
    store = ConfigStore(core_api)

    with pytest.raises(ApiException):
        store.store(make_config(), update_cache=True)

    assert core_api.created == []
    assert store.snapshots.load_all() == {}


def test_store_with_cache_update_suppresses_its_own_change() -> None:
    core_api = FakeCoreApi()
    store = ConfigStore(core_api)
    config = make_config()

    store.store(config, update_cache=True)
    written = core_api.config_maps["demo"].data

    deleted, modified = store.apply("demo", written)
    assert deleted == []
    assert modified == []
    assert store.get("echo", "demo") == config


def test_store_without_cache_update_lets_watch_see_the_change() -> None:
    core_api = FakeCoreApi()
    store = ConfigStore(core_api)
    config = make_config()

    store.store(config, update_cache=False)
    deleted, modified = store.apply("demo", core_api.config_maps["demo"].data)

    assert deleted == []
    assert [entry.name for entry in modified] == ["echo"]
    assert decode_agent_config(modified[0].value) == config


def test_store_writes_again_when_value_differs() -> None:
    core_api = FakeCoreApi()
    store = ConfigStore(core_api)
    store.store(make_config(), update_cache=True)

    assert store.store(make_config(agent_image="agent:2.0"), update_cache=True) is True

    assert len(core_api.created) == 1
    assert len(core_api.replaced) == 1
    assert store.get("echo", "demo").agent_image == "agent:2.0"  # type: ignore[union-attr]
