from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from injector.src.__main__ import JSONFormatter, main, redact_sensitive_text
from injector.src.config import ConfigError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["thread"] == threading.current_thread().name
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi")

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message

    def test_redaction_leaves_agent_config_text_alone(self) -> None:
        text = "add echo.demo agentImage: agent:1.0"
        assert redact_sensitive_text(text) == text


def _fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
    if shutdown_event is not None:
        shutdown_event.set()


def _mock_controller() -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()
    controller.run_forever.side_effect = _fake_run_forever
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_controller_and_health_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        monkeypatch.setenv("WATCH_NAMESPACES", "alpha")
        core_api, apps_api = SimpleNamespace(), SimpleNamespace()
        mock_controller = _mock_controller()

        with (
            patch("injector.src.__main__.load_kube_configuration") as mock_kube_config,
            patch("injector.src.__main__.build_clients", return_value=(core_api, apps_api)),
            patch(
                "injector.src.__main__.build_controller", return_value=mock_controller
            ) as mock_build,
            patch("injector.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_kube_config.assert_called_once()
        build_kwargs = mock_build.call_args.kwargs
        assert build_kwargs["core_api"] is core_api
        assert build_kwargs["apps_api"] is apps_api
        assert build_kwargs["config"].watch_namespaces == ("alpha",)

        health_kwargs = mock_health.call_args.kwargs
        assert health_kwargs["ready"] is mock_controller.ready
        assert health_kwargs["port"] == 9090
        assert health_kwargs["agents"] is mock_controller.config_store.snapshots.load_all

        mock_controller.run_forever.assert_called_once()
        mock_controller.watcher.join.assert_called_once_with(timeout=5)
        mock_controller.config_store.snapshots.close.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify SIGTERM and SIGINT handlers are registered and stop the controller."""
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()
        handlers: dict[int, object] = {}
        seen_shutdown: list[bool] = []

        def run_forever(shutdown_event: threading.Event | None = None) -> None:
            assert shutdown_event is not None
            handler = handlers[signal.SIGTERM]
            handler(signal.SIGTERM, None)  # type: ignore[operator]
            seen_shutdown.append(shutdown_event.is_set())

        mock_controller.run_forever.side_effect = run_forever

        def tracking_signal(signum: int, handler: object) -> object:
            handlers[signum] = handler
            return signal.SIG_DFL

        with (
            patch("injector.src.__main__.load_kube_configuration"),
            patch(
                "injector.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("injector.src.__main__.build_controller", return_value=mock_controller),
            patch("injector.src.__main__.start_health_server") as mock_health,
            patch("injector.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert signal.SIGTERM in handlers
        assert signal.SIGINT in handlers
        assert seen_shutdown == [True]
        mock_controller.request_stop.assert_called_once()

    def test_main_cleans_up_when_controller_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = _mock_controller()
        mock_controller.run_forever.side_effect = RuntimeError("boom")

        with (
            patch("injector.src.__main__.load_kube_configuration"),
            patch(
                "injector.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("injector.src.__main__.build_controller", return_value=mock_controller),
            patch("injector.src.__main__.start_health_server") as mock_health,
            pytest.raises(RuntimeError, match="boom"),
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_controller.config_store.snapshots.close.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("injector.src.__main__.load_kube_configuration") as mock_kube_config,
            patch("injector.src.__main__.build_controller") as mock_build,
            pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

        mock_kube_config.assert_not_called()
        mock_build.assert_not_called()
