from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, agent listing and Prometheus metrics."""

    ready_event: threading.Event
    agents_fn: Callable[[], Mapping[str, Any]] | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/agentz":
            agents_fn = type(self).agents_fn
            if agents_fn is None:
                self._respond(404)
                return
            body = json.dumps({"agents": sorted(agents_fn())}).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("injector.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    agents: Callable[[], Mapping[str, Any]] | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and agent source.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        agents_fn = staticmethod(agents) if agents is not None else None  # type: ignore[assignment]

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    agents: Callable[[], Mapping[str, Any]] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it.

    ``agents`` returns the currently cached agent configs keyed by
    ``name.namespace``; ``/agentz`` lists those keys.
    """
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, agents))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
