from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

StatusFn = Callable[[], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, status, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    status_fn: StatusFn | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _status(self) -> None:
        if self.status_fn is None:
            self._respond(404)
            return
        try:
            payload = self.status_fn()
        except Exception:
            logging.getLogger(__name__).exception("Failed to build status payload")
            self._respond(500, b"status unavailable")
            return
        body = json.dumps(payload, sort_keys=True).encode()
        self._respond(200, body, "application/json")

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/statusz":
            self._status()
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("grafana_sync.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, status_fn: StatusFn | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # Plain functions become methods when bound on a class; staticmethod keeps
    # the callable argument-free.
    _BoundHealthHandler.status_fn = staticmethod(status_fn) if status_fn else None
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, status_fn: StatusFn | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, status_fn=status_fn)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
