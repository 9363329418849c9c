"""
Lightweight HTTP observability endpoint for a client cluster.

Exposes:

* ``/healthz``: JSON health status (503 when the cluster is not usable)
* ``/metrics``: Prometheus-style text metrics
* ``/traces``: recent trace/event records
"""

from __future__ import annotations

import json
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable

_UNHEALTHY = frozenset({"stopped", "disconnected"})
_JSON = "application/json; charset=utf-8"
_PROMETHEUS = "text/plain; version=0.0.4; charset=utf-8"

# path -> renders (status, content type, body)
Route = Callable[[], tuple[HTTPStatus, str, bytes]]


def _json_body(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


class _RouteHandler(BaseHTTPRequestHandler):
    server_version = "partitioned-kv-observability/1.0"

    def do_GET(self) -> None:  # noqa: N802 - httpserver naming convention
        route = self.server.routes.get(self.path.split("?", 1)[0])  # type: ignore[attr-defined]
        if route is None:
            status, content_type, data = HTTPStatus.NOT_FOUND, _JSON, _json_body({"error": "not found"})
        else:
            status, content_type, data = route()
        self.send_response(int(status))
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003 - stdlib name
        return


class ObservabilityServer:
    """
    Background HTTP server exposing cluster health and metrics.

    Port ``0`` binds an ephemeral port; read it back from :attr:`address`.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        health_provider: Callable[[], dict[str, Any]],
        metrics_provider: Callable[[], str],
        traces_provider: Callable[[], dict[str, Any]],
    ) -> None:
        self._bind = (host, int(port))

        def health() -> tuple[HTTPStatus, str, bytes]:
            payload = health_provider()
            status = HTTPStatus.SERVICE_UNAVAILABLE if payload.get("status") in _UNHEALTHY else HTTPStatus.OK
            return status, _JSON, _json_body(payload)

        self._routes: dict[str, Route] = {
            "/healthz": health,
            "/metrics": lambda: (HTTPStatus.OK, _PROMETHEUS, metrics_provider().encode("utf-8")),
            "/traces": lambda: (HTTPStatus.OK, _JSON, _json_body(traces_provider())),
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int] | None:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        """Bind and serve in a daemon thread; a second call is a no-op."""
        if self._thread is not None and self._thread.is_alive():
            return
        server = ThreadingHTTPServer(self._bind, _RouteHandler)
        server.daemon_threads = True
        server.routes = self._routes  # type: ignore[attr-defined]
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name="partitioned-kv-observability-http",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._server = None
        self._thread = None
