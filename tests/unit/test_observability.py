"""
Unit tests for the HTTP health/metrics endpoint.
"""

from __future__ import annotations

import json
import unittest
import urllib.error
import urllib.request

from partitioned_kv.observability import ObservabilityServer


def _start(status: str) -> ObservabilityServer:
    server = ObservabilityServer(
        host="127.0.0.1",
        port=0,
        health_provider=lambda: {"status": status, "nodes": 0},
        metrics_provider=lambda: "partitioned_kv_nodes_added 0\n",
        traces_provider=lambda: {"traces": [{"event": "tend_degraded"}]},
    )
    server.start()
    return server


def _get(server: ObservabilityServer, path: str) -> tuple[int, str, bytes]:
    host, port = server.address
    try:
        with urllib.request.urlopen(f"http://{host}:{port}{path}", timeout=2.0) as response:
            return response.status, response.headers["Content-Type"], response.read()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.headers["Content-Type"], exc.read()


class ObservabilityServerTest(unittest.TestCase):
    def test_address_is_none_until_started(self) -> None:
        server = ObservabilityServer(
            host="127.0.0.1",
            port=0,
            health_provider=dict,
            metrics_provider=str,
            traces_provider=dict,
        )
        self.assertIsNone(server.address)
        server.start()
        self.addCleanup(server.stop)
        self.assertNotEqual(0, server.address[1])

    def test_healthy_cluster_reports_ok(self) -> None:
        server = _start("degraded")
        self.addCleanup(server.stop)

        status, content_type, body = _get(server, "/healthz")
        self.assertEqual(200, status)
        self.assertTrue(content_type.startswith("application/json"))
        self.assertEqual("degraded", json.loads(body)["status"])

    def test_disconnected_cluster_reports_unavailable(self) -> None:
        server = _start("disconnected")
        self.addCleanup(server.stop)

        status, _, body = _get(server, "/healthz")
        self.assertEqual(503, status)
        self.assertEqual("disconnected", json.loads(body)["status"])

    def test_metrics_are_prometheus_text(self) -> None:
        server = _start("ok")
        self.addCleanup(server.stop)

        status, content_type, body = _get(server, "/metrics?x=1")
        self.assertEqual(200, status)
        self.assertTrue(content_type.startswith("text/plain"))
        self.assertEqual(b"partitioned_kv_nodes_added 0\n", body)

    def test_traces_and_unknown_paths(self) -> None:
        server = _start("ok")
        self.addCleanup(server.stop)

        status, _, body = _get(server, "/traces")
        self.assertEqual(200, status)
        self.assertEqual("tend_degraded", json.loads(body)["traces"][0]["event"])

        status, _, body = _get(server, "/nope")
        self.assertEqual(404, status)
        self.assertEqual({"error": "not found"}, json.loads(body))

    def test_stop_is_idempotent(self) -> None:
        server = _start("ok")
        server.stop()
        server.stop()
        self.assertIsNone(server.address)
