from __future__ import annotations

from typing import Any

from ..node import NodeHealth


class ClusterDiagnosticsMixin:
    """
    Public diagnostics and metrics helpers.
    """

    def stats(self) -> dict[str, Any]:
        """
        Return cumulative runtime counters and live gauges.
        """
        with self._stats_lock:
            payload = dict(self._stats)
        nodes = self.nodes()
        payload["node_count"] = len(nodes)
        for health in NodeHealth:
            payload[f"nodes_{health.value}"] = sum(1 for node in nodes if node.health is health)
        payload["open_connections"] = sum(node.pool.open_count for node in nodes)
        payload["idle_connections"] = sum(node.pool.idle_count for node in nodes)
        payload["partition_map_version"] = self._partition_map.version
        payload["partition_count"] = self._partition_map.partition_count
        payload["running"] = self.is_running
        payload["connected"] = self.is_connected()
        return payload

    def health(self) -> dict[str, Any]:
        """
        Return structured health state for readiness/liveness checks.
        """
        nodes = self.nodes()
        status = "ok"
        if not self.is_running:
            status = "stopped"
        elif not self.is_connected():
            status = "disconnected"
        elif any(node.health is not NodeHealth.ACTIVE for node in nodes):
            status = "degraded"
        else:
            snapshot = self._partition_map
            if any(snapshot.unowned_partitions(namespace) for namespace in snapshot.namespaces):
                status = "degraded"
        return {
            "status": status,
            "cluster": self.config.cluster_name,
            "cluster_id": self.cluster_id,
            "partition_map_version": self._partition_map.version,
            "nodes": [
                {
                    "name": node.name,
                    "host": str(node.host),
                    "health": node.health.value,
                    "failures": node.failures,
                    "open_connections": node.pool.open_count,
                }
                for node in sorted(nodes, key=lambda item: item.name)
            ],
        }

    def metrics_text(self) -> str:
        """
        Return Prometheus-style metrics payload as text.
        """
        stats = self.stats()
        lines = []
        for key, value in sorted(stats.items()):
            if isinstance(value, bool):
                numeric = 1 if value else 0
                lines.append(f"partitioned_kv_{key} {numeric}")
            elif isinstance(value, (int, float)):
                lines.append(f"partitioned_kv_{key} {value}")
        return "\n".join(lines) + "\n"

    def recent_traces(self) -> dict[str, Any]:
        """
        Return bounded in-memory trace event history.
        """
        with self._trace_lock:
            traces = list(self._trace_history)
        return {"traces": traces}
