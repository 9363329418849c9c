from __future__ import annotations


class ClusterHelperMixin:
    """
    Low-level utility methods shared across mixins.
    """

    def _inc_stat(self, key: str, *, delta: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + delta

    def _nodes_log_view(self) -> tuple[str, int]:
        """
        Build one-line node snapshot for logs.

        Returns a tuple of ``([name@host:port(health),...], total_nodes)``.
        """
        nodes = sorted(self.nodes(), key=lambda item: item.name)
        formatted = ",".join(
            f"{node.name}@{node.host}({node.health.value})" for node in nodes
        )
        return f"[{formatted}]", len(nodes)
