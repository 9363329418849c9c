from __future__ import annotations

import logging
import threading
import time

from ..exceptions import ClusterClosedError, ClusterConnectionError
from ..node import NodeHealth

_LOGGER = logging.getLogger(__name__)


class ClusterLifecycleMixin:
    """
    Cluster startup/shutdown lifecycle orchestration.
    """

    def start(self) -> None:
        """
        Discover the cluster and start the background tend thread.

        Tends synchronously until the node count stops changing or
        ``connect_timeout_seconds`` elapses.

        Raises
        ------
        ClusterConnectionError
            When no node could be reached and ``fail_if_not_connected`` is set.
        ClusterClosedError
            When the cluster was already closed.
        """
        with self._lifecycle_lock:
            if self._closed:
                raise ClusterClosedError("Cluster has been closed.")
            if self._running:
                return

            deadline = time.monotonic() + self.config.connect_timeout_seconds
            previous_count = -1
            while True:
                self._tend_safely()
                count = len(self.nodes())
                if count > 0 and count == previous_count:
                    break
                if time.monotonic() >= deadline:
                    break
                previous_count = count
                if count == 0:
                    time.sleep(min(0.05, max(0.0, deadline - time.monotonic())))

            if not self.nodes() and self.config.fail_if_not_connected:
                seeds = ",".join(str(seed) for seed in self.config.seeds)
                raise ClusterConnectionError(f"Failed to connect to any seed: seeds={seeds}")

            self._running = True
            self._tend_stop.clear()
            self._tend_thread = threading.Thread(
                target=self._tend_loop,
                name="partitioned-kv-tend",
                daemon=True,
            )
            self._tend_thread.start()
            self._start_observability_server()
            nodes_view, total_nodes = self._nodes_log_view()
            _LOGGER.info(
                "Cluster started: cluster=%s nodes=%s total_nodes=%d partitions=%d",
                self.config.cluster_name or "-",
                nodes_view,
                total_nodes,
                self._partition_count,
            )
            self._trace("cluster_started", nodes=len(self.nodes()))

    def close(self) -> None:
        """
        Stop tending and drain every node's pool. Idempotent.

        Connections still checked out by running commands are closed when
        those commands release them.
        """
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            self._running = False
            self._tend_stop.set()
            thread = self._tend_thread
            self._tend_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.config.tend_interval_seconds * 2))
        self._stop_observability_server()
        with self._nodes_lock:
            nodes = list(self._nodes.values())
            self._nodes.clear()
            self._aliases.clear()
        for node in nodes:
            node.close()
        self._publish_partition_map(())
        self._trace("cluster_closed")
        _LOGGER.info("Cluster closed: cluster=%s", self.config.cluster_name or "-")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_running(self) -> bool:
        with self._lifecycle_lock:
            return self._running

    def is_connected(self) -> bool:
        """Return whether at least one routable node is known and the map is populated."""
        if self._closed:
            return False
        routable = [node for node in self.nodes() if node.health is not NodeHealth.DOWN]
        return bool(routable) and bool(self._partition_map.namespaces)

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClusterClosedError("Cluster has been closed.")
