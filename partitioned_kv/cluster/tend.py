from __future__ import annotations

import logging
from collections.abc import Iterable

from ..config import Host
from ..exceptions import InvalidNodeError, PartitionedKVError
from ..node import Node, NodeHealth, NodeInfo, validate_node
from ..partitions import build_partition_map

_LOGGER = logging.getLogger(__name__)


class ClusterTendMixin:
    """
    Node discovery, health refresh and partition map maintenance.
    """

    def tend(self) -> None:
        """
        Run one tend cycle now.

        The background thread calls the same code every
        ``tend_interval_seconds``; cycles never overlap.
        """
        with self._tend_lock:
            self._tend_once()

    def _tend_loop(self) -> None:
        while not self._tend_stop.wait(self.config.tend_interval_seconds):
            self._tend_safely()

    def _tend_safely(self) -> None:
        try:
            with self._tend_lock:
                self._tend_once()
        except Exception:  # noqa: BLE001 - tend loop must survive any cycle failure
            self._inc_stat("tend_failures")
            _LOGGER.exception("Tend cycle failed: cluster=%s", self.config.cluster_name or "-")

    def _tend_once(self) -> None:
        self._inc_stat("tend_cycles")
        if not self.nodes():
            self._seed_nodes()

        nodes = self.nodes()
        for node in nodes:
            node.reference_count = 0

        refreshed = 0
        peers: dict[tuple[str, int], Host] = {}
        for node in nodes:
            try:
                result = node.refresh()
            except InvalidNodeError as exc:
                _LOGGER.warning("Node invalidated: node=%s host=%s reason=%s", node.name, node.host, exc)
                node.inactivate()
                continue
            except PartitionedKVError as exc:
                health = node.record_failure()
                self._inc_stat("node_refresh_failures")
                _LOGGER.warning(
                    "Node refresh failed: node=%s host=%s health=%s reason=%s",
                    node.name,
                    node.host,
                    health.value,
                    exc,
                )
                continue
            node.record_success()
            refreshed += 1
            for peer in result.peers:
                peers.setdefault(peer.alias, peer)
                known = self._aliases.get(peer.alias)
                if known is not None:
                    known.reference_count += 1
            if result.partition_generation != node.partition_generation:
                self._refresh_partitions(node, result.partition_generation)

        if nodes and refreshed == 0:
            self._inc_stat("tend_failures")
            _LOGGER.warning(
                "Tend cycle reached no node: cluster=%s known_nodes=%d",
                self.config.cluster_name or "-",
                len(nodes),
            )
            self._trace("tend_degraded", known_nodes=len(nodes))

        self._add_peers(host for alias, host in peers.items() if alias not in self._aliases)
        self._remove_nodes(refreshed)
        self._rebuild_partition_map()
        self._sweep_idle_connections()

    def _refresh_partitions(self, node: Node, generation: int) -> None:
        try:
            node.refresh_partitions(generation, self._partition_count)
        except PartitionedKVError as exc:
            node.record_failure()
            _LOGGER.warning(
                "Partition refresh failed: node=%s host=%s reason=%s",
                node.name,
                node.host,
                exc,
            )

    def _validate(self, host: Host) -> NodeInfo | None:
        try:
            return validate_node(
                host,
                self.config,
                ssl_context=self._ssl_context,
                connection_factory=self._connection_factory,
            )
        except InvalidNodeError as exc:
            self._inc_stat("seeds_rejected")
            _LOGGER.warning("Host rejected: host=%s reason=%s", host, exc)
            self._trace("host_rejected", host=str(host), reason=str(exc))
        except PartitionedKVError as exc:
            _LOGGER.warning("Host unreachable: host=%s reason=%s", host, exc)
        return None

    def _seed_nodes(self) -> None:
        for seed in self.config.unique_seeds():
            info = self._validate(seed)
            if info is None:
                continue
            if info.partition_count and not self._nodes:
                self._partition_count = info.partition_count
            node = self._add_node(info)
            self._refresh_new_node(node)

    def _add_peers(self, hosts: Iterable[Host]) -> None:
        for host in hosts:
            info = self._validate(host)
            if info is None:
                continue
            node = self._add_node(info)
            self._refresh_new_node(node)

    def _refresh_new_node(self, node: Node) -> None:
        if node.partition_generation >= 0:
            return
        try:
            result = node.refresh()
        except PartitionedKVError as exc:
            node.record_failure()
            _LOGGER.warning("New node refresh failed: node=%s host=%s reason=%s", node.name, node.host, exc)
            return
        self._refresh_partitions(node, result.partition_generation)

    def _add_node(self, info: NodeInfo) -> Node:
        """Register a validated node; a known name only gains an alias."""
        with self._nodes_lock:
            existing = self._nodes.get(info.name)
            if existing is not None:
                existing.aliases.add(info.host.alias)
                self._aliases[info.host.alias] = existing
                return existing
            node = Node(
                info,
                self.config,
                ssl_context=self._ssl_context,
                connection_factory=self._connection_factory,
            )
            self._nodes[node.name] = node
            self._aliases[info.host.alias] = node
            total = len(self._nodes)
        self._inc_stat("nodes_added")
        _LOGGER.info(
            "Node added: cluster=%s node=%s host=%s port=%s rack=%d total_nodes=%d",
            self.config.cluster_name or info.cluster_name or "-",
            node.name,
            node.host.name,
            node.host.port,
            node.rack_id,
            total,
        )
        self._trace("node_added", node=node.name, host=str(node.host))
        return node

    def _remove_nodes(self, refreshed: int) -> None:
        nodes = self.nodes()
        multi_node = len(nodes) > 1 and refreshed >= 2
        grace = self.config.node_removal_grace_seconds
        for node in nodes:
            reason = None
            if not node.is_active:
                reason = "inactive"
            elif node.health is NodeHealth.DOWN and node.down_for() >= grace:
                reason = "down"
            elif (
                multi_node
                and node.health is not NodeHealth.DOWN
                and node.reference_count == 0
                and node.owned_partition_count() == 0
            ):
                reason = "unreferenced"
            if reason is not None:
                self._remove_node(node, reason)

    def _remove_node(self, node: Node, reason: str) -> None:
        with self._nodes_lock:
            if self._nodes.get(node.name) is not node:
                return
            del self._nodes[node.name]
            for alias in list(node.aliases):
                if self._aliases.get(alias) is node:
                    del self._aliases[alias]
            total = len(self._nodes)
        node.close()
        self._inc_stat("nodes_removed")
        _LOGGER.info(
            "Node removed: cluster=%s node=%s host=%s port=%s reason=%s total_nodes=%d",
            self.config.cluster_name or node.cluster_name or "-",
            node.name,
            node.host.name,
            node.host.port,
            reason,
            total,
        )
        self._trace("node_removed", node=node.name, reason=reason)

    def _rebuild_partition_map(self) -> None:
        nodes = sorted(self.nodes(), key=lambda item: item.name)
        signature = tuple(
            (
                node.name,
                node.partition_generation,
                node.report_time,
                node.is_active,
                node.health is NodeHealth.DOWN,
            )
            for node in nodes
        )
        if signature == self._map_signature and self._partition_map.partition_count == self._partition_count:
            return
        self._map_signature = signature
        self._publish_partition_map(nodes)

    def _publish_partition_map(self, nodes: Iterable[Node]) -> None:
        current = self._partition_map
        candidate = build_partition_map(
            nodes,
            self._partition_count,
            version=current.version + 1,
        )
        if candidate.layout() == current.layout() and candidate.partition_count == current.partition_count:
            return
        # single reference swap; readers hold whichever snapshot they loaded
        self._partition_map = candidate
        self._inc_stat("partition_map_updates")
        _LOGGER.info(
            "Partition map updated: cluster=%s version=%d namespaces=%s",
            self.config.cluster_name or "-",
            candidate.version,
            ",".join(sorted(candidate.namespaces)) or "-",
        )
        self._trace("partition_map_updated", version=candidate.version)

    def _sweep_idle_connections(self) -> None:
        swept = 0
        for node in self.nodes():
            swept += node.pool.sweep_idle()
        if swept:
            self._inc_stat("idle_connections_swept", delta=swept)

