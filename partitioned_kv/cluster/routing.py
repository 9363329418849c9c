from __future__ import annotations

from collections.abc import Iterable

from ..config import ReplicaPreference
from ..exceptions import NoAvailableNodeError
from ..key import Key, partition_id_for
from ..node import Node
from ..partitions import PartitionMap, select_node


class ClusterRoutingMixin:
    """
    Partition-to-node resolution over the published map snapshot.
    """

    @property
    def partition_map(self) -> PartitionMap:
        """Return the current immutable partition map snapshot."""
        return self._partition_map

    @property
    def partition_count(self) -> int:
        return self._partition_map.partition_count

    def nodes(self) -> list[Node]:
        """Return a point-in-time list of known nodes."""
        with self._nodes_lock:
            return list(self._nodes.values())

    def get_node(self, name: str) -> Node:
        with self._nodes_lock:
            node = self._nodes.get(name)
        if node is None:
            raise NoAvailableNodeError(f"Unknown node {name!r}.")
        return node

    def node_for_alias(self, host: str, port: int) -> Node | None:
        with self._nodes_lock:
            return self._aliases.get((host, int(port)))

    def node_for(
        self,
        namespace: str,
        partition_key: Key | bytes | int,
        replica_preference: ReplicaPreference = ReplicaPreference.SEQUENCE,
        *,
        is_write: bool = False,
        exclude: Iterable[Node] = (),
    ) -> Node:
        """
        Resolve the node a command should run on.

        Parameters
        ----------
        namespace:
            Target namespace.
        partition_key:
            A :class:`Key`, a raw 20-byte digest or a partition id.
        replica_preference:
            Read routing policy. Writes always resolve to the master.
        is_write:
            Route to the partition master.
        exclude:
            Nodes this command already failed on.

        Raises
        ------
        NoAvailableNodeError
            When no routable node owns the partition.
        """
        self._ensure_open()
        snapshot = self._partition_map
        if isinstance(partition_key, Key):
            partition_id = partition_key.partition_id(snapshot.partition_count)
        elif isinstance(partition_key, (bytes, bytearray)):
            partition_id = partition_id_for(bytes(partition_key), snapshot.partition_count)
        else:
            partition_id = int(partition_key)
            if not 0 <= partition_id < snapshot.partition_count:
                raise ValueError(
                    f"Partition id {partition_id} outside 0..{snapshot.partition_count - 1}."
                )
        return select_node(
            snapshot.replicas(namespace, partition_id),
            preference=replica_preference,
            is_write=is_write,
            exclude=exclude,
            rack_id=self.config.rack_id,
            rng=self._rng,
        )
