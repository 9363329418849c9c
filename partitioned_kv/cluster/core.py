"""
Cluster runtime for the partitioned key-value client.

This module provides the concrete ``Cluster`` class while delegating domain
behavior to focused mixins.
"""

from __future__ import annotations

import random
import threading
import uuid
from collections import deque
from typing import Any, Callable

from ..config import DEFAULT_PARTITION_COUNT, ClientConfig
from ..connection import Connection
from ..executor import CommandExecutor
from ..node import Node
from ..observability import ObservabilityServer
from ..partitions import PartitionMap
from ..serialization import ValueSerializer
from .diagnostics import ClusterDiagnosticsMixin
from .helpers import ClusterHelperMixin
from .lifecycle import ClusterLifecycleMixin
from .observability import ClusterObservabilityMixin
from .routing import ClusterRoutingMixin
from .tend import ClusterTendMixin


class Cluster(
    ClusterLifecycleMixin,
    ClusterTendMixin,
    ClusterRoutingMixin,
    ClusterDiagnosticsMixin,
    ClusterObservabilityMixin,
    ClusterHelperMixin,
):
    """
    Client-side view of one database cluster.

    The cluster owns the node set, tends it in a background thread and
    publishes partition map snapshots used to route every command. Create one
    instance per configured connection and call :meth:`start`.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        serializer: ValueSerializer | None = None,
        connection_factory: Callable[..., Connection] = Connection,
    ) -> None:
        """
        Initialize runtime state from :class:`ClientConfig`.

        Parameters
        ----------
        config:
            Client runtime configuration.
        serializer:
            Optional bin value codec handed to the command executor.
        connection_factory:
            Callable with :class:`Connection`'s signature used for every
            socket the cluster opens.
        """
        self.config = config
        self.cluster_id = uuid.uuid4().hex
        self._connection_factory = connection_factory
        self._ssl_context = config.build_ssl_context()
        self._rng = random.Random()

        # Node registry state
        self._nodes: dict[str, Node] = {}
        self._aliases: dict[tuple[str, int], Node] = {}
        self._nodes_lock = threading.RLock()

        # Partition map state; readers take one snapshot per lookup
        self._partition_count = DEFAULT_PARTITION_COUNT
        self._partition_map = PartitionMap(partition_count=self._partition_count)
        self._map_signature: tuple[Any, ...] = ()

        # Lifecycle and tend state
        self._lifecycle_lock = threading.RLock()
        self._running = False
        self._closed = False
        self._tend_lock = threading.Lock()
        self._tend_stop = threading.Event()
        self._tend_thread: threading.Thread | None = None

        # Diagnostics state
        self._stats: dict[str, int] = {
            "tend_cycles": 0,
            "tend_failures": 0,
            "nodes_added": 0,
            "nodes_removed": 0,
            "node_refresh_failures": 0,
            "seeds_rejected": 0,
            "partition_map_updates": 0,
            "commands_succeeded": 0,
            "commands_failed": 0,
            "commands_timed_out": 0,
            "commands_maybe_applied": 0,
            "command_retries": 0,
            "batch_commands": 0,
            "idle_connections_swept": 0,
        }
        self._stats_lock = threading.Lock()
        self._trace_history: deque[dict[str, Any]] = deque(
            maxlen=self.config.observability.trace_history_size
        )
        self._trace_lock = threading.Lock()
        self._observability_server: ObservabilityServer | None = None

        self.executor = CommandExecutor(self, serializer=serializer)
