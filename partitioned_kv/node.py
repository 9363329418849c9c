"""
Cluster node handle.

A :class:`Node` carries one server's identity, health counters, the latest
partition ownership report it published and its connection pool. Nodes are
owned by the cluster and never hold a reference back to it.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import ClientConfig, Host
from .connection import Connection
from .exceptions import InvalidNodeError, ProtocolError
from .partitions import NamespaceOwnership, parse_replicas
from .pool import ConnectionPool

_LOGGER = logging.getLogger(__name__)

SEED_INFO_KEYS = ("node", "cluster-name", "features", "partitions", "rack-id")
REFRESH_INFO_KEYS = ("node", "cluster-name", "partition-generation")


class NodeHealth(str, Enum):
    """
    Routing health of a node.

    ACTIVE
        Fully routable.
    SUSPECT
        Recent consecutive failures; still serves reads but is ordered after
        ``ACTIVE`` replicas.
    DOWN
        Excluded from routing until a refresh succeeds.
    """

    ACTIVE = "active"
    SUSPECT = "suspect"
    DOWN = "down"


@dataclass(frozen=True, slots=True)
class NodeInfo:
    """Identity returned by a successful seed or peer validation."""

    name: str
    host: Host
    cluster_name: str
    features: frozenset[str]
    partition_count: int | None
    rack_id: int


@dataclass(frozen=True, slots=True)
class RefreshResult:
    """Outcome of one tend refresh of a node."""

    partition_generation: int
    peers: tuple[Host, ...]


def _parse_int(text: str | None, default: int) -> int:
    if text is None or not text.strip():
        return default
    try:
        return int(text.strip())
    except ValueError as exc:
        raise ProtocolError(f"Expected integer info value, got {text!r}.") from exc


def validate_node(
    host: Host,
    config: ClientConfig,
    *,
    ssl_context: ssl.SSLContext | None = None,
    connection_factory: Callable[..., Connection] = Connection,
) -> NodeInfo:
    """
    Open a throwaway connection to ``host`` and confirm it is a usable node.

    Raises
    ------
    InvalidNodeError
        When the node reports no name or a cluster name that does not match
        ``config.cluster_name``.
    ClusterConnectionError
        When the host is unreachable.
    """
    conn = connection_factory(
        host,
        config.connect_timeout_seconds,
        max_buffer_size=config.max_buffer_size,
        ssl_context=ssl_context,
    )
    try:
        values = conn.info(SEED_INFO_KEYS)
    finally:
        conn.close()
    name = values.get("node", "").strip()
    if not name:
        raise InvalidNodeError(f"Host {host} did not report a node name.")
    cluster_name = values.get("cluster-name", "").strip()
    if config.cluster_name is not None and cluster_name != config.cluster_name:
        raise InvalidNodeError(
            f"Host {host} belongs to cluster {cluster_name!r}, expected {config.cluster_name!r}."
        )
    features = frozenset(item for item in values.get("features", "").split(";") if item)
    partitions = values.get("partitions")
    return NodeInfo(
        name=name,
        host=host,
        cluster_name=cluster_name,
        features=features,
        partition_count=_parse_int(partitions, 0) or None,
        rack_id=_parse_int(values.get("rack-id"), 0),
    )


class Node:
    """
    Runtime state for one cluster node.

    Parameters
    ----------
    info:
        Validated identity from :func:`validate_node`.
    config:
        Client configuration (pool size, timeouts, failure thresholds).
    ssl_context:
        Optional client SSL context for pooled connections.
    connection_factory:
        Callable matching :class:`Connection`'s constructor; tests inject
        fakes here.
    """

    def __init__(
        self,
        info: NodeInfo,
        config: ClientConfig,
        *,
        ssl_context: ssl.SSLContext | None = None,
        connection_factory: Callable[..., Connection] = Connection,
    ) -> None:
        self.name = info.name
        self.host = info.host
        self.cluster_name = info.cluster_name
        self.features = info.features
        self.rack_id = info.rack_id
        self._config = config
        self._ssl_context = ssl_context
        self._connection_factory = connection_factory
        self.aliases: set[tuple[str, int]] = {info.host.alias}

        self._lock = threading.Lock()
        self._health = NodeHealth.ACTIVE
        self._failures = 0
        self._down_since: float | None = None
        self._active = True

        self.partition_generation = -1
        self.ownership: dict[str, NamespaceOwnership] = {}
        self.report_time = 0.0
        # number of peers that listed this node during the current tend cycle
        self.reference_count = 0

        self.pool = ConnectionPool(
            self._open_connection,
            max_size=config.max_conns_per_node,
            idle_timeout_seconds=config.idle_timeout_seconds,
            name=self.name,
        )

    def __repr__(self) -> str:
        return f"Node(name={self.name!r}, host={self.host}, health={self._health.value})"

    def _open_connection(self) -> Connection:
        return self._connection_factory(
            self.host,
            self._config.connect_timeout_seconds,
            max_buffer_size=self._config.max_buffer_size,
            ssl_context=self._ssl_context,
        )

    @property
    def health(self) -> NodeHealth:
        with self._lock:
            return self._health

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def down_for(self, now: float | None = None) -> float:
        """Return seconds spent in ``DOWN``, or ``0`` when not down."""
        with self._lock:
            if self._down_since is None:
                return 0.0
            now = time.monotonic() if now is None else now
            return now - self._down_since

    def record_success(self) -> None:
        with self._lock:
            previous = self._health
            self._failures = 0
            self._health = NodeHealth.ACTIVE
            self._down_since = None
        if previous is not NodeHealth.ACTIVE:
            _LOGGER.info("Node recovered: node=%s host=%s previous=%s", self.name, self.host, previous.value)

    def record_failure(self) -> NodeHealth:
        """Count one consecutive failure and return the resulting health."""
        with self._lock:
            previous = self._health
            self._failures += 1
            if self._failures >= self._config.down_after_failures:
                self._health = NodeHealth.DOWN
                if self._down_since is None:
                    self._down_since = time.monotonic()
            elif self._failures >= self._config.suspect_after_failures:
                self._health = NodeHealth.SUSPECT
            current = self._health
            failures = self._failures
        if current is not previous:
            _LOGGER.warning(
                "Node health changed: node=%s host=%s health=%s failures=%d",
                self.name,
                self.host,
                current.value,
                failures,
            )
        return current

    def mark_down(self) -> None:
        """Force ``DOWN`` regardless of the failure count."""
        with self._lock:
            self._failures = max(self._failures, self._config.down_after_failures)
            self._health = NodeHealth.DOWN
            if self._down_since is None:
                self._down_since = time.monotonic()

    def inactivate(self) -> None:
        with self._lock:
            self._active = False

    def acquire(self, timeout_seconds: float | None) -> Connection:
        return self.pool.acquire(timeout_seconds)  # type: ignore[return-value]

    def release(self, conn: Connection, *, healthy: bool = True) -> None:
        self.pool.release(conn, healthy=healthy)

    def info(self, names: list[str] | tuple[str, ...]) -> dict[str, str]:
        """
        Run one info request over a pooled connection.

        The connection is discarded when the exchange fails.
        """
        conn = self.acquire(self._config.connect_timeout_seconds)
        healthy = False
        try:
            conn.set_timeout(self._config.connect_timeout_seconds)
            values = conn.info(names)
            healthy = True
            return values
        finally:
            self.release(conn, healthy=healthy)

    def refresh(self) -> RefreshResult:
        """
        Fetch identity, generation and peer list.

        Raises
        ------
        InvalidNodeError
            When the node's name or cluster name no longer matches.
        """
        services_key = "services-alternate" if self._config.use_services_alternate else "services"
        values = self.info(REFRESH_INFO_KEYS + (services_key,))
        name = values.get("node", "").strip()
        if name != self.name:
            raise InvalidNodeError(f"Node {self.name} at {self.host} now reports name {name!r}.")
        cluster_name = values.get("cluster-name", "").strip()
        if self._config.cluster_name is not None and cluster_name != self._config.cluster_name:
            raise InvalidNodeError(
                f"Node {self.name} moved to cluster {cluster_name!r}, expected {self._config.cluster_name!r}."
            )
        generation = _parse_int(values.get("partition-generation"), -1)
        peers = tuple(Host.parse_many(values.get(services_key, "")))
        return RefreshResult(partition_generation=generation, peers=peers)

    def refresh_partitions(self, generation: int, partition_count: int) -> None:
        """Fetch and store this node's replica ownership report."""
        values = self.info(("replicas",))
        ownership = parse_replicas(values.get("replicas", ""), partition_count)
        with self._lock:
            self.ownership = ownership
            self.partition_generation = generation
            self.report_time = time.monotonic()

    def owned_partition_count(self) -> int:
        """Return how many partition-role slots this node claims in its report."""
        return sum(item.claimed_count() for item in self.ownership.values())

    def close(self) -> None:
        """Inactivate and drain the pool. Checked-out connections close on release."""
        self.inactivate()
        self.pool.close()

