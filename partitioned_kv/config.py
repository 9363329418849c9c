"""
Configuration models for the partitioned key-value client.

This module centralizes every tunable runtime setting:

* seed hosts and the expected cluster name
* cluster tend cadence and node health thresholds
* per-node connection pool sizing
* per-command policies (timeouts, retries, replica routing)
* transport security and the optional observability endpoint

Policies are frozen dataclasses so a policy shared across threads can never
change under a running command. All validation happens at construction time
and raises ``ValueError``.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_PORT = 3000
DEFAULT_PARTITION_COUNT = 4096


@dataclass(frozen=True, slots=True)
class Host:
    """
    TCP endpoint of one database node.

    Parameters
    ----------
    name:
        DNS name or IP address of the node.
    port:
        Service port of the node.
    tls_name:
        Optional hostname used for TLS certificate validation. Defaults to
        ``name`` when TLS is enabled.
    """

    name: str
    port: int = DEFAULT_PORT
    tls_name: str | None = None

    def __post_init__(self) -> None:
        """Validate the host/port pair at construction time."""
        if not self.name:
            raise ValueError("Host.name must be a non-empty string.")
        if not (1 <= int(self.port) <= 65535):
            raise ValueError("Host.port must be in range 1..65535.")

    def __str__(self) -> str:
        return f"{self.name}:{self.port}"

    @property
    def alias(self) -> tuple[str, int]:
        """Return the ``(name, port)`` pair used as a node alias key."""
        return (self.name, int(self.port))

    @classmethod
    def parse(cls, text: str, *, default_port: int = DEFAULT_PORT) -> "Host":
        """
        Parse ``host`` or ``host:port`` into a :class:`Host`.

        IPv6 literals must be bracketed (``[::1]:3000``).
        """
        text = text.strip()
        if text.startswith("["):
            end = text.find("]")
            if end < 0:
                raise ValueError(f"Invalid host literal {text!r}.")
            name = text[1:end]
            rest = text[end + 1 :]
            port = int(rest[1:]) if rest.startswith(":") else default_port
            return cls(name, port)
        if ":" in text:
            name, _, port_text = text.rpartition(":")
            return cls(name, int(port_text))
        return cls(text, default_port)

    @classmethod
    def parse_many(cls, text: str, *, default_port: int = DEFAULT_PORT) -> list["Host"]:
        """Parse a ``;`` or ``,`` separated host list, ignoring blanks."""
        hosts = []
        for chunk in text.replace(",", ";").split(";"):
            if chunk.strip():
                hosts.append(cls.parse(chunk, default_port=default_port))
        return hosts


class ReplicaPreference(str, Enum):
    """
    Which replica of a partition a read is routed to.

    MASTER
        Always the partition master.
    MASTER_PREFER_RACK
        A replica on the client's rack when one exists, else the master.
    RANDOM
        A uniformly random replica.
    SEQUENCE
        The master first, then each replica in order on retries.
    """

    MASTER = "master"
    MASTER_PREFER_RACK = "master_prefer_rack"
    RANDOM = "random"
    SEQUENCE = "sequence"


class BackoffMode(str, Enum):
    """Sleep growth between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"


class GenerationPolicy(str, Enum):
    """Optimistic-concurrency check applied to writes."""

    NONE = "none"
    EXPECT_GEN_EQUAL = "expect_gen_equal"
    EXPECT_GEN_GT = "expect_gen_gt"


class RecordExistsAction(str, Enum):
    """How a write treats an already existing record."""

    UPDATE = "update"
    UPDATE_ONLY = "update_only"
    REPLACE = "replace"
    REPLACE_ONLY = "replace_only"
    CREATE_ONLY = "create_only"


@dataclass(frozen=True, slots=True)
class Policy:
    """
    Per-command execution policy.

    Parameters
    ----------
    timeout_seconds:
        Overall deadline spanning every attempt. ``0`` disables the deadline.
    socket_timeout_seconds:
        Bound for one send/receive exchange. ``0`` means the socket timeout
        falls back to the remaining overall deadline.
    max_retries:
        Number of retries after the first attempt.
    sleep_between_retries_seconds:
        Base backoff sleep between attempts.
    backoff:
        Fixed or linear backoff growth.
    replica_preference:
        Replica routing for reads. Writes always target the master.
    send_key:
        When true the user key is sent along with its digest.
    """

    timeout_seconds: float = 1.0
    socket_timeout_seconds: float = 0.5
    max_retries: int = 2
    sleep_between_retries_seconds: float = 0.0
    backoff: BackoffMode = BackoffMode.FIXED
    replica_preference: ReplicaPreference = ReplicaPreference.SEQUENCE
    send_key: bool = False

    def __post_init__(self) -> None:
        """Validate policy values that affect retry safety."""
        if self.timeout_seconds < 0:
            raise ValueError("Policy.timeout_seconds must be >= 0.")
        if self.socket_timeout_seconds < 0:
            raise ValueError("Policy.socket_timeout_seconds must be >= 0.")
        if self.max_retries < 0:
            raise ValueError("Policy.max_retries must be >= 0.")
        if self.sleep_between_retries_seconds < 0:
            raise ValueError("Policy.sleep_between_retries_seconds must be >= 0.")

    def backoff_delay(self, attempt: int) -> float:
        """
        Return the sleep before retry number ``attempt`` (1-based).

        Linear backoff multiplies the base sleep by the attempt number.
        """
        base = self.sleep_between_retries_seconds
        if self.backoff is BackoffMode.LINEAR:
            return base * max(1, attempt)
        return base


@dataclass(frozen=True, slots=True)
class WritePolicy(Policy):
    """
    Policy for commands that modify records.

    ``expiration`` is the record time-to-live in seconds; ``0`` keeps the
    namespace default and ``-1`` means never expire.
    """

    generation: int = 0
    generation_policy: GenerationPolicy = GenerationPolicy.NONE
    expiration: int = 0
    record_exists_action: RecordExistsAction = RecordExistsAction.UPDATE
    durable_delete: bool = False

    def __post_init__(self) -> None:
        Policy.__post_init__(self)
        if self.generation < 0:
            raise ValueError("WritePolicy.generation must be >= 0.")
        if self.expiration < -2:
            raise ValueError("WritePolicy.expiration must be >= -2.")


@dataclass(frozen=True, slots=True)
class BatchPolicy(Policy):
    """
    Policy for multi-key batch commands.

    Parameters
    ----------
    max_concurrent_nodes:
        Upper bound on node groups executed in parallel. ``0`` runs every
        node group concurrently.
    allow_inline:
        Let the server process the batch in its network thread.
    respond_all_keys:
        Let the server answer every key even after a per-key error.
    """

    max_concurrent_nodes: int = 0
    allow_inline: bool = True
    respond_all_keys: bool = True

    def __post_init__(self) -> None:
        Policy.__post_init__(self)
        if self.max_concurrent_nodes < 0:
            raise ValueError("BatchPolicy.max_concurrent_nodes must be >= 0.")


@dataclass(frozen=True, slots=True)
class BatchWritePolicy:
    """
    Write attributes applied to every record of a batch write.

    Mirrors the record-level fields of :class:`WritePolicy`; retry and
    timeout settings come from the :class:`BatchPolicy` the batch runs with.
    """

    generation: int = 0
    generation_policy: GenerationPolicy = GenerationPolicy.NONE
    expiration: int = 0
    record_exists_action: RecordExistsAction = RecordExistsAction.UPDATE
    durable_delete: bool = False

    def __post_init__(self) -> None:
        if self.generation < 0 or self.generation > 0xFFFF:
            raise ValueError("BatchWritePolicy.generation must be in range 0..65535.")
        if self.expiration < -2:
            raise ValueError("BatchWritePolicy.expiration must be >= -2.")


@dataclass(frozen=True, slots=True)
class ScanPolicy(Policy):
    """
    Policy for partition scans and secondary-index queries.

    Scan traffic is pinned to each partition's master, so
    ``replica_preference`` is ignored.
    """

    timeout_seconds: float = 0.0
    socket_timeout_seconds: float = 30.0
    max_retries: int = 5
    include_bin_data: bool = True


@dataclass(slots=True)
class TLSConfig:
    """
    Transport security settings.

    Either pass a ready ``ssl_context`` or let the client build a default
    verifying context from ``ca_file`` and an optional client certificate.
    """

    enabled: bool = False
    ca_file: str | None = None
    certfile: str | None = None
    keyfile: str | None = None
    ssl_context: ssl.SSLContext | None = None


@dataclass(slots=True)
class ObservabilityConfig:
    """
    Client diagnostics settings.

    ``enable_http`` starts a small HTTP endpoint exposing ``/healthz``,
    ``/metrics`` and ``/traces``.
    """

    enable_http: bool = False
    host: str = "127.0.0.1"
    port: int = 9464
    enable_tracing: bool = True
    trace_history_size: int = 512


@dataclass(slots=True)
class ClientConfig:
    """
    Top-level runtime configuration used by :class:`Cluster`.

    Parameters
    ----------
    seeds:
        Initial hosts used to discover the cluster.
    cluster_name:
        Expected cluster name. Seeds and peers reporting a different name are
        rejected. ``None`` disables the check.
    tend_interval_seconds:
        Delay between background tend cycles.
    connect_timeout_seconds:
        Bound for TCP connects, info requests and the initial synchronous
        tend performed by :meth:`Cluster.start`.
    fail_if_not_connected:
        Raise from :meth:`Cluster.start` when no seed could be reached.
    max_conns_per_node:
        Connection pool cap per node.
    idle_timeout_seconds:
        Idle pooled connections older than this are closed by the tend loop.
        ``0`` keeps idle connections forever.
    max_buffer_size:
        Largest encoded request or decoded message accepted, in bytes.
    suspect_after_failures, down_after_failures:
        Consecutive failure counts that move a node to ``SUSPECT`` and then
        ``DOWN``.
    node_removal_grace_seconds:
        How long a ``DOWN`` node is kept before removal.
    rack_id:
        Client rack used by ``MASTER_PREFER_RACK`` routing.
    use_services_alternate:
        Ask nodes for ``services-alternate`` instead of ``services``.
    """

    seeds: list[Host] = field(default_factory=list)
    cluster_name: str | None = None
    tend_interval_seconds: float = 1.0
    connect_timeout_seconds: float = 1.0
    fail_if_not_connected: bool = True
    max_conns_per_node: int = 256
    idle_timeout_seconds: float = 55.0
    max_buffer_size: int = 128 * 1024 * 1024
    suspect_after_failures: int = 2
    down_after_failures: int = 5
    node_removal_grace_seconds: float = 30.0
    rack_id: int = 0
    use_services_alternate: bool = False
    read_policy: Policy = field(default_factory=Policy)
    write_policy: WritePolicy = field(default_factory=WritePolicy)
    batch_policy: BatchPolicy = field(default_factory=BatchPolicy)
    scan_policy: ScanPolicy = field(default_factory=ScanPolicy)
    tls: TLSConfig = field(default_factory=TLSConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def __post_init__(self) -> None:
        """Validate configuration values that affect runtime safety."""
        if not self.seeds:
            raise ValueError("ClientConfig.seeds must contain at least one host.")
        if self.cluster_name is not None and not self.cluster_name.strip():
            raise ValueError("ClientConfig.cluster_name cannot be blank when provided.")
        if self.tend_interval_seconds <= 0:
            raise ValueError("ClientConfig.tend_interval_seconds must be > 0.")
        if self.connect_timeout_seconds <= 0:
            raise ValueError("ClientConfig.connect_timeout_seconds must be > 0.")
        if self.max_conns_per_node <= 0:
            raise ValueError("ClientConfig.max_conns_per_node must be >= 1.")
        if self.idle_timeout_seconds < 0:
            raise ValueError("ClientConfig.idle_timeout_seconds must be >= 0.")
        if self.max_buffer_size < 1024:
            raise ValueError("ClientConfig.max_buffer_size must be >= 1024.")
        if self.suspect_after_failures <= 0:
            raise ValueError("ClientConfig.suspect_after_failures must be >= 1.")
        if self.down_after_failures < self.suspect_after_failures:
            raise ValueError(
                "ClientConfig.down_after_failures must be >= suspect_after_failures."
            )
        if self.node_removal_grace_seconds < 0:
            raise ValueError("ClientConfig.node_removal_grace_seconds must be >= 0.")
        if self.observability.trace_history_size <= 0:
            raise ValueError("ObservabilityConfig.trace_history_size must be >= 1.")
        if self.tls.enabled and self.tls.ssl_context is None and self.tls.keyfile and not self.tls.certfile:
            raise ValueError("TLSConfig.keyfile requires TLSConfig.certfile.")

    def unique_seeds(self) -> list[Host]:
        """
        Return seeds with duplicate ``(name, port)`` pairs removed.

        Order is preserved so the first listed seed is tried first.
        """
        unique = []
        seen = set()
        for seed in self.seeds:
            if seed.alias in seen:
                continue
            seen.add(seed.alias)
            unique.append(seed)
        return unique

    def build_ssl_context(self) -> ssl.SSLContext | None:
        """Return the client SSL context when TLS is enabled."""
        if not self.tls.enabled:
            return None
        if self.tls.ssl_context is not None:
            return self.tls.ssl_context
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        if self.tls.ca_file:
            context.load_verify_locations(cafile=str(self.tls.ca_file))
        else:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if self.tls.certfile:
            context.load_cert_chain(
                certfile=str(self.tls.certfile),
                keyfile=str(self.tls.keyfile) if self.tls.keyfile else None,
            )
        return context
