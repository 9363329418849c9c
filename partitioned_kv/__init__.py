"""
partitioned_kv
==============

Cluster-aware client core for a partitioned key-value database.

The package tracks cluster topology, routes every command straight to the
node owning the target partition, pools TCP connections per node and retries
through node failures and partition migrations:

* :class:`partitioned_kv.cluster.Cluster` discovers nodes from seeds, tends
  them in a background thread and publishes immutable partition maps
* :class:`partitioned_kv.executor.CommandExecutor` runs any
  :class:`partitioned_kv.commands.Command` with deadline-bounded retries
* batch, scan and query commands fan out per node and merge results
* runtime counters via :meth:`Cluster.stats`, plus an optional HTTP
  health/metrics/traces endpoint

Typical usage::

    from partitioned_kv import ClientConfig, Cluster, Command, Host, Key

    cluster = Cluster(ClientConfig(seeds=[Host("10.0.0.5", 3000)]))
    cluster.start()

    key = Key.create("test", "users", "u-1")
    cluster.executor.execute(Command.write(key, {"name": "Alice"}))
    record = cluster.executor.execute(Command.read(key)).record

    cluster.close()
"""

from .cluster import Cluster
from .commands import BatchRecord, Command, CommandKind, Op, Record, Response
from .config import (
    BackoffMode,
    BatchPolicy,
    BatchWritePolicy,
    ClientConfig,
    GenerationPolicy,
    Host,
    ObservabilityConfig,
    Policy,
    RecordExistsAction,
    ReplicaPreference,
    ScanPolicy,
    TLSConfig,
    WritePolicy,
)
from .exceptions import (
    ClusterClosedError,
    ClusterConnectionError,
    CommandTimeoutError,
    InvalidNodeError,
    MaybeAppliedError,
    NoAvailableNodeError,
    PartitionedKVError,
    PayloadTooLargeError,
    PoolClosedError,
    PoolTimeoutError,
    ProtocolError,
    ServerError,
)
from .executor import CommandExecutor
from .key import Key
from .node import Node, NodeHealth
from .result_code import ResultCode
from .serialization import BasicSerializer, GeoJSON, ValueSerializer

__all__ = [
    "BackoffMode",
    "BasicSerializer",
    "BatchPolicy",
    "BatchRecord",
    "BatchWritePolicy",
    "ClientConfig",
    "Cluster",
    "ClusterClosedError",
    "ClusterConnectionError",
    "Command",
    "CommandExecutor",
    "CommandKind",
    "CommandTimeoutError",
    "GenerationPolicy",
    "GeoJSON",
    "Host",
    "InvalidNodeError",
    "Key",
    "MaybeAppliedError",
    "NoAvailableNodeError",
    "Node",
    "NodeHealth",
    "ObservabilityConfig",
    "Op",
    "PartitionedKVError",
    "PayloadTooLargeError",
    "Policy",
    "PoolClosedError",
    "PoolTimeoutError",
    "ProtocolError",
    "Record",
    "RecordExistsAction",
    "ReplicaPreference",
    "Response",
    "ResultCode",
    "ScanPolicy",
    "ServerError",
    "TLSConfig",
    "ValueSerializer",
    "WritePolicy",
]
