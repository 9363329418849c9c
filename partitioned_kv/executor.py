"""
Command execution engine.

Every command runs through the same state machine::

    Resolve -> Connect -> SendRecv -> Decode -> Success
                                  \\-> RetryableFailure -> Resolve
                                  \\-> TerminalFailure

Resolution always reads the cluster's current partition map snapshot, so a
retry after a migration lands on the new owner. Batch commands fan out one
sub-command per node and scan/query commands one per node's partition group;
both retry only the failed groups.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from .commands import BatchRecord, Command, Response
from .config import BatchPolicy, Policy, ReplicaPreference
from .exceptions import (
    ClusterConnectionError,
    CommandTimeoutError,
    MaybeAppliedError,
    NoAvailableNodeError,
    PartitionedKVError,
    PoolClosedError,
    PoolTimeoutError,
    ProtocolError,
    ServerError,
)
from .key import Key
from .protocol import ProtoType
from .result_code import ResultCode
from .serialization import BasicSerializer, ValueSerializer

if TYPE_CHECKING:
    from .cluster import Cluster
    from .connection import Connection
    from .node import Node

_LOGGER = logging.getLogger(__name__)


class Deadline:
    """Overall command deadline; ``timeout_seconds == 0`` never expires."""

    def __init__(self, timeout_seconds: float) -> None:
        self._end = time.monotonic() + timeout_seconds if timeout_seconds > 0 else None

    def remaining(self) -> float | None:
        if self._end is None:
            return None
        return max(0.0, self._end - time.monotonic())

    def expired(self) -> bool:
        return self._end is not None and time.monotonic() >= self._end

    def attempt_timeout(self, socket_timeout_seconds: float) -> float | None:
        """Return the socket timeout for one attempt, bounded by the deadline."""
        remaining = self.remaining()
        if socket_timeout_seconds <= 0:
            return remaining
        if remaining is None:
            return socket_timeout_seconds
        return min(socket_timeout_seconds, remaining)


def is_retryable(exc: BaseException) -> bool:
    """Return whether a failed attempt may be retried against a re-resolved node."""
    if isinstance(exc, (ClusterConnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, ServerError):
        return exc.is_transient
    return False


class CommandExecutor:
    """
    Execute commands against a :class:`~partitioned_kv.cluster.Cluster`.

    Parameters
    ----------
    cluster:
        Topology source. Only ``node_for``, ``partition_count`` and the
        diagnostics hooks are used.
    serializer:
        Bin value codec; defaults to :class:`BasicSerializer`.
    """

    def __init__(self, cluster: "Cluster", *, serializer: ValueSerializer | None = None) -> None:
        self._cluster = cluster
        self.serializer: ValueSerializer = serializer or BasicSerializer()

    def default_policy(self, command: Command) -> Policy:
        config = self._cluster.config
        if command.kind.is_batch:
            return config.batch_policy
        if command.kind.is_partition_stream:
            return config.scan_policy
        if command.is_write:
            return config.write_policy
        return config.read_policy

    def execute(self, command: Command, policy: Policy | None = None) -> Response:
        """
        Run ``command`` to completion.

        Raises
        ------
        CommandTimeoutError
            When the overall deadline expires.
        MaybeAppliedError
            When a write reached the server but its response was lost.
        NoAvailableNodeError
            When the partition map has no routable node for the target.
        ServerError
            For non-transient server result codes, or the last transient one
            once retries are exhausted.
        """
        self._cluster._ensure_open()
        policy = policy or self.default_policy(command)
        if command.kind.is_batch:
            return self._execute_batch(command, policy)
        if command.kind.is_partition_stream:
            return self._execute_partition_stream(command, policy)
        return self._execute_single(command, policy)

    # single record

    def _execute_single(self, command: Command, policy: Policy) -> Response:
        deadline = Deadline(policy.timeout_seconds)
        key = command.key
        failed_nodes: list["Node"] = []
        last_error: PartitionedKVError | None = None
        attempt = 0
        while True:
            if deadline.expired():
                self._cluster._inc_stat("commands_timed_out")
                raise CommandTimeoutError(
                    f"Command {command.kind.value} exceeded {policy.timeout_seconds}s after {attempt} attempt(s)."
                ) from last_error
            node = self._cluster.node_for(
                key.namespace,
                key,
                policy.replica_preference,
                is_write=command.is_write,
                exclude=failed_nodes,
            )
            try:
                response = self._run_attempt(node, command, policy, deadline)
            except PartitionedKVError as exc:
                if not is_retryable(exc):
                    self._cluster._inc_stat("commands_failed")
                    raise
                last_error = exc
            else:
                self._cluster._inc_stat("commands_succeeded")
                return response

            attempt += 1
            if deadline.expired():
                self._cluster._inc_stat("commands_timed_out")
                raise CommandTimeoutError(
                    f"Command {command.kind.value} exceeded {policy.timeout_seconds}s after {attempt} attempt(s)."
                ) from last_error
            if attempt > policy.max_retries:
                self._cluster._inc_stat("commands_failed")
                raise last_error
            failed_nodes.append(node)
            self._before_retry(command, policy, deadline, attempt, node, last_error)

    def _before_retry(
        self,
        command: Command,
        policy: Policy,
        deadline: Deadline,
        attempt: int,
        node: "Node",
        error: BaseException,
    ) -> None:
        self._cluster._inc_stat("command_retries")
        _LOGGER.debug(
            "Command retry: kind=%s attempt=%d node=%s error=%s",
            command.kind.value,
            attempt,
            node.name,
            error,
        )
        delay = policy.backoff_delay(attempt)
        remaining = deadline.remaining()
        if remaining is not None:
            delay = min(delay, remaining)
        if delay > 0:
            time.sleep(delay)

    def _run_attempt(self, node: "Node", command: Command, policy: Policy, deadline: Deadline) -> Response:
        """
        Run one Connect -> SendRecv -> Decode pass on ``node``.

        The connection goes back to the pool only when the exchange finished
        cleanly; any uncertain stream position closes it.
        """
        try:
            conn = node.acquire(deadline.remaining())
        except PoolClosedError:
            # node left the cluster; nothing to hold against its health
            raise
        except ClusterConnectionError:
            node.record_failure()
            raise
        healthy = False
        sent = False
        try:
            data = command.kind.encode(command, policy, buffer=conn.buffer, serializer=self.serializer)
            conn.set_timeout(deadline.attempt_timeout(policy.socket_timeout_seconds))
            conn.send(data)
            sent = True
            response = command.kind.decode(command, lambda: _read_message(conn), self.serializer)
            healthy = True
            node.record_success()
            return response
        except ServerError:
            # the server answered, so the node is reachable
            healthy = not command.kind.is_partition_stream
            node.record_success()
            raise
        except ClusterConnectionError as exc:
            node.record_failure()
            if sent and not command.is_idempotent:
                self._cluster._inc_stat("commands_maybe_applied")
                raise MaybeAppliedError(
                    f"Write to {node.name} may have been applied: {exc}"
                ) from exc
            raise
        except ProtocolError:
            node.record_failure()
            raise
        except PartitionedKVError:
            # local failure before anything reached the wire
            healthy = not sent
            raise
        finally:
            node.release(conn, healthy=healthy)

    # batch

    def _execute_batch(self, command: Command, policy: Policy) -> Response:
        deadline = Deadline(policy.timeout_seconds)
        preference = policy.replica_preference
        max_nodes = policy.max_concurrent_nodes if isinstance(policy, BatchPolicy) else 0
        results: list[BatchRecord | None] = [None] * len(command.keys)
        pending = list(enumerate(command.keys))
        failed_nodes: set["Node"] = set()
        last_error: PartitionedKVError | None = None
        attempt = 0

        while pending:
            groups: dict["Node", list[tuple[int, Key]]] = {}
            for index, key in pending:
                try:
                    node = self._cluster.node_for(
                        key.namespace,
                        key,
                        preference,
                        is_write=command.is_write,
                        exclude=failed_nodes,
                    )
                except NoAvailableNodeError as exc:
                    results[index] = BatchRecord(key=key, result_code=ResultCode.SERVER_ERROR, error=exc)
                    continue
                groups.setdefault(node, []).append((index, key))

            retry: list[tuple[int, Key]] = []
            outcomes = self._run_groups(
                [
                    (node, dataclasses.replace(command, batch_entries=tuple(entries)))
                    for node, entries in groups.items()
                ],
                policy,
                deadline,
                max_nodes,
            )
            for (node, sub), outcome in outcomes:
                entries = sub.batch_entries
                if isinstance(outcome, Response):
                    for (index, _), item in zip(entries, outcome.batch):
                        results[index] = item
                    continue
                if is_retryable(outcome):
                    last_error = outcome
                    failed_nodes.add(node)
                    retry.extend(entries)
                    continue
                for index, key in entries:
                    results[index] = _failed_batch_record(key, outcome)

            if not retry:
                break
            attempt += 1
            if attempt > policy.max_retries or deadline.expired():
                final: PartitionedKVError = last_error
                if deadline.expired():
                    final = CommandTimeoutError(
                        f"Batch exceeded {policy.timeout_seconds}s after {attempt} attempt(s)."
                    )
                for index, key in retry:
                    results[index] = _failed_batch_record(key, final)
                break
            self._before_retry(command, policy, deadline, attempt, next(iter(failed_nodes)), last_error)
            pending = retry

        self._cluster._inc_stat("batch_commands")
        return Response(batch=[item for item in results if item is not None])

    def _run_groups(
        self,
        groups: list[tuple["Node", Command]],
        policy: Policy,
        deadline: Deadline,
        max_workers: int,
    ) -> list[tuple[tuple["Node", Command], Response | PartitionedKVError]]:
        """Run one attempt per ``(node, sub_command)`` in parallel; keep input order."""

        def run(node: "Node", sub: Command) -> Response | PartitionedKVError:
            try:
                return self._run_attempt(node, sub, policy, deadline)
            except PartitionedKVError as exc:
                return exc

        if not groups:
            return []
        if len(groups) == 1:
            node, sub = groups[0]
            return [((node, sub), run(node, sub))]
        workers = len(groups) if max_workers <= 0 else min(max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kv-fanout") as pool:
            futures = [pool.submit(run, node, sub) for node, sub in groups]
            return [(group, future.result()) for group, future in zip(groups, futures)]

    # scan / query

    def _execute_partition_stream(self, command: Command, policy: Policy) -> Response:
        deadline = Deadline(policy.timeout_seconds)
        partition_count = self._cluster.partition_count
        pending = list(command.partition_ids or range(partition_count))
        records = []
        failed_nodes: set["Node"] = set()
        last_error: PartitionedKVError | None = None
        attempt = 0

        while pending:
            groups: dict["Node", list[int]] = {}
            for pid in pending:
                node = self._cluster.node_for(
                    command.namespace,
                    pid,
                    ReplicaPreference.SEQUENCE,
                    exclude=failed_nodes,
                )
                groups.setdefault(node, []).append(pid)

            retry: list[int] = []
            outcomes = self._run_groups(
                [
                    (node, dataclasses.replace(command, partition_ids=tuple(pids)))
                    for node, pids in groups.items()
                ],
                policy,
                deadline,
                0,
            )
            for (node, sub), outcome in outcomes:
                if isinstance(outcome, Response):
                    records.extend(outcome.records)
                    if outcome.failed_partitions:
                        last_error = ServerError(ResultCode.PARTITION_UNAVAILABLE)
                        retry.extend(outcome.failed_partitions)
                    continue
                if not is_retryable(outcome):
                    self._cluster._inc_stat("commands_failed")
                    raise outcome
                # records from the failed attempt were never merged
                last_error = outcome
                failed_nodes.add(node)
                retry.extend(sub.partition_ids)

            if not retry:
                break
            attempt += 1
            if deadline.expired():
                raise CommandTimeoutError(
                    f"{command.kind.value} exceeded {policy.timeout_seconds}s after {attempt} attempt(s)."
                ) from last_error
            if attempt > policy.max_retries:
                self._cluster._inc_stat("commands_failed")
                raise last_error
            self._before_retry(command, policy, deadline, attempt, next(iter(groups)), last_error)
            pending = sorted(set(retry))

        self._cluster._inc_stat("commands_succeeded")
        return Response(records=records)


def _read_message(conn: "Connection") -> bytes:
    proto_type, body = conn.recv()
    if proto_type != ProtoType.MESSAGE:
        raise ProtocolError(f"Expected message response, got proto type {proto_type}.")
    return body


def _failed_batch_record(key: Key, error: PartitionedKVError) -> BatchRecord:
    code = error.result_code if isinstance(error, ServerError) else ResultCode.SERVER_ERROR
    return BatchRecord(key=key, result_code=code, error=error)

