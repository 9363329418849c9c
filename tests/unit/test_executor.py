"""
Unit tests for the command executor state machine.

The cluster, nodes and connections are scripted fakes: every fake node owns
a ``handler`` that turns a request frame into a response body or raises.
"""

from __future__ import annotations

import struct
import time
import unittest
from collections import Counter
from typing import Callable

from partitioned_kv.commands import Command, CommandKind, Op, parse_batch_index
from partitioned_kv.config import BatchPolicy, ClientConfig, Host, Policy, ScanPolicy, WritePolicy
from partitioned_kv.exceptions import (
    ClusterConnectionError,
    CommandTimeoutError,
    MaybeAppliedError,
    PayloadTooLargeError,
    PoolClosedError,
    PoolTimeoutError,
    ProtocolError,
    ServerError,
)
from partitioned_kv.executor import CommandExecutor, Deadline, is_retryable
from partitioned_kv.key import Key
from partitioned_kv.protocol import (
    Buffer,
    Field,
    FieldType,
    Info3,
    MessageHeader,
    Operation,
    OperationType,
    ProtoType,
    decode_request,
    message_size,
    write_message,
)
from partitioned_kv.result_code import ResultCode
from partitioned_kv.serialization import ParticleType

Handler = Callable[[bytes], bytes]
_PID = struct.Struct("<H")


def body(*replies: tuple[MessageHeader, list[Field], list[Operation]]) -> bytes:
    data = bytearray(sum(message_size(fields, ops) for _, fields, ops in replies))
    offset = 0
    for header, fields, ops in replies:
        offset = write_message(data, offset, header, fields, ops)
    return bytes(data)


def ok_record(value: str = "v") -> bytes:
    return body((MessageHeader(generation=1), [], [Operation(OperationType.READ, "bin", ParticleType.STRING, value.encode())]))


def code(result_code: int) -> bytes:
    return body((MessageHeader(result_code=result_code), [], []))


def key_in(pid: int, tag: int = 0) -> Key:
    return Key.from_digest("test", "users", bytes([pid, 0, 0, 0]) + tag.to_bytes(16, "big"))


class FakeConnection:
    def __init__(self, node: "FakeNode", max_buffer_size: int) -> None:
        self._node = node
        self.buffer = Buffer(max_buffer_size)
        self.timeouts: list[float | None] = []
        self._frame: bytes | None = None

    def set_timeout(self, timeout_seconds: float | None) -> None:
        self.timeouts.append(timeout_seconds)

    def send(self, data: bytes) -> None:
        if self._node.send_error is not None:
            error, self._node.send_error = self._node.send_error, None
            raise error
        self._frame = data
        self._node.frames.append(data)

    def recv(self) -> tuple[int, bytes]:
        return ProtoType.MESSAGE, self._node.handler(self._frame)


class FakeNode:
    def __init__(self, name: str, handler: Handler | None = None, *, max_buffer_size: int = 1 << 20) -> None:
        self.name = name
        self.handler = handler or (lambda frame: ok_record(name))
        self.max_buffer_size = max_buffer_size
        self.send_error: Exception | None = None
        self.acquire_error: Exception | None = None
        self.frames: list[bytes] = []
        self.released: list[bool] = []
        self.successes = 0
        self.failures = 0

    def acquire(self, timeout_seconds: float | None) -> FakeConnection:
        if self.acquire_error is not None:
            raise self.acquire_error
        return FakeConnection(self, self.max_buffer_size)

    def release(self, conn: FakeConnection, *, healthy: bool = True) -> None:
        self.released.append(healthy)

    def record_success(self) -> None:
        self.successes += 1

    def record_failure(self) -> None:
        self.failures += 1

    def requests(self) -> list:
        return [decode_request(frame) for frame in self.frames]


class FakeCluster:
    """
    Routes partition ``pid`` to ``owners[pid % len(owners)]`` and falls back
    to the next owner when the preferred one is excluded.
    """

    partition_count = 4

    def __init__(self, *owners: FakeNode) -> None:
        self.owners = list(owners)
        self.config = ClientConfig(seeds=[Host("127.0.0.1")])
        self.counters: Counter[str] = Counter()
        self.closed = False

    def _ensure_open(self) -> None:
        if self.closed:
            raise AssertionError("executor used a closed cluster")

    def _inc_stat(self, key: str, *, delta: int = 1) -> None:
        self.counters[key] += delta

    def node_for(self, namespace, partition_key, replica_preference=None, *, is_write=False, exclude=()):
        pid = partition_key.partition_id(self.partition_count) if isinstance(partition_key, Key) else partition_key
        start = pid % len(self.owners)
        ordered = self.owners[start:] + self.owners[:start]
        if is_write:
            return ordered[0]
        excluded = set(exclude)
        for node in ordered:
            if node not in excluded:
                return node
        return ordered[0]


FAST = Policy(timeout_seconds=2.0, socket_timeout_seconds=0.5, max_retries=2)


class SingleRecordTest(unittest.TestCase):
    def test_read_success_updates_health_and_pools_connection(self) -> None:
        node = FakeNode("A")
        cluster = FakeCluster(node)

        response = CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual({"bin": "A"}, response.record.bins)
        self.assertEqual([True], node.released)
        self.assertEqual(1, node.successes)
        self.assertEqual(1, cluster.counters["commands_succeeded"])

    def test_transient_code_retries_on_next_replica(self) -> None:
        busy = FakeNode("A", lambda frame: code(ResultCode.KEY_BUSY))
        replica = FakeNode("B")
        cluster = FakeCluster(busy, replica)

        response = CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual({"bin": "B"}, response.record.bins)
        self.assertEqual(1, cluster.counters["command_retries"])
        # a server answer proves the node is reachable
        self.assertEqual([True], busy.released)
        self.assertEqual(1, busy.successes)

    def test_transient_write_rejection_is_retried_on_master(self) -> None:
        answers = [code(ResultCode.PARTITION_UNAVAILABLE), code(ResultCode.OK)]
        master = FakeNode("A", lambda frame: answers.pop(0))
        cluster = FakeCluster(master, FakeNode("B"))

        response = CommandExecutor(cluster).execute(Command.write(key_in(0), {"a": 1}), WritePolicy(max_retries=2))

        self.assertEqual(ResultCode.OK, response.result_code)
        self.assertEqual(2, len(master.frames))

    def test_retries_exhausted_raises_last_error(self) -> None:
        cluster = FakeCluster(FakeNode("A", lambda frame: code(ResultCode.DEVICE_OVERLOAD)))
        policy = Policy(timeout_seconds=2.0, max_retries=1)

        with self.assertRaises(ServerError) as ctx:
            CommandExecutor(cluster).execute(Command.read(key_in(0)), policy)

        self.assertEqual(ResultCode.DEVICE_OVERLOAD, ctx.exception.result_code)
        self.assertEqual(2, len(cluster.owners[0].frames))
        self.assertEqual(1, cluster.counters["commands_failed"])

    def test_application_error_is_not_retried(self) -> None:
        node = FakeNode("A", lambda frame: code(ResultCode.KEY_EXISTS_ERROR))
        cluster = FakeCluster(node)

        with self.assertRaises(ServerError):
            CommandExecutor(cluster).execute(Command.write(key_in(0), {"a": 1}), WritePolicy())

        self.assertEqual(1, len(node.frames))
        self.assertEqual(0, cluster.counters["command_retries"])

    def test_deadline_bounds_all_attempts(self) -> None:
        cluster = FakeCluster(FakeNode("A", lambda frame: code(ResultCode.TIMEOUT)))
        policy = Policy(timeout_seconds=0.05, max_retries=100, sleep_between_retries_seconds=0.02)

        with self.assertRaises(CommandTimeoutError) as ctx:
            CommandExecutor(cluster).execute(Command.read(key_in(0)), policy)

        self.assertIsInstance(ctx.exception.__cause__, ServerError)
        self.assertEqual(1, cluster.counters["commands_timed_out"])

    def test_attempt_timeout_never_exceeds_remaining_deadline(self) -> None:
        node = FakeNode("A")
        conns: list[FakeConnection] = []
        original = node.acquire

        def tracking(timeout_seconds):
            conn = original(timeout_seconds)
            conns.append(conn)
            return conn

        node.acquire = tracking
        policy = Policy(timeout_seconds=0.2, socket_timeout_seconds=5.0)

        CommandExecutor(FakeCluster(node)).execute(Command.read(key_in(0)), policy)

        self.assertLessEqual(conns[0].timeouts[0], 0.2)

    def test_deadline_expiring_during_last_attempt_raises_timeout(self) -> None:
        def stall(frame: bytes) -> bytes:
            time.sleep(0.3)
            raise ClusterConnectionError("Receive from A failed: timed out")

        cluster = FakeCluster(FakeNode("A", stall))
        policy = Policy(timeout_seconds=0.2, socket_timeout_seconds=0, max_retries=0)

        with self.assertRaises(CommandTimeoutError) as ctx:
            CommandExecutor(cluster).execute(Command.read(key_in(0)), policy)

        self.assertIsInstance(ctx.exception.__cause__, ClusterConnectionError)
        self.assertEqual(1, cluster.counters["commands_timed_out"])
        self.assertEqual(0, cluster.counters["commands_failed"])

    def test_closed_pool_of_removed_node_is_retried_on_new_owner(self) -> None:
        removed = FakeNode("A")
        removed.acquire_error = PoolClosedError("Connection pool A is closed.")
        cluster = FakeCluster(removed, FakeNode("B"))

        response = CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual({"bin": "B"}, response.record.bins)
        self.assertEqual(0, removed.failures)
        self.assertEqual(1, cluster.counters["command_retries"])

    def test_lost_write_response_raises_maybe_applied(self) -> None:
        def reset(frame: bytes) -> bytes:
            raise ClusterConnectionError("connection reset")

        node = FakeNode("A", reset)
        cluster = FakeCluster(node, FakeNode("B"))

        with self.assertRaises(MaybeAppliedError) as ctx:
            CommandExecutor(cluster).execute(Command.write(key_in(0), {"a": 1}), WritePolicy(max_retries=3))

        self.assertIsInstance(ctx.exception.__cause__, ClusterConnectionError)
        self.assertEqual(1, len(node.frames))
        self.assertEqual([False], node.released)
        self.assertEqual(1, node.failures)
        self.assertEqual(1, cluster.counters["commands_maybe_applied"])

    def test_send_failure_before_write_lands_is_retried(self) -> None:
        node = FakeNode("A")
        node.send_error = ClusterConnectionError("broken pipe")
        cluster = FakeCluster(node)

        response = CommandExecutor(cluster).execute(Command.write(key_in(0), {"a": 1}), WritePolicy(max_retries=2))

        self.assertEqual(ResultCode.OK, response.result_code)
        self.assertEqual(1, cluster.counters["command_retries"])

    def test_lost_read_response_is_retried(self) -> None:
        def reset(frame: bytes) -> bytes:
            raise ClusterConnectionError("connection reset")

        failing = FakeNode("A", reset)
        cluster = FakeCluster(failing, FakeNode("B"))

        response = CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual({"bin": "B"}, response.record.bins)
        self.assertEqual([False], failing.released)

    def test_pool_timeout_is_retryable_without_health_penalty(self) -> None:
        exhausted = FakeNode("A")
        exhausted.acquire_error = PoolTimeoutError("exhausted")
        cluster = FakeCluster(exhausted, FakeNode("B"))

        response = CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual({"bin": "B"}, response.record.bins)
        self.assertEqual(0, exhausted.failures)

    def test_protocol_error_discards_connection_and_is_terminal(self) -> None:
        node = FakeNode("A", lambda frame: b"\x16\x00")
        cluster = FakeCluster(node, FakeNode("B"))

        with self.assertRaises(ProtocolError):
            CommandExecutor(cluster).execute(Command.read(key_in(0)), FAST)

        self.assertEqual([False], node.released)
        self.assertEqual(1, node.failures)

    def test_payload_too_large_never_reaches_the_wire(self) -> None:
        node = FakeNode("A", max_buffer_size=1024)
        cluster = FakeCluster(node)

        with self.assertRaises(PayloadTooLargeError):
            CommandExecutor(cluster).execute(Command.write(key_in(0), {"blob": b"x" * 4096}), WritePolicy())

        self.assertEqual([], node.frames)
        self.assertEqual([True], node.released)


class BatchTest(unittest.TestCase):
    @staticmethod
    def batch_handler(name: str) -> Handler:
        def handle(frame: bytes) -> bytes:
            message = decode_request(frame)
            _, entries = parse_batch_index(message.get_field(FieldType.BATCH_INDEX))
            replies = [
                (
                    MessageHeader(transaction_ttl=index),
                    [],
                    [Operation(OperationType.READ, "node", ParticleType.STRING, name.encode())],
                )
                for index, _ in entries
            ]
            replies.append((MessageHeader(info3=Info3.LAST), [], []))
            return body(*replies)

        return handle

    def test_results_keep_caller_order_across_nodes(self) -> None:
        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", self.batch_handler("B"))
        cluster = FakeCluster(node_a, node_b)
        keys = [key_in(1, 1), key_in(0, 2), key_in(3, 3), key_in(2, 4)]

        response = CommandExecutor(cluster).execute(Command.batch_read(keys), BatchPolicy())

        self.assertEqual(keys, [item.key for item in response.batch])
        self.assertEqual(["B", "A", "B", "A"], [item.record.bins["node"] for item in response.batch])
        self.assertEqual(1, len(node_a.frames))
        self.assertEqual(1, len(node_b.frames))
        self.assertEqual(1, cluster.counters["batch_commands"])

    def test_failed_node_group_is_retried_elsewhere(self) -> None:
        def reset(frame: bytes) -> bytes:
            raise ClusterConnectionError("connection reset")

        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", reset)
        cluster = FakeCluster(node_a, node_b)
        keys = [key_in(0, 1), key_in(1, 2)]

        response = CommandExecutor(cluster).execute(Command.batch_read(keys), BatchPolicy())

        self.assertEqual(["A", "A"], [item.record.bins["node"] for item in response.batch])
        self.assertEqual(2, len(node_a.frames))
        _, entries = parse_batch_index(node_a.requests()[1].get_field(FieldType.BATCH_INDEX))
        self.assertEqual([1], [index for index, _ in entries])

    def test_terminal_group_failure_marks_only_its_keys(self) -> None:
        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", lambda frame: body((MessageHeader(info3=Info3.LAST, result_code=ResultCode.INVALID_NAMESPACE), [], [])))
        cluster = FakeCluster(node_a, node_b)
        keys = [key_in(0, 1), key_in(1, 2)]

        response = CommandExecutor(cluster).execute(Command.batch_exists(keys), BatchPolicy())

        self.assertTrue(response.batch[0].exists)
        self.assertIsNone(response.batch[0].error)
        self.assertIsInstance(response.batch[1].error, ServerError)
        self.assertEqual(ResultCode.INVALID_NAMESPACE, response.batch[1].result_code)

    def test_closed_pool_group_is_regrouped(self) -> None:
        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", self.batch_handler("B"))
        node_b.acquire_error = PoolClosedError("Connection pool B is closed.")
        cluster = FakeCluster(node_a, node_b)
        keys = [key_in(0, 1), key_in(1, 2)]

        response = CommandExecutor(cluster).execute(Command.batch_read(keys), BatchPolicy())

        self.assertEqual(["A", "A"], [item.record.bins["node"] for item in response.batch])
        self.assertTrue(all(item.error is None for item in response.batch))

    def test_batch_write_goes_to_masters_in_caller_order(self) -> None:
        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", self.batch_handler("B"))
        cluster = FakeCluster(node_a, node_b)
        command = Command.batch_write(
            [(key_in(1, 1), [Op.put("a", 1)]), (key_in(0, 2), [Op.add("n", 1), Op.get("n")])]
        )

        response = CommandExecutor(cluster).execute(command, BatchPolicy())

        self.assertEqual(["B", "A"], [item.record.bins["node"] for item in response.batch])
        self.assertIs(CommandKind.BATCH_WRITE, CommandKind.from_message(node_a.requests()[0]))
        self.assertIs(CommandKind.BATCH_WRITE, CommandKind.from_message(node_b.requests()[0]))

    def test_lost_batch_write_response_marks_keys_maybe_applied(self) -> None:
        def reset(frame: bytes) -> bytes:
            raise ClusterConnectionError("connection reset")

        node_a = FakeNode("A", self.batch_handler("A"))
        node_b = FakeNode("B", reset)
        cluster = FakeCluster(node_a, node_b)
        keys = [key_in(0, 1), key_in(1, 2), key_in(3, 3)]
        command = Command.batch_write([(key, [Op.put("a", 1)]) for key in keys])

        response = CommandExecutor(cluster).execute(command, BatchPolicy(max_retries=3))

        self.assertIsNone(response.batch[0].error)
        self.assertIsInstance(response.batch[1].error, MaybeAppliedError)
        self.assertIsInstance(response.batch[2].error, MaybeAppliedError)
        self.assertEqual(1, len(node_a.frames))
        self.assertEqual(1, len(node_b.frames))
        self.assertEqual(0, cluster.counters["command_retries"])


class PartitionStreamTest(unittest.TestCase):
    @staticmethod
    def scan_handler(name: str, *, unavailable_once: set[int] | None = None) -> Handler:
        pending = set(unavailable_once or ())

        def handle(frame: bytes) -> bytes:
            message = decode_request(frame)
            raw = message.get_field(FieldType.PID_ARRAY)
            pids = [_PID.unpack_from(raw, offset)[0] for offset in range(0, len(raw), 2)]
            replies = []
            for pid in pids:
                if pid in pending:
                    pending.discard(pid)
                    replies.append(
                        (
                            MessageHeader(
                                info3=Info3.PARTITION_DONE,
                                result_code=ResultCode.PARTITION_UNAVAILABLE,
                                generation=pid,
                            ),
                            [],
                            [],
                        )
                    )
                    continue
                fields = [Field(FieldType.DIGEST, key_in(pid).digest)]
                ops = [Operation(OperationType.READ, "node", ParticleType.STRING, name.encode())]
                replies.append((MessageHeader(), fields, ops))
                replies.append((MessageHeader(info3=Info3.PARTITION_DONE, generation=pid), [], []))
            replies.append((MessageHeader(info3=Info3.LAST), [], []))
            return body(*replies)

        return handle

    def test_scan_fans_out_per_node_and_merges(self) -> None:
        node_a = FakeNode("A", self.scan_handler("A"))
        node_b = FakeNode("B", self.scan_handler("B"))
        cluster = FakeCluster(node_a, node_b)

        response = CommandExecutor(cluster).execute(Command.scan("test", "users"), ScanPolicy())

        owners = {record.key.partition_id(4): record.bins["node"] for record in response.records}
        self.assertEqual({0: "A", 1: "B", 2: "A", 3: "B"}, owners)
        self.assertEqual(CommandKind.SCAN, CommandKind.from_message(node_a.requests()[0]))

    def test_unavailable_partitions_are_rescanned_once(self) -> None:
        node = FakeNode("A", self.scan_handler("A", unavailable_once={2}))
        cluster = FakeCluster(node)

        response = CommandExecutor(cluster).execute(Command.scan("test"), ScanPolicy(max_retries=2))

        self.assertEqual([0, 1, 3, 2], [record.key.partition_id(4) for record in response.records])
        retry_pids = node.requests()[1].get_field(FieldType.PID_ARRAY)
        self.assertEqual(_PID.pack(2), retry_pids)


class HelpersTest(unittest.TestCase):
    def test_retryable_classification(self) -> None:
        self.assertTrue(is_retryable(ClusterConnectionError("reset")))
        self.assertTrue(is_retryable(PoolTimeoutError("busy")))
        self.assertTrue(is_retryable(PoolClosedError("removed")))
        self.assertTrue(is_retryable(ServerError(ResultCode.PARTITION_UNAVAILABLE)))
        self.assertFalse(is_retryable(ServerError(ResultCode.KEY_EXISTS_ERROR)))
        self.assertFalse(is_retryable(ProtocolError("bad frame")))
        self.assertFalse(is_retryable(PayloadTooLargeError("big")))

    def test_zero_timeout_deadline_never_expires(self) -> None:
        deadline = Deadline(0)
        self.assertFalse(deadline.expired())
        self.assertIsNone(deadline.remaining())
        self.assertEqual(30.0, deadline.attempt_timeout(30.0))


if __name__ == "__main__":
    unittest.main()
