"""
Integration tests for discovery, routing and failover against fake nodes.

Every test starts one or two :class:`FakeNode` servers on localhost, points a
real :class:`Cluster` at them and drives commands through the executor over
real sockets.
"""

from __future__ import annotations

import json
import time
import unittest
import urllib.request
from typing import Any

from fake_node import FakeNode, digest_for_partition, value_bins

from partitioned_kv import (
    BasicSerializer,
    ClientConfig,
    Cluster,
    ClusterClosedError,
    ClusterConnectionError,
    Command,
    CommandKind,
    Key,
    MaybeAppliedError,
    NodeHealth,
    ObservabilityConfig,
    Op,
    Policy,
    ResultCode,
    WritePolicy,
)

NAMESPACE = "test"


def make_config(seed: FakeNode, **overrides: Any) -> ClientConfig:
    """Build a fast-tending client config pointed at ``seed``."""
    params: dict[str, Any] = {
        "seeds": [seed.host],
        "cluster_name": "it",
        "tend_interval_seconds": 0.05,
        "connect_timeout_seconds": 1.0,
        "suspect_after_failures": 1,
        "down_after_failures": 2,
        "read_policy": Policy(
            timeout_seconds=3.0,
            socket_timeout_seconds=1.0,
            max_retries=3,
            sleep_between_retries_seconds=0.01,
        ),
        "write_policy": WritePolicy(
            timeout_seconds=3.0,
            socket_timeout_seconds=1.0,
            max_retries=2,
        ),
    }
    params.update(overrides)
    return ClientConfig(**params)


def partition_key(pid: int, tag: int) -> Key:
    return Key.from_digest(NAMESPACE, "users", digest_for_partition(pid, tag))


def assert_eventually(predicate, *, timeout_seconds: float, interval_seconds: float, message: str) -> None:
    """
    Repeatedly run ``predicate`` until it returns true or timeout occurs.
    """
    deadline = time.monotonic() + timeout_seconds
    last_exc: Exception | None = None
    while time.monotonic() < deadline:
        try:
            if predicate():
                return
        except Exception as exc:  # noqa: BLE001 - retained as context for failure
            last_exc = exc
        time.sleep(interval_seconds)
    if last_exc is not None:
        raise AssertionError(message) from last_exc
    raise AssertionError(message)


class TwoNodeClusterTest(unittest.TestCase):
    """
    Node A masters partitions 0-1 and B masters 2-3; each replicates the other.
    """

    def setUp(self) -> None:
        self.node_a = FakeNode("A", master=(0, 1), replica=(2, 3)).start()
        self.node_b = FakeNode("B", master=(2, 3), replica=(0, 1)).start()
        self.node_a.peers = [self.node_b]
        self.node_b.peers = [self.node_a]
        self.addCleanup(self.node_a.stop)
        self.addCleanup(self.node_b.stop)
        self.cluster = Cluster(make_config(self.node_a))
        self.addCleanup(self.cluster.close)
        self.cluster.start()
        self.serializer = BasicSerializer()

    def seed_both(self, key: Key, **bins: Any) -> None:
        encoded = value_bins(self.serializer, **bins)
        self.node_a.put(key.digest, encoded)
        self.node_b.put(key.digest, encoded)

    def test_discovers_peer_and_routes_to_master(self) -> None:
        self.assertEqual({"A", "B"}, {node.name for node in self.cluster.nodes()})
        self.assertEqual(4, self.cluster.partition_count)
        self.assertTrue(self.cluster.is_connected())

        self.assertEqual("A", self.cluster.node_for(NAMESPACE, 0).name)
        self.assertEqual("A", self.cluster.node_for(NAMESPACE, 1).name)
        self.assertEqual("B", self.cluster.node_for(NAMESPACE, 2).name)
        self.assertEqual("B", self.cluster.node_for(NAMESPACE, partition_key(3, 1)).name)
        # repeated lookups between map updates are stable
        first = self.cluster.node_for(NAMESPACE, 1)
        self.assertIs(first, self.cluster.node_for(NAMESPACE, 1))

    def test_partition_moves_to_replica_when_master_goes_down(self) -> None:
        self.assertEqual("A", self.cluster.node_for(NAMESPACE, 1).name)

        node_a = self.cluster.get_node("A")
        self.node_a.stop()
        assert_eventually(
            lambda: node_a.health is NodeHealth.DOWN,
            timeout_seconds=5.0,
            interval_seconds=0.05,
            message="Node A was never marked down.",
        )
        assert_eventually(
            lambda: self.cluster.node_for(NAMESPACE, 1).name == "B",
            timeout_seconds=5.0,
            interval_seconds=0.05,
            message="Partition 1 was not reassigned to node B after node A went down.",
        )
        self.assertEqual("B", self.cluster.node_for(NAMESPACE, 1, is_write=True).name)

        key = partition_key(1, 7)
        self.cluster.executor.execute(Command.write(key, {"name": "Alice"}))
        self.assertIn(key.digest, self.node_b.records)
        record = self.cluster.executor.execute(Command.read(key)).record
        self.assertEqual({"name": "Alice"}, record.bins)

    def test_partition_generation_change_moves_ownership(self) -> None:
        self.node_a.set_ownership(master=(0,), replica=(1, 2, 3))
        self.node_b.set_ownership(master=(1, 2, 3), replica=(0,))
        assert_eventually(
            lambda: self.cluster.node_for(NAMESPACE, 1).name == "B",
            timeout_seconds=5.0,
            interval_seconds=0.05,
            message="Tend did not pick up the new partition ownership.",
        )
        self.assertEqual("A", self.cluster.node_for(NAMESPACE, 0).name)
        self.assertGreaterEqual(self.cluster.stats()["partition_map_updates"], 2)

    def test_batch_read_keeps_caller_order_across_nodes(self) -> None:
        keys = [partition_key(3, 1), partition_key(0, 2), partition_key(2, 3), partition_key(1, 4)]
        for position, key in enumerate(keys):
            self.cluster.executor.execute(Command.write(key, {"position": position}))
        missing = partition_key(0, 99)

        response = self.cluster.executor.execute(Command.batch_read(keys + [missing]))

        self.assertEqual(keys + [missing], [item.key for item in response.batch])
        for position, item in enumerate(response.batch[:4]):
            self.assertTrue(item.exists)
            self.assertEqual({"position": position}, item.record.bins)
        self.assertFalse(response.batch[4].exists)
        self.assertIsNone(response.batch[4].record)
        self.assertEqual(ResultCode.KEY_NOT_FOUND_ERROR, response.batch[4].result_code)
        self.assertEqual(1, self.node_a.kinds().count(CommandKind.BATCH_READ))
        self.assertEqual(1, self.node_b.kinds().count(CommandKind.BATCH_READ))

    def test_batch_exists_reports_presence(self) -> None:
        present = partition_key(2, 1)
        absent = partition_key(1, 2)
        self.cluster.executor.execute(Command.write(present, {"v": 1}))

        response = self.cluster.executor.execute(Command.batch_exists([absent, present]))

        self.assertEqual([False, True], [item.exists for item in response.batch])

    def test_scan_merges_records_from_every_node(self) -> None:
        keys = [partition_key(pid, pid + 10) for pid in range(4)]
        for key in keys:
            self.cluster.executor.execute(Command.write(key, {"pid": key.partition_id(4)}))

        response = self.cluster.executor.execute(Command.scan(NAMESPACE, "users"))

        self.assertEqual(
            sorted(key.digest for key in keys),
            sorted(record.key.digest for record in response.records),
        )
        for record in response.records:
            self.assertEqual(record.key.partition_id(4), record.bins["pid"])
        self.assertIn(CommandKind.SCAN, self.node_a.kinds())
        self.assertIn(CommandKind.SCAN, self.node_b.kinds())

    def test_transient_error_retries_on_next_replica(self) -> None:
        key = partition_key(0, 5)
        self.seed_both(key, name="Bob")
        self.node_a.fail_codes.append(ResultCode.KEY_BUSY)

        record = self.cluster.executor.execute(Command.read(key)).record

        self.assertEqual({"name": "Bob"}, record.bins)
        self.assertIn(CommandKind.READ, self.node_b.kinds())
        self.assertEqual(1, self.cluster.stats()["command_retries"])

    def test_lost_read_response_is_retried(self) -> None:
        key = partition_key(1, 6)
        self.seed_both(key, name="Carol")
        self.node_a.drop_responses = 1

        record = self.cluster.executor.execute(Command.read(key)).record

        self.assertEqual({"name": "Carol"}, record.bins)

    def test_lost_write_response_raises_maybe_applied(self) -> None:
        key = partition_key(0, 8)
        self.node_a.drop_responses = 1

        with self.assertRaises(MaybeAppliedError):
            self.cluster.executor.execute(Command.write(key, {"name": "Dan"}))

        # the write landed even though the client never saw the answer
        self.assertIn(key.digest, self.node_a.records)
        self.assertEqual(1, self.cluster.stats()["commands_maybe_applied"])
        self.assertEqual(1, self.node_a.kinds().count(CommandKind.WRITE))

    def test_batch_write_lands_on_each_master(self) -> None:
        on_a = partition_key(1, 20)
        on_b = partition_key(2, 21)
        self.cluster.executor.execute(Command.write(on_b, {"hits": 2}))

        response = self.cluster.executor.execute(
            Command.batch_write(
                [
                    (on_a, [Op.put("name", "Eve")]),
                    (on_b, [Op.add("hits", 3), Op.get("hits")]),
                ]
            )
        )

        self.assertEqual([on_a, on_b], [item.key for item in response.batch])
        self.assertEqual(ResultCode.OK, response.batch[0].result_code)
        self.assertEqual({"hits": 5}, response.batch[1].record.bins)
        self.assertIn(on_a.digest, self.node_a.records)
        self.assertNotIn(on_a.digest, self.node_b.records)
        self.assertEqual(1, self.node_a.kinds().count(CommandKind.BATCH_WRITE))
        self.assertEqual(1, self.node_b.kinds().count(CommandKind.BATCH_WRITE))

    def test_lost_batch_write_response_marks_keys_maybe_applied(self) -> None:
        on_a = partition_key(0, 22)
        on_b = partition_key(3, 23)
        self.node_b.drop_responses = 1

        response = self.cluster.executor.execute(
            Command.batch_write([(on_a, [Op.put("v", 1)]), (on_b, [Op.put("v", 2)])])
        )

        self.assertIsNone(response.batch[0].error)
        self.assertIsInstance(response.batch[1].error, MaybeAppliedError)
        # applied on the server, never retried by the client
        self.assertIn(on_b.digest, self.node_b.records)
        self.assertEqual(1, self.node_b.kinds().count(CommandKind.BATCH_WRITE))

    def test_close_drains_pools_and_rejects_commands(self) -> None:
        key = partition_key(2, 9)
        self.cluster.executor.execute(Command.write(key, {"v": 1}))
        nodes = self.cluster.nodes()

        self.cluster.close()
        self.cluster.close()

        self.assertTrue(all(node.pool.is_drained for node in nodes))
        self.assertFalse(self.cluster.is_connected())
        self.assertEqual("stopped", self.cluster.health()["status"])
        with self.assertRaises(ClusterClosedError):
            self.cluster.executor.execute(Command.read(key))


class SingleNodeCommandsTest(unittest.TestCase):
    """
    Record commands against a single node owning every partition.
    """

    def setUp(self) -> None:
        self.node = FakeNode("solo", master=(0, 1, 2, 3)).start()
        self.addCleanup(self.node.stop)
        self.cluster = Cluster(make_config(self.node))
        self.addCleanup(self.cluster.close)
        self.cluster.start()
        self.executor = self.cluster.executor

    def test_put_get_exists_delete(self) -> None:
        key = Key.create(NAMESPACE, "users", "u-1")

        written = self.executor.execute(Command.write(key, {"name": "Alice", "tags": ["a", "b"], "age": 31}))
        self.assertEqual(1, written.record.generation)

        record = self.executor.execute(Command.read(key)).record
        self.assertEqual({"name": "Alice", "tags": ["a", "b"], "age": 31}, record.bins)
        self.assertEqual(key, record.key)

        partial = self.executor.execute(Command.read(key, ["age"])).record
        self.assertEqual({"age": 31}, partial.bins)

        self.assertTrue(self.executor.execute(Command.exists(key)).existed)
        self.assertTrue(self.executor.execute(Command.delete(key)).existed)
        self.assertFalse(self.executor.execute(Command.exists(key)).existed)

        missing = self.executor.execute(Command.read(key))
        self.assertIsNone(missing.record)
        self.assertEqual(ResultCode.KEY_NOT_FOUND_ERROR, missing.result_code)

    def test_operate_adds_and_reads_back(self) -> None:
        key = Key.create(NAMESPACE, "counters", 42)
        self.executor.execute(Command.write(key, {"hits": 1}))

        response = self.executor.execute(Command.operate(key, [Op.add("hits", 4), Op.get("hits")]))

        self.assertEqual({"hits": 5}, response.record.bins)
        self.assertEqual(2, response.record.generation)

    def test_touch_bumps_generation(self) -> None:
        key = Key.create(NAMESPACE, "users", b"raw-key")
        self.executor.execute(Command.write(key, {"v": 1}))

        response = self.executor.execute(Command.touch(key))

        self.assertEqual(2, response.record.generation)

    def test_stats_and_health(self) -> None:
        key = Key.create(NAMESPACE, "users", "u-2")
        self.executor.execute(Command.write(key, {"v": 1}))
        self.executor.execute(Command.read(key))

        stats = self.cluster.stats()
        self.assertEqual(2, stats["commands_succeeded"])
        self.assertEqual(1, stats["node_count"])
        self.assertEqual(1, stats["nodes_active"])
        self.assertTrue(stats["connected"])
        self.assertGreaterEqual(stats["open_connections"], 1)

        health = self.cluster.health()
        self.assertEqual("ok", health["status"])
        self.assertEqual(["solo"], [item["name"] for item in health["nodes"]])
        self.assertIn("partitioned_kv_commands_succeeded 2", self.cluster.metrics_text())
        events = [item["event"] for item in self.cluster.recent_traces()["traces"]]
        self.assertIn("node_added", events)
        self.assertIn("cluster_started", events)


class DiscoveryFailureTest(unittest.TestCase):
    def test_cluster_name_mismatch_rejects_seed(self) -> None:
        node = FakeNode("stranger", master=(0, 1, 2, 3), cluster_name="other").start()
        self.addCleanup(node.stop)
        cluster = Cluster(make_config(node, connect_timeout_seconds=0.3))
        self.addCleanup(cluster.close)

        with self.assertRaises(ClusterConnectionError):
            cluster.start()

        self.assertGreaterEqual(cluster.stats()["seeds_rejected"], 1)
        self.assertEqual([], cluster.nodes())

    def test_start_without_fail_flag_tolerates_unreachable_seed(self) -> None:
        node = FakeNode("gone", master=(0, 1, 2, 3))
        seed = node.host
        node._server.server_close()
        cluster = Cluster(
            make_config(node, seeds=[seed], connect_timeout_seconds=0.2, fail_if_not_connected=False)
        )
        self.addCleanup(cluster.close)

        cluster.start()

        self.assertTrue(cluster.is_running)
        self.assertFalse(cluster.is_connected())
        self.assertEqual("disconnected", cluster.health()["status"])


class ObservabilityEndpointTest(unittest.TestCase):
    def test_http_endpoint_serves_health_and_metrics(self) -> None:
        node = FakeNode("obs", master=(0, 1, 2, 3)).start()
        self.addCleanup(node.stop)
        cluster = Cluster(
            make_config(node, observability=ObservabilityConfig(enable_http=True, port=0))
        )
        self.addCleanup(cluster.close)
        cluster.start()
        host, port = cluster.observability_address

        with urllib.request.urlopen(f"http://{host}:{port}/healthz", timeout=2.0) as response:
            payload = json.loads(response.read().decode("utf-8"))
        self.assertEqual("ok", payload["status"])

        with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=2.0) as response:
            metrics = response.read().decode("utf-8")
        self.assertIn("partitioned_kv_nodes_added 1", metrics)


if __name__ == "__main__":
    unittest.main()
