"""
Partition ownership reports and the immutable partition map.

Each node publishes, per namespace, a *regime* and one base64 bitmap per
replica role (role 0 is the master). The tend loop merges every routable
node's report into a :class:`PartitionMap`: for each namespace an array of
``partition_count`` slots, each slot an ordered tuple of nodes (master
first). A map is never mutated after construction; the cluster publishes a
new one with a single reference swap.
"""

from __future__ import annotations

import base64
import binascii
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import ReplicaPreference
from .exceptions import NoAvailableNodeError, ProtocolError

if TYPE_CHECKING:
    from .node import Node


@dataclass(frozen=True, slots=True)
class NamespaceOwnership:
    """One namespace's entry in a node's replica report."""

    regime: int
    bitmaps: tuple[bytes, ...]

    def owns(self, role: int, partition_id: int) -> bool:
        bitmap = self.bitmaps[role]
        return bool(bitmap[partition_id >> 3] & (0x80 >> (partition_id & 7)))

    def claimed_count(self) -> int:
        return sum(int.from_bytes(bitmap, "big").bit_count() for bitmap in self.bitmaps)


def _decode_bitmap(text: str, partition_count: int) -> bytes:
    try:
        bitmap = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError("Replica bitmap is not valid base64.") from exc
    expected = (partition_count + 7) // 8
    if len(bitmap) != expected:
        raise ProtocolError(
            f"Replica bitmap is {len(bitmap)} bytes, expected {expected} for {partition_count} partitions."
        )
    return bitmap


def encode_bitmap(partition_ids: Iterable[int], partition_count: int) -> str:
    """Build the base64 bitmap a node would publish for ``partition_ids``."""
    bitmap = bytearray((partition_count + 7) // 8)
    for pid in partition_ids:
        bitmap[pid >> 3] |= 0x80 >> (pid & 7)
    return base64.b64encode(bytes(bitmap)).decode("ascii")


def parse_replicas(text: str, partition_count: int) -> dict[str, NamespaceOwnership]:
    """
    Parse a ``replicas`` info value.

    Format: ``ns:regime,count,bitmap_0,...,bitmap_{count-1};ns2:...``. The
    legacy form without a regime (``ns:count,bitmap...``) is read with
    regime ``0``.
    """
    result: dict[str, NamespaceOwnership] = {}
    for entry in text.strip().split(";"):
        entry = entry.strip()
        if not entry:
            continue
        namespace, sep, rest = entry.partition(":")
        if not sep or not namespace:
            raise ProtocolError(f"Malformed replicas entry {entry!r}.")
        parts = rest.split(",")
        try:
            if len(parts) >= 2 and parts[1].isdigit() and len(parts) == int(parts[1]) + 2:
                regime, count, bitmaps = int(parts[0]), int(parts[1]), parts[2:]
            else:
                regime, count, bitmaps = 0, int(parts[0]), parts[1:]
        except ValueError as exc:
            raise ProtocolError(f"Malformed replicas entry {entry!r}.") from exc
        if count != len(bitmaps) or count <= 0:
            raise ProtocolError(f"Replica count mismatch in {entry!r}.")
        result[namespace] = NamespaceOwnership(
            regime=regime,
            bitmaps=tuple(_decode_bitmap(item, partition_count) for item in bitmaps),
        )
    return result


@dataclass(frozen=True, slots=True)
class PartitionMap:
    """
    Immutable snapshot of partition ownership.

    ``namespaces[ns][pid]`` is the ordered replica tuple for partition
    ``pid``; it is empty when no routable node claims the partition.
    """

    partition_count: int
    namespaces: Mapping[str, tuple[tuple["Node", ...], ...]] = field(default_factory=dict)
    version: int = 0

    def replicas(self, namespace: str, partition_id: int) -> tuple["Node", ...]:
        """
        Return the replica tuple for one partition.

        Raises
        ------
        NoAvailableNodeError
            When the namespace is unknown or no node claims the partition.
        """
        slots = self.namespaces.get(namespace)
        if slots is None:
            raise NoAvailableNodeError(f"No partition map for namespace {namespace!r}.")
        replicas = slots[partition_id]
        if not replicas:
            raise NoAvailableNodeError(
                f"No node owns partition {partition_id} of namespace {namespace!r}."
            )
        return replicas

    def layout(self) -> dict[str, tuple[tuple[str, ...], ...]]:
        """Return the map as node names, for comparison and diagnostics."""
        return {
            namespace: tuple(tuple(node.name for node in slot) for slot in slots)
            for namespace, slots in self.namespaces.items()
        }

    def nodes(self) -> set["Node"]:
        found: set["Node"] = set()
        for slots in self.namespaces.values():
            for slot in slots:
                found.update(slot)
        return found

    def unowned_partitions(self, namespace: str) -> list[int]:
        slots = self.namespaces.get(namespace, ())
        return [pid for pid, slot in enumerate(slots) if not slot]


def build_partition_map(
    nodes: Iterable["Node"],
    partition_count: int,
    *,
    version: int = 0,
) -> PartitionMap:
    """
    Merge node reports into a new :class:`PartitionMap`.

    Only active, non-``DOWN`` nodes contribute, so a slot whose master is
    down is filled by promoting its next replica. When two nodes claim the
    same partition-role the claim with the higher regime wins, then the more
    recent report, then the node with fewer failures.
    """
    from .node import NodeHealth

    contributors = [
        node
        for node in nodes
        if node.is_active and node.health is not NodeHealth.DOWN and node.ownership
    ]
    # namespace -> pid -> role -> (rank, node)
    claims: dict[str, list[dict[int, tuple[tuple[int, float, int], "Node"]]]] = {}
    for node in sorted(contributors, key=lambda item: item.name):
        rank_base = (node.report_time, -node.failures)
        for namespace, ownership in node.ownership.items():
            slots = claims.setdefault(namespace, [dict() for _ in range(partition_count)])
            rank = (ownership.regime,) + rank_base
            for role, bitmap in enumerate(ownership.bitmaps):
                for byte_index, byte in enumerate(bitmap):
                    if not byte:
                        continue
                    for bit in range(8):
                        if not byte & (0x80 >> bit):
                            continue
                        pid = (byte_index << 3) + bit
                        if pid >= partition_count:
                            break
                        current = slots[pid].get(role)
                        if current is None or rank > current[0]:
                            slots[pid][role] = (rank, node)

    namespaces: dict[str, tuple[tuple["Node", ...], ...]] = {}
    for namespace, slots in claims.items():
        built = []
        for roles in slots:
            ordered: list["Node"] = []
            for role in sorted(roles):
                candidate = roles[role][1]
                if candidate not in ordered:
                    ordered.append(candidate)
            built.append(tuple(ordered))
        namespaces[namespace] = tuple(built)
    return PartitionMap(partition_count=partition_count, namespaces=namespaces, version=version)


def order_replicas(
    replicas: tuple["Node", ...],
    *,
    preference: ReplicaPreference,
    is_write: bool = False,
    rack_id: int = 0,
    rng: random.Random | None = None,
) -> list["Node"]:
    """
    Return routable candidates for one partition in preference order.

    Writes always start at the current master. For reads, ``SUSPECT`` nodes
    are moved after ``ACTIVE`` ones while keeping the preference order among
    each group. ``DOWN`` and inactive nodes are dropped.
    """
    from .node import NodeHealth

    live = [node for node in replicas if node.is_active and node.health is not NodeHealth.DOWN]
    if is_write or preference is ReplicaPreference.MASTER or preference is ReplicaPreference.SEQUENCE:
        ordered = live
    elif preference is ReplicaPreference.MASTER_PREFER_RACK:
        ordered = [node for node in live if node.rack_id == rack_id]
        ordered.extend(node for node in live if node.rack_id != rack_id)
    else:
        ordered = list(live)
        (rng or random).shuffle(ordered)
    if is_write:
        return ordered
    return sorted(ordered, key=lambda node: node.health is NodeHealth.SUSPECT)


def select_node(
    replicas: tuple["Node", ...],
    *,
    preference: ReplicaPreference,
    is_write: bool = False,
    exclude: Iterable["Node"] = (),
    rack_id: int = 0,
    rng: random.Random | None = None,
) -> "Node":
    """
    Pick one node for a command attempt.

    Reads skip nodes in ``exclude`` (the ones this command already failed
    on); when every candidate is excluded the preferred one is reused.
    Writes ignore ``exclude`` because only the master accepts them.

    Raises
    ------
    NoAvailableNodeError
        When no routable candidate exists.
    """
    ordered = order_replicas(
        replicas,
        preference=preference,
        is_write=is_write,
        rack_id=rack_id,
        rng=rng,
    )
    if not ordered:
        raise NoAvailableNodeError("Every replica of the partition is down.")
    if not is_write:
        excluded = set(exclude)
        for node in ordered:
            if node not in excluded:
                return node
    return ordered[0]
