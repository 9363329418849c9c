"""
Command model and wire codecs.

A :class:`Command` describes one logical request: its kind, target key (or
keys, or partitions) and payload. :class:`CommandKind` is a closed set;
every kind has exactly one encoder and one decoder, reached through
:meth:`CommandKind.encode` and :meth:`CommandKind.decode`.

Decoders never see sockets. They pull proto message bodies from a
``read_body`` callable, which lets the same decoder drive single-record
responses and multi-frame streams (batch, scan and query).
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .config import (
    BatchPolicy,
    BatchWritePolicy,
    GenerationPolicy,
    Policy,
    RecordExistsAction,
    ScanPolicy,
    WritePolicy,
)
from .exceptions import ProtocolError, ServerError
from .key import DIGEST_SIZE, Key
from .protocol import (
    Buffer,
    Field,
    FieldType,
    Info1,
    Info2,
    Info3,
    Message,
    MessageHeader,
    Operation,
    OperationType,
    encode_message,
    iter_messages,
    parse_fields,
    parse_ops,
    write_field,
    write_op,
)
from .result_code import ResultCode
from .serialization import ParticleType, ValueSerializer

ReadBody = Callable[[], bytes]

BATCH_MSG_REPEAT = 1
BATCH_MSG_INFO = 2
BATCH_MSG_GEN = 4
BATCH_MSG_TTL = 8

_BATCH_HEADER = struct.Struct(">IB")
_BATCH_ENTRY = struct.Struct(">I")
_BATCH_ATTRS = struct.Struct(">BBBIHH")
_BATCH_WRITE_ATTRS = struct.Struct(">BBBHIHH")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_PID = struct.Struct("<H")

_WRITE_OP_TYPES = frozenset(
    {
        OperationType.WRITE,
        OperationType.CDT_MODIFY,
        OperationType.ADD,
        OperationType.APPEND,
        OperationType.PREPEND,
        OperationType.TOUCH,
        OperationType.DELETE,
    }
)


@dataclass(frozen=True, slots=True)
class Op:
    """
    One bin operation inside an ``OPERATE`` command.

    Build instances with the classmethods rather than raw op types.
    """

    op_type: OperationType
    bin_name: str = ""
    value: Any = None

    @property
    def is_write(self) -> bool:
        return self.op_type in _WRITE_OP_TYPES

    @classmethod
    def get(cls, bin_name: str = "") -> "Op":
        """Read one bin, or every bin when ``bin_name`` is empty."""
        return cls(OperationType.READ, bin_name)

    @classmethod
    def put(cls, bin_name: str, value: Any) -> "Op":
        return cls(OperationType.WRITE, bin_name, value)

    @classmethod
    def add(cls, bin_name: str, value: int | float) -> "Op":
        return cls(OperationType.ADD, bin_name, value)

    @classmethod
    def append(cls, bin_name: str, value: str | bytes) -> "Op":
        return cls(OperationType.APPEND, bin_name, value)

    @classmethod
    def prepend(cls, bin_name: str, value: str | bytes) -> "Op":
        return cls(OperationType.PREPEND, bin_name, value)

    @classmethod
    def touch(cls) -> "Op":
        return cls(OperationType.TOUCH)

    @classmethod
    def delete(cls) -> "Op":
        return cls(OperationType.DELETE)


@dataclass(slots=True)
class Record:
    key: Key | None
    bins: dict[str, Any]
    generation: int = 0
    expiration: int = 0


@dataclass(slots=True)
class BatchRecord:
    """
    Per-key batch outcome.

    ``record`` is ``None`` when the key was not found or failed. ``error``
    holds the exception for keys whose node group failed terminally; it is a
    :class:`~partitioned_kv.exceptions.MaybeAppliedError` for ambiguous
    writes.
    """

    key: Key
    result_code: int = ResultCode.OK
    record: Record | None = None
    exists: bool = False
    error: Exception | None = None


@dataclass(slots=True)
class Response:
    """
    Decoded command outcome.

    Only the fields meaningful for the command kind are populated.
    """

    result_code: int = ResultCode.OK
    record: Record | None = None
    existed: bool | None = None
    records: list[Record] = field(default_factory=list)
    batch: list[BatchRecord] = field(default_factory=list)
    failed_partitions: list[int] = field(default_factory=list)


@dataclass(slots=True)
class Command:
    """
    One logical request.

    Single-record kinds use ``key``. Batch kinds use ``keys``; the executor
    splits them into per-node commands whose ``batch_entries`` hold
    ``(original_index, key)`` pairs. A batch write also carries
    ``batch_operations``, one op tuple per entry of ``keys``. Scan and query
    kinds use ``namespace`` and ``set_name``; the executor fills
    ``partition_ids`` per node.
    """

    kind: "CommandKind"
    key: Key | None = None
    bins: dict[str, Any] | None = None
    bin_names: tuple[str, ...] = ()
    operations: tuple[Op, ...] = ()
    keys: tuple[Key, ...] = ()
    batch_entries: tuple[tuple[int, Key], ...] = ()
    batch_operations: tuple[tuple[Op, ...], ...] = ()
    batch_write_policy: BatchWritePolicy | None = None
    namespace: str = ""
    set_name: str = ""
    partition_ids: tuple[int, ...] = ()
    task_id: int = 0
    index_name: str = ""
    index_filter: bytes = b""

    @property
    def is_write(self) -> bool:
        if self.kind is CommandKind.OPERATE:
            return any(op.is_write for op in self.operations)
        return self.kind.is_write

    @property
    def is_idempotent(self) -> bool:
        """Writes are treated as non-idempotent; a blind retry could apply them twice."""
        return not self.is_write

    @property
    def target_namespace(self) -> str:
        if self.key is not None:
            return self.key.namespace
        if self.keys:
            return self.keys[0].namespace
        return self.namespace

    # constructors

    @classmethod
    def read(cls, key: Key, bin_names: tuple[str, ...] | list[str] = ()) -> "Command":
        return cls(CommandKind.READ, key=key, bin_names=tuple(bin_names))

    @classmethod
    def exists(cls, key: Key) -> "Command":
        return cls(CommandKind.EXISTS, key=key)

    @classmethod
    def write(cls, key: Key, bins: dict[str, Any]) -> "Command":
        if not bins:
            raise ValueError("A write needs at least one bin.")
        return cls(CommandKind.WRITE, key=key, bins=dict(bins))

    @classmethod
    def delete(cls, key: Key) -> "Command":
        return cls(CommandKind.DELETE, key=key)

    @classmethod
    def touch(cls, key: Key) -> "Command":
        return cls(CommandKind.TOUCH, key=key)

    @classmethod
    def operate(cls, key: Key, operations: list[Op] | tuple[Op, ...]) -> "Command":
        if not operations:
            raise ValueError("An operate command needs at least one operation.")
        return cls(CommandKind.OPERATE, key=key, operations=tuple(operations))

    @classmethod
    def batch_read(cls, keys: list[Key], bin_names: tuple[str, ...] | list[str] = ()) -> "Command":
        if not keys:
            raise ValueError("A batch needs at least one key.")
        return cls(CommandKind.BATCH_READ, keys=tuple(keys), bin_names=tuple(bin_names))

    @classmethod
    def batch_exists(cls, keys: list[Key]) -> "Command":
        if not keys:
            raise ValueError("A batch needs at least one key.")
        return cls(CommandKind.BATCH_EXISTS, keys=tuple(keys))

    @classmethod
    def batch_write(
        cls,
        records: list[tuple[Key, list[Op] | tuple[Op, ...]]],
        policy: BatchWritePolicy | None = None,
    ) -> "Command":
        """
        Apply a list of operations to each key in one round trip per node.

        Every entry needs at least one write operation; reads mixed in are
        answered in the per-key result.
        """
        if not records:
            raise ValueError("A batch needs at least one key.")
        keys = []
        operations = []
        for key, ops in records:
            ops = tuple(ops)
            if not any(op.is_write for op in ops):
                raise ValueError(f"Batch write entry for {key} has no write operation.")
            keys.append(key)
            operations.append(ops)
        return cls(
            CommandKind.BATCH_WRITE,
            keys=tuple(keys),
            batch_operations=tuple(operations),
            batch_write_policy=policy,
        )

    @classmethod
    def scan(
        cls,
        namespace: str,
        set_name: str = "",
        bin_names: tuple[str, ...] | list[str] = (),
        *,
        task_id: int = 0,
    ) -> "Command":
        return cls(
            CommandKind.SCAN,
            namespace=namespace,
            set_name=set_name,
            bin_names=tuple(bin_names),
            task_id=task_id,
        )

    @classmethod
    def query(
        cls,
        namespace: str,
        set_name: str,
        index_name: str,
        index_filter: bytes,
        bin_names: tuple[str, ...] | list[str] = (),
        *,
        task_id: int = 0,
    ) -> "Command":
        """``index_filter`` is the already encoded index range payload."""
        return cls(
            CommandKind.QUERY,
            namespace=namespace,
            set_name=set_name,
            index_name=index_name,
            index_filter=bytes(index_filter),
            bin_names=tuple(bin_names),
            task_id=task_id,
        )


class CommandKind(str, Enum):
    READ = "read"
    EXISTS = "exists"
    WRITE = "write"
    DELETE = "delete"
    TOUCH = "touch"
    OPERATE = "operate"
    BATCH_READ = "batch_read"
    BATCH_EXISTS = "batch_exists"
    BATCH_WRITE = "batch_write"
    SCAN = "scan"
    QUERY = "query"

    @property
    def is_write(self) -> bool:
        return self in (CommandKind.WRITE, CommandKind.DELETE, CommandKind.TOUCH, CommandKind.BATCH_WRITE)

    @property
    def is_batch(self) -> bool:
        return self in (CommandKind.BATCH_READ, CommandKind.BATCH_EXISTS, CommandKind.BATCH_WRITE)

    @property
    def is_partition_stream(self) -> bool:
        return self in (CommandKind.SCAN, CommandKind.QUERY)

    def encode(
        self,
        command: Command,
        policy: Policy,
        *,
        buffer: Buffer,
        serializer: ValueSerializer,
    ) -> bytes:
        """Encode ``command`` into one contiguous request frame."""
        header, fields, ops = _ENCODERS[self](command, policy, serializer)
        header.transaction_ttl = int(policy.socket_timeout_seconds * 1000)
        return encode_message(header, fields, ops, buffer=buffer)

    def decode(self, command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
        """Decode the response to ``command``, pulling bodies from ``read_body``."""
        return _DECODERS[self](command, read_body, serializer)

    @classmethod
    def from_message(cls, message: Message) -> "CommandKind":
        """Recover the kind of an encoded request."""
        header = message.header
        if header.info1 & Info1.BATCH:
            if not header.info1 & Info1.READ:
                return cls.BATCH_WRITE
            return cls.BATCH_EXISTS if header.info1 & Info1.NOBINDATA else cls.BATCH_READ
        if message.get_field(FieldType.PID_ARRAY) is not None:
            return cls.QUERY if message.get_field(FieldType.INDEX_NAME) is not None else cls.SCAN
        if header.info2 & Info2.RESPOND_ALL_OPS:
            return cls.OPERATE
        if header.info2 & Info2.WRITE:
            if header.info2 & Info2.DELETE:
                return cls.DELETE
            if message.ops and all(op.op_type == OperationType.TOUCH for op in message.ops):
                return cls.TOUCH
            return cls.WRITE
        if header.info1 & Info1.READ:
            return cls.EXISTS if header.info1 & Info1.NOBINDATA else cls.READ
        raise ProtocolError(f"Cannot classify request info1={header.info1} info2={header.info2}.")


# encoders


def _key_fields(key: Key, policy: Policy) -> list[Field]:
    fields = [Field(FieldType.NAMESPACE, key.namespace.encode("utf-8"))]
    if key.set_name:
        fields.append(Field(FieldType.SET, key.set_name.encode("utf-8")))
    fields.append(Field(FieldType.DIGEST, key.digest))
    user_key = key.user_key_field() if policy.send_key else None
    if user_key is not None:
        fields.append(Field(FieldType.KEY, user_key))
    return fields


def _write_attrs(policy: WritePolicy | BatchWritePolicy) -> tuple[int, int, int, int]:
    """Return the ``(info2, info3, generation, expiration)`` a write policy asks for."""
    info2 = 0
    info3 = 0
    generation = 0
    if policy.generation_policy is GenerationPolicy.EXPECT_GEN_EQUAL:
        info2 |= Info2.GENERATION
        generation = policy.generation
    elif policy.generation_policy is GenerationPolicy.EXPECT_GEN_GT:
        info2 |= Info2.GENERATION_GT
        generation = policy.generation
    action = policy.record_exists_action
    if action is RecordExistsAction.UPDATE_ONLY:
        info3 |= Info3.UPDATE_ONLY
    elif action is RecordExistsAction.REPLACE:
        info3 |= Info3.CREATE_OR_REPLACE
    elif action is RecordExistsAction.REPLACE_ONLY:
        info3 |= Info3.REPLACE_ONLY
    elif action is RecordExistsAction.CREATE_ONLY:
        info2 |= Info2.CREATE_ONLY
    if policy.durable_delete:
        info2 |= Info2.DURABLE_DELETE
    return info2, info3, generation, policy.expiration


def _write_header(policy: Policy, info1: int = 0, info2: int = Info2.WRITE, info3: int = 0) -> MessageHeader:
    header = MessageHeader(info1=info1, info2=info2, info3=info3)
    if not isinstance(policy, WritePolicy):
        return header
    extra2, extra3, header.generation, header.expiration = _write_attrs(policy)
    header.info2 |= extra2
    header.info3 |= extra3
    return header


def _value_op(op_type: int, bin_name: str, value: Any, serializer: ValueSerializer) -> Operation:
    particle_type, payload = serializer.encode_value(value)
    return Operation(op_type, bin_name, particle_type, payload)


def _read_ops(bin_names: tuple[str, ...]) -> list[Operation]:
    return [Operation(OperationType.READ, name) for name in bin_names]


def _operate_ops(operations: tuple[Op, ...], serializer: ValueSerializer) -> tuple[int, list[Operation]]:
    """Serialize ``operations``; return the read bits they need and the wire ops."""
    ops = []
    info1 = 0
    for op in operations:
        if op.op_type == OperationType.READ:
            info1 |= Info1.READ if op.bin_name else Info1.READ | Info1.GET_ALL
            ops.append(Operation(OperationType.READ, op.bin_name))
        elif op.value is None:
            ops.append(Operation(op.op_type, op.bin_name))
        else:
            ops.append(_value_op(op.op_type, op.bin_name, op.value, serializer))
    return info1, ops


def _encode_read(command: Command, policy: Policy, serializer: ValueSerializer):
    info1 = Info1.READ if command.bin_names else Info1.READ | Info1.GET_ALL
    return MessageHeader(info1=info1), _key_fields(command.key, policy), _read_ops(command.bin_names)


def _encode_exists(command: Command, policy: Policy, serializer: ValueSerializer):
    return MessageHeader(info1=Info1.READ | Info1.NOBINDATA), _key_fields(command.key, policy), []


def _encode_write(command: Command, policy: Policy, serializer: ValueSerializer):
    ops = [
        _value_op(OperationType.WRITE, name, value, serializer)
        for name, value in command.bins.items()
    ]
    return _write_header(policy), _key_fields(command.key, policy), ops


def _encode_delete(command: Command, policy: Policy, serializer: ValueSerializer):
    header = _write_header(policy, info2=Info2.WRITE | Info2.DELETE)
    return header, _key_fields(command.key, policy), []


def _encode_touch(command: Command, policy: Policy, serializer: ValueSerializer):
    return _write_header(policy), _key_fields(command.key, policy), [Operation(OperationType.TOUCH)]


def _encode_operate(command: Command, policy: Policy, serializer: ValueSerializer):
    info1, ops = _operate_ops(command.operations, serializer)
    if command.is_write:
        header = _write_header(policy, info1=info1, info2=Info2.WRITE | Info2.RESPOND_ALL_OPS)
    else:
        header = MessageHeader(info1=info1, info2=Info2.RESPOND_ALL_OPS)
    return header, _key_fields(command.key, policy), ops


def _batch_flags(policy: Policy) -> int:
    if not isinstance(policy, BatchPolicy):
        return 0x1 | 0x4
    flags = 0
    if policy.allow_inline:
        flags |= 0x1
    if policy.respond_all_keys:
        flags |= 0x4
    return flags


@dataclass(frozen=True, slots=True)
class BatchEntry:
    """
    One decoded batch-index entry.

    Entries sent with the repeat marker carry the attributes and operations
    of the entry before them.
    """

    index: int
    digest: bytes
    namespace: str = ""
    set_name: str = ""
    read_attr: int = 0
    write_attr: int = 0
    info_attr: int = 0
    generation: int = 0
    expiration: int = 0
    ops: tuple[Operation, ...] = ()


_BatchHeader = tuple[int, tuple[int, ...], tuple[Operation, ...]]


def _batch_read_header(command: Command) -> _BatchHeader:
    exists_only = command.kind is CommandKind.BATCH_EXISTS
    read_attr = Info1.READ | (Info1.NOBINDATA if exists_only else 0)
    if not exists_only and not command.bin_names:
        read_attr |= Info1.GET_ALL
    ops = () if exists_only else tuple(_read_ops(command.bin_names))
    # read, write and info attrs, ttl
    return BATCH_MSG_INFO | BATCH_MSG_TTL, (int(read_attr), 0, 0, 0), ops


def _batch_write_header(command: Command, index: int, serializer: ValueSerializer) -> _BatchHeader:
    read_attr, ops = _operate_ops(command.batch_operations[index], serializer)
    write_attr, info_attr, generation, expiration = _write_attrs(command.batch_write_policy or BatchWritePolicy())
    write_attr |= Info2.WRITE | Info2.RESPOND_ALL_OPS
    attrs = (int(read_attr), int(write_attr), int(info_attr), generation, expiration & 0xFFFFFFFF)
    return BATCH_MSG_INFO | BATCH_MSG_GEN | BATCH_MSG_TTL, attrs, tuple(ops)


def _batch_header_size(marker: int, ops: tuple[Operation, ...], key: Key) -> int:
    attrs = _BATCH_WRITE_ATTRS if marker & BATCH_MSG_GEN else _BATCH_ATTRS
    return (
        1
        + attrs.size
        + Field(FieldType.NAMESPACE, key.namespace.encode("utf-8")).wire_size
        + Field(FieldType.SET, key.set_name.encode("utf-8")).wire_size
        + sum(op.wire_size for op in ops)
    )


def _encode_batch(command: Command, policy: Policy, serializer: ValueSerializer):
    entries = command.batch_entries or tuple(enumerate(command.keys))
    writes = command.kind is CommandKind.BATCH_WRITE
    shared = None if writes else _batch_read_header(command)
    planned: list[tuple[int, Key, _BatchHeader, bool]] = []
    size = _BATCH_HEADER.size
    previous: tuple[Key, _BatchHeader] | None = None
    for index, key in entries:
        entry_header = _batch_write_header(command, index, serializer) if writes else shared
        repeat = (
            previous is not None
            and previous[0].namespace == key.namespace
            and previous[0].set_name == key.set_name
            and previous[1] == entry_header
        )
        size += _BATCH_ENTRY.size + DIGEST_SIZE
        size += 1 if repeat else _batch_header_size(entry_header[0], entry_header[2], key)
        planned.append((index, key, entry_header, repeat))
        previous = (key, entry_header)

    data = bytearray(size)
    _BATCH_HEADER.pack_into(data, 0, len(entries), _batch_flags(policy))
    offset = _BATCH_HEADER.size
    for index, key, (marker, attrs, ops), repeat in planned:
        _BATCH_ENTRY.pack_into(data, offset, index)
        offset += _BATCH_ENTRY.size
        data[offset : offset + DIGEST_SIZE] = key.digest
        offset += DIGEST_SIZE
        if repeat:
            data[offset] = BATCH_MSG_REPEAT
            offset += 1
            continue
        data[offset] = marker
        offset += 1
        struct_for = _BATCH_WRITE_ATTRS if marker & BATCH_MSG_GEN else _BATCH_ATTRS
        struct_for.pack_into(data, offset, *attrs, 2, len(ops))
        offset += struct_for.size
        offset = write_field(data, offset, Field(FieldType.NAMESPACE, key.namespace.encode("utf-8")))
        offset = write_field(data, offset, Field(FieldType.SET, key.set_name.encode("utf-8")))
        for op in ops:
            offset = write_op(data, offset, op)
    if offset != size:
        raise ProtocolError(f"Encoded batch field is {offset} bytes, computed {size}.")
    if writes:
        info1 = Info1.BATCH
    else:
        info1 = Info1.READ | Info1.BATCH
        if command.kind is CommandKind.BATCH_EXISTS:
            info1 |= Info1.NOBINDATA
    return MessageHeader(info1=info1), [Field(FieldType.BATCH_INDEX, bytes(data))], []


def _encode_partition_stream(command: Command, policy: Policy, serializer: ValueSerializer):
    include_bins = policy.include_bin_data if isinstance(policy, ScanPolicy) else True
    info1 = Info1.READ
    if not include_bins:
        info1 |= Info1.NOBINDATA
    elif not command.bin_names:
        info1 |= Info1.GET_ALL
    fields = [Field(FieldType.NAMESPACE, command.namespace.encode("utf-8"))]
    if command.set_name:
        fields.append(Field(FieldType.SET, command.set_name.encode("utf-8")))
    if command.kind is CommandKind.QUERY:
        fields.append(Field(FieldType.INDEX_NAME, command.index_name.encode("utf-8")))
        fields.append(Field(FieldType.INDEX_RANGE, command.index_filter))
    fields.append(Field(FieldType.SOCKET_TIMEOUT, _U32.pack(int(policy.socket_timeout_seconds * 1000))))
    fields.append(Field(FieldType.TASK_ID, _U64.pack(command.task_id & 0xFFFFFFFFFFFFFFFF)))
    fields.append(Field(FieldType.PID_ARRAY, b"".join(_PID.pack(pid) for pid in command.partition_ids)))
    ops = _read_ops(command.bin_names) if include_bins else []
    return MessageHeader(info1=info1), fields, ops


_ENCODERS = {
    CommandKind.READ: _encode_read,
    CommandKind.EXISTS: _encode_exists,
    CommandKind.WRITE: _encode_write,
    CommandKind.DELETE: _encode_delete,
    CommandKind.TOUCH: _encode_touch,
    CommandKind.OPERATE: _encode_operate,
    CommandKind.BATCH_READ: _encode_batch,
    CommandKind.BATCH_EXISTS: _encode_batch,
    CommandKind.BATCH_WRITE: _encode_batch,
    CommandKind.SCAN: _encode_partition_stream,
    CommandKind.QUERY: _encode_partition_stream,
}


def parse_batch_entries(data: bytes) -> tuple[int, list[BatchEntry]]:
    """
    Parse a batch-index field into ``(flags, entries)``.

    Used by fake servers and tests to inspect batch requests.
    """
    entries: list[BatchEntry] = []
    try:
        count, flags = _BATCH_HEADER.unpack_from(data, 0)
        offset = _BATCH_HEADER.size
        for _ in range(count):
            (index,) = _BATCH_ENTRY.unpack_from(data, offset)
            offset += _BATCH_ENTRY.size
            digest = bytes(data[offset : offset + DIGEST_SIZE])
            if len(digest) != DIGEST_SIZE:
                raise ProtocolError("Truncated batch digest.")
            offset += DIGEST_SIZE
            marker = data[offset]
            offset += 1
            if marker & BATCH_MSG_REPEAT:
                if not entries:
                    raise ProtocolError("Batch repeat marker on the first entry.")
                entries.append(replace(entries[-1], index=index, digest=digest))
                continue
            generation = 0
            if marker & BATCH_MSG_GEN:
                read_attr, write_attr, info_attr, generation, ttl, field_count, op_count = (
                    _BATCH_WRITE_ATTRS.unpack_from(data, offset)
                )
                offset += _BATCH_WRITE_ATTRS.size
            else:
                read_attr, write_attr, info_attr, ttl, field_count, op_count = _BATCH_ATTRS.unpack_from(
                    data, offset
                )
                offset += _BATCH_ATTRS.size
            fields, offset = parse_fields(data, offset, field_count)
            ops, offset = parse_ops(data, offset, op_count)
            names = {item.type: item.data.decode("utf-8") for item in fields}
            entries.append(
                BatchEntry(
                    index=index,
                    digest=digest,
                    namespace=names.get(FieldType.NAMESPACE, ""),
                    set_name=names.get(FieldType.SET, ""),
                    read_attr=read_attr,
                    write_attr=write_attr,
                    info_attr=info_attr,
                    generation=generation,
                    expiration=ttl,
                    ops=tuple(ops),
                )
            )
    except (struct.error, IndexError, UnicodeDecodeError) as exc:
        raise ProtocolError("Malformed batch index field.") from exc
    return flags, entries


def parse_batch_index(data: bytes) -> tuple[int, list[tuple[int, bytes]]]:
    """Parse a batch-index field into ``(flags, [(index, digest), ...])``."""
    flags, entries = parse_batch_entries(data)
    return flags, [(entry.index, entry.digest) for entry in entries]


# decoders


def _decode_bins(message: Message, serializer: ValueSerializer) -> dict[str, Any]:
    bins: dict[str, Any] = {}
    repeated: set[str] = set()
    for op in message.ops:
        value = serializer.decode_value(op.value, op.particle_type)
        if op.bin_name in bins:
            # operate may return several results for one bin
            if op.bin_name not in repeated:
                bins[op.bin_name] = [bins[op.bin_name]]
                repeated.add(op.bin_name)
            bins[op.bin_name].append(value)
        else:
            bins[op.bin_name] = value
    return bins


def _record(message: Message, key: Key | None, serializer: ValueSerializer) -> Record:
    return Record(
        key=key,
        bins=_decode_bins(message, serializer),
        generation=message.header.generation,
        expiration=message.header.expiration,
    )


def _single_message(read_body: ReadBody) -> Message:
    messages = list(iter_messages(read_body()))
    if len(messages) != 1:
        raise ProtocolError(f"Expected one response message, got {len(messages)}.")
    return messages[0]


def _decode_read(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    message = _single_message(read_body)
    code = message.header.result_code
    if code == ResultCode.KEY_NOT_FOUND_ERROR:
        return Response(result_code=code, record=None, existed=False)
    if code != ResultCode.OK:
        raise ServerError(code)
    return Response(result_code=code, record=_record(message, command.key, serializer), existed=True)


def _decode_existence(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    message = _single_message(read_body)
    code = message.header.result_code
    if code == ResultCode.KEY_NOT_FOUND_ERROR:
        return Response(result_code=code, existed=False)
    if code != ResultCode.OK:
        raise ServerError(code)
    record = Record(command.key, {}, message.header.generation, message.header.expiration)
    return Response(result_code=code, record=record, existed=True)


def _decode_write(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    message = _single_message(read_body)
    code = message.header.result_code
    if code != ResultCode.OK:
        raise ServerError(code)
    record = Record(command.key, {}, message.header.generation, message.header.expiration)
    return Response(result_code=code, record=record)


def _decode_operate(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    message = _single_message(read_body)
    code = message.header.result_code
    if code != ResultCode.OK:
        raise ServerError(code)
    return Response(result_code=code, record=_record(message, command.key, serializer), existed=True)


def _drain_stream(read_body: ReadBody, handle: Callable[[Message], None]) -> None:
    while True:
        for message in iter_messages(read_body()):
            if message.header.info3 & Info3.LAST:
                code = message.header.result_code
                if code not in (ResultCode.OK, ResultCode.KEY_NOT_FOUND_ERROR):
                    raise ServerError(code)
                return
            handle(message)


def _decode_batch(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    entries = dict(command.batch_entries or tuple(enumerate(command.keys)))
    results: dict[int, BatchRecord] = {}

    def handle(message: Message) -> None:
        index = message.header.transaction_ttl
        key = entries.get(index)
        if key is None:
            raise ProtocolError(f"Batch response references unknown index {index}.")
        code = message.header.result_code
        item = BatchRecord(key=key, result_code=code)
        if code == ResultCode.OK:
            item.exists = True
            if command.kind is not CommandKind.BATCH_EXISTS:
                item.record = _record(message, key, serializer)
            else:
                item.record = Record(key, {}, message.header.generation, message.header.expiration)
        results[index] = item

    _drain_stream(read_body, handle)
    batch = []
    for index, key in entries.items():
        batch.append(results.get(index) or BatchRecord(key=key, result_code=ResultCode.KEY_NOT_FOUND_ERROR))
    return Response(batch=batch)


def _stream_key(message: Message, command: Command, serializer: ValueSerializer) -> Key | None:
    digest = message.get_field(FieldType.DIGEST)
    if digest is None:
        return None
    namespace = message.get_field(FieldType.NAMESPACE)
    set_name = message.get_field(FieldType.SET)
    user_key = None
    raw_key = message.get_field(FieldType.KEY)
    if raw_key and raw_key[0] in (ParticleType.INTEGER, ParticleType.STRING, ParticleType.BLOB):
        user_key = serializer.decode_value(raw_key[1:], raw_key[0])
    return Key(
        namespace.decode("utf-8") if namespace else command.namespace,
        set_name.decode("utf-8") if set_name else command.set_name,
        digest,
        user_key,
    )


def _decode_partition_stream(command: Command, read_body: ReadBody, serializer: ValueSerializer) -> Response:
    response = Response()

    def handle(message: Message) -> None:
        header = message.header
        if header.info3 & Info3.PARTITION_DONE:
            # the partition id travels in the generation slot
            if header.result_code != ResultCode.OK:
                response.failed_partitions.append(header.generation)
            return
        if header.result_code == ResultCode.KEY_NOT_FOUND_ERROR:
            return
        if header.result_code != ResultCode.OK:
            raise ServerError(header.result_code)
        response.records.append(_record(message, _stream_key(message, command, serializer), serializer))

    _drain_stream(read_body, handle)
    return response


_DECODERS = {
    CommandKind.READ: _decode_read,
    CommandKind.EXISTS: _decode_existence,
    CommandKind.WRITE: _decode_write,
    CommandKind.DELETE: _decode_existence,
    CommandKind.TOUCH: _decode_write,
    CommandKind.OPERATE: _decode_operate,
    CommandKind.BATCH_READ: _decode_batch,
    CommandKind.BATCH_EXISTS: _decode_batch,
    CommandKind.BATCH_WRITE: _decode_batch,
    CommandKind.SCAN: _decode_partition_stream,
    CommandKind.QUERY: _decode_partition_stream,
}
