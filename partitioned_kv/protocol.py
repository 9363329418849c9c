"""
Low-level wire protocol utilities.

Every exchange is one or more *proto frames*:

1. An 8-byte proto header: version (``2``), type (``1`` info, ``3``
   message) and a 48-bit big-endian body size.
2. For info frames the body is newline separated text.
3. For message frames the body holds one or more messages, each a 22-byte
   message header followed by its fields and operations.

Requests are encoded in one pass after computing their exact size, so every
request is a single contiguous buffer written with ``sendall``.
"""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Iterator

from .exceptions import PayloadTooLargeError, ProtocolError

PROTO_VERSION = 2
PROTO_HEADER_SIZE = 8
MSG_HEADER_SIZE = 22
TOTAL_HEADER_SIZE = PROTO_HEADER_SIZE + MSG_HEADER_SIZE
_MAX_PROTO_SIZE = (1 << 48) - 1

_PROTO = struct.Struct(">Q")
_MSG_HEADER = struct.Struct(">BBBBBBIIIHH")
_FIELD_HEADER = struct.Struct(">IB")
_OP_HEADER = struct.Struct(">IBBBB")


class ProtoType(IntEnum):
    INFO = 1
    MESSAGE = 3


class FieldType(IntEnum):
    NAMESPACE = 0
    SET = 1
    KEY = 2
    DIGEST = 4
    TASK_ID = 7
    SOCKET_TIMEOUT = 9
    PID_ARRAY = 11
    INDEX_NAME = 21
    INDEX_RANGE = 22
    BATCH_INDEX = 41


class OperationType(IntEnum):
    READ = 1
    WRITE = 2
    CDT_READ = 3
    CDT_MODIFY = 4
    ADD = 5
    APPEND = 9
    PREPEND = 10
    TOUCH = 11
    DELETE = 14


class Info1(IntFlag):
    NONE = 0
    READ = 1
    GET_ALL = 2
    BATCH = 8
    NOBINDATA = 32
    CONSISTENCY_ALL = 64


class Info2(IntFlag):
    NONE = 0
    WRITE = 1
    DELETE = 2
    GENERATION = 4
    GENERATION_GT = 8
    DURABLE_DELETE = 16
    CREATE_ONLY = 32
    RESPOND_ALL_OPS = 128


class Info3(IntFlag):
    NONE = 0
    LAST = 1
    COMMIT_MASTER = 2
    PARTITION_DONE = 4
    UPDATE_ONLY = 8
    CREATE_OR_REPLACE = 16
    REPLACE_ONLY = 32


@dataclass(slots=True)
class MessageHeader:
    """Decoded 22-byte message header."""

    info1: int = 0
    info2: int = 0
    info3: int = 0
    result_code: int = 0
    generation: int = 0
    expiration: int = 0
    transaction_ttl: int = 0
    field_count: int = 0
    op_count: int = 0


@dataclass(frozen=True, slots=True)
class Field:
    type: int
    data: bytes

    @property
    def wire_size(self) -> int:
        return _FIELD_HEADER.size + len(self.data)


@dataclass(frozen=True, slots=True)
class Operation:
    """One bin operation; ``value`` is already serialized."""

    op_type: int
    bin_name: str = ""
    particle_type: int = 0
    value: bytes = b""

    @property
    def name_bytes(self) -> bytes:
        return self.bin_name.encode("utf-8")

    @property
    def wire_size(self) -> int:
        return _OP_HEADER.size + len(self.name_bytes) + len(self.value)


@dataclass(slots=True)
class Message:
    """A decoded message: header plus its fields and operations."""

    header: MessageHeader
    fields: list[Field] = field(default_factory=list)
    ops: list[Operation] = field(default_factory=list)

    def get_field(self, field_type: int) -> bytes | None:
        for item in self.fields:
            if item.type == field_type:
                return item.data
        return None


class Buffer:
    """
    Reusable growable byte buffer.

    Capacity doubles on demand and never exceeds ``max_size``; asking for
    more raises :class:`PayloadTooLargeError`.
    """

    def __init__(self, max_size: int, initial_size: int = 1024) -> None:
        self.max_size = int(max_size)
        self._data = bytearray(min(initial_size, self.max_size))

    @property
    def capacity(self) -> int:
        return len(self._data)

    def reserve(self, size: int) -> bytearray:
        """Return the backing array grown to hold at least ``size`` bytes."""
        if size > self.max_size:
            raise PayloadTooLargeError(
                f"Encoded size {size} exceeds max buffer {self.max_size} bytes."
            )
        if size > len(self._data):
            capacity = max(len(self._data), 1)
            while capacity < size:
                capacity *= 2
            self._data = bytearray(min(capacity, self.max_size))
        return self._data


def encode_proto_header(proto_type: int, size: int) -> bytes:
    if size > _MAX_PROTO_SIZE:
        raise PayloadTooLargeError(f"Proto body {size} does not fit in 48 bits.")
    return _PROTO.pack((PROTO_VERSION << 56) | (int(proto_type) << 48) | size)


def decode_proto_header(header: bytes) -> tuple[int, int, int]:
    """Return ``(version, proto_type, size)`` from an 8-byte proto header."""
    (value,) = _PROTO.unpack(header)
    return (value >> 56) & 0xFF, (value >> 48) & 0xFF, value & _MAX_PROTO_SIZE


def message_size(fields: list[Field], ops: list[Operation]) -> int:
    """Return the encoded size of one message without its proto header."""
    return (
        MSG_HEADER_SIZE
        + sum(item.wire_size for item in fields)
        + sum(op.wire_size for op in ops)
    )


def write_message(
    out: bytearray,
    offset: int,
    header: MessageHeader,
    fields: list[Field],
    ops: list[Operation],
) -> int:
    """Pack one message into ``out`` at ``offset`` and return the new offset."""
    _MSG_HEADER.pack_into(
        out,
        offset,
        MSG_HEADER_SIZE,
        int(header.info1),
        int(header.info2),
        int(header.info3),
        0,
        int(header.result_code),
        header.generation & 0xFFFFFFFF,
        header.expiration & 0xFFFFFFFF,
        header.transaction_ttl & 0xFFFFFFFF,
        len(fields),
        len(ops),
    )
    offset += MSG_HEADER_SIZE
    for item in fields:
        offset = write_field(out, offset, item)
    for op in ops:
        offset = write_op(out, offset, op)
    return offset


def write_op(out: bytearray, offset: int, op: Operation) -> int:
    name = op.name_bytes
    if len(name) > 255:
        raise ValueError(f"Bin name {op.bin_name!r} is too long.")
    _OP_HEADER.pack_into(
        out,
        offset,
        4 + len(name) + len(op.value),
        int(op.op_type),
        int(op.particle_type),
        0,
        len(name),
    )
    offset += _OP_HEADER.size
    out[offset : offset + len(name)] = name
    offset += len(name)
    out[offset : offset + len(op.value)] = op.value
    return offset + len(op.value)


def write_field(out: bytearray, offset: int, item: Field) -> int:
    _FIELD_HEADER.pack_into(out, offset, len(item.data) + 1, int(item.type))
    offset += _FIELD_HEADER.size
    out[offset : offset + len(item.data)] = item.data
    return offset + len(item.data)


def encode_message(
    header: MessageHeader,
    fields: list[Field],
    ops: list[Operation],
    *,
    buffer: Buffer,
) -> bytes:
    """
    Encode one complete request frame (proto header plus message).

    Raises
    ------
    PayloadTooLargeError
        If the request does not fit in ``buffer.max_size``.
    """
    body_size = message_size(fields, ops)
    total = PROTO_HEADER_SIZE + body_size
    out = buffer.reserve(total)
    out[0:PROTO_HEADER_SIZE] = encode_proto_header(ProtoType.MESSAGE, body_size)
    end = write_message(out, PROTO_HEADER_SIZE, header, fields, ops)
    if end != total:
        raise ProtocolError(f"Encoded {end} bytes but computed {total}.")
    return bytes(out[:total])


def parse_message(body: bytes, offset: int = 0) -> tuple[Message, int]:
    """
    Decode one message from ``body`` starting at ``offset``.

    Returns the message and the offset just past it.
    """
    try:
        (
            header_len,
            info1,
            info2,
            info3,
            _unused,
            result_code,
            generation,
            expiration,
            transaction_ttl,
            field_count,
            op_count,
        ) = _MSG_HEADER.unpack_from(body, offset)
    except struct.error as exc:
        raise ProtocolError("Truncated message header.") from exc
    if header_len != MSG_HEADER_SIZE:
        raise ProtocolError(f"Unexpected message header length {header_len}.")
    header = MessageHeader(
        info1=info1,
        info2=info2,
        info3=info3,
        result_code=result_code,
        generation=generation,
        expiration=expiration,
        transaction_ttl=transaction_ttl,
        field_count=field_count,
        op_count=op_count,
    )
    message = Message(header)
    message.fields, offset = parse_fields(body, offset + MSG_HEADER_SIZE, field_count)
    message.ops, offset = parse_ops(body, offset, op_count)
    return message, offset


def parse_fields(body: bytes, offset: int, count: int) -> tuple[list[Field], int]:
    """Decode ``count`` fields starting at ``offset``; return them and the end offset."""
    fields = []
    end = len(body)
    for _ in range(count):
        if offset + _FIELD_HEADER.size > end:
            raise ProtocolError("Truncated field header.")
        size, field_type = _FIELD_HEADER.unpack_from(body, offset)
        if size < 1:
            raise ProtocolError(f"Invalid field size {size}.")
        start = offset + _FIELD_HEADER.size
        stop = start + size - 1
        if stop > end:
            raise ProtocolError("Truncated field data.")
        fields.append(Field(field_type, bytes(body[start:stop])))
        offset = stop
    return fields, offset


def parse_ops(body: bytes, offset: int, count: int) -> tuple[list[Operation], int]:
    """Decode ``count`` operations starting at ``offset``; return them and the end offset."""
    ops = []
    end = len(body)
    for _ in range(count):
        if offset + _OP_HEADER.size > end:
            raise ProtocolError("Truncated operation header.")
        size, op_type, particle_type, _version, name_len = _OP_HEADER.unpack_from(body, offset)
        if size < 4 + name_len:
            raise ProtocolError(f"Invalid operation size {size}.")
        name_start = offset + _OP_HEADER.size
        value_start = name_start + name_len
        value_end = offset + 4 + size
        if value_end > end:
            raise ProtocolError("Truncated operation data.")
        try:
            name = bytes(body[name_start:value_start]).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Bin name is not valid UTF-8.") from exc
        ops.append(Operation(op_type, name, particle_type, bytes(body[value_start:value_end])))
        offset = value_end
    return ops, offset


def iter_messages(body: bytes) -> Iterator[Message]:
    """Yield every message packed in one proto body."""
    offset = 0
    while offset < len(body):
        message, offset = parse_message(body, offset)
        yield message


def decode_request(frame: bytes) -> Message:
    """
    Parse an encoded request frame back into its message.

    Used by tests and fake servers to inspect what the client sent.
    """
    if len(frame) < PROTO_HEADER_SIZE:
        raise ProtocolError("Frame shorter than the proto header.")
    version, proto_type, size = decode_proto_header(frame[:PROTO_HEADER_SIZE])
    if version != PROTO_VERSION or proto_type != ProtoType.MESSAGE:
        raise ProtocolError(f"Unexpected proto version={version} type={proto_type}.")
    body = frame[PROTO_HEADER_SIZE:]
    if len(body) != size:
        raise ProtocolError(f"Frame body is {len(body)} bytes, header says {size}.")
    message, end = parse_message(body)
    if end != size:
        raise ProtocolError("Trailing bytes after request message.")
    return message


def encode_info_request(names: list[str] | tuple[str, ...]) -> bytes:
    body = "".join(f"{name}\n" for name in names).encode("utf-8")
    return encode_proto_header(ProtoType.INFO, len(body)) + body


def encode_info_response(values: dict[str, str]) -> bytes:
    body = "".join(f"{name}\t{value}\n" for name, value in values.items()).encode("utf-8")
    return encode_proto_header(ProtoType.INFO, len(body)) + body


def parse_info_request(body: bytes) -> list[str]:
    return [line for line in body.decode("utf-8").split("\n") if line]


def parse_info_response(body: bytes) -> dict[str, str]:
    """
    Parse ``name\\tvalue`` lines into a dictionary.

    Names sent without a value map to an empty string.
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("Info response is not valid UTF-8.") from exc
    values: dict[str, str] = {}
    for line in text.split("\n"):
        if not line:
            continue
        name, _, value = line.partition("\t")
        values[name] = value
    return values


def _read_exact(sock: socket.socket, total: int) -> bytes:
    """Read exactly ``total`` bytes or raise if the stream closes early."""
    chunks = bytearray()
    while len(chunks) < total:
        block = sock.recv(min(total - len(chunks), 1 << 20))
        if not block:
            raise ConnectionResetError("Peer closed connection before full frame arrived.")
        chunks.extend(block)
    return bytes(chunks)


def recv_proto(sock: socket.socket, max_size: int) -> tuple[int, bytes]:
    """
    Read one proto frame and return ``(proto_type, body)``.

    Raises
    ------
    ProtocolError
        If the header is invalid or the body exceeds ``max_size``.
    """
    version, proto_type, size = decode_proto_header(_read_exact(sock, PROTO_HEADER_SIZE))
    if version != PROTO_VERSION:
        raise ProtocolError(f"Unsupported proto version {version}.")
    if proto_type not in (ProtoType.INFO, ProtoType.MESSAGE):
        raise ProtocolError(f"Unsupported proto type {proto_type}.")
    if size > max_size:
        raise ProtocolError(f"Incoming frame {size} exceeds max buffer {max_size}.")
    return proto_type, _read_exact(sock, size)
