"""
Bin value serialization contract.

The command layer treats bin values as opaque ``(particle_type, bytes)``
pairs. Anything that implements :class:`ValueSerializer` can be plugged into
:class:`~partitioned_kv.executor.CommandExecutor`; :class:`BasicSerializer`
covers scalars and encodes lists and maps with msgpack.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Any, Protocol, runtime_checkable

import msgpack

from .exceptions import ProtocolError


class ParticleType(IntEnum):
    NULL = 0
    INTEGER = 1
    FLOAT = 2
    STRING = 3
    BLOB = 4
    BOOL = 17
    HLL = 18
    MAP = 19
    LIST = 20
    GEOJSON = 23


class GeoJSON(str):
    """Marker type for GeoJSON strings stored with the GEOJSON particle type."""


@runtime_checkable
class ValueSerializer(Protocol):
    """Structural contract for bin value codecs."""

    def encode_value(self, value: Any) -> tuple[int, bytes]:
        """Return ``(particle_type, payload)`` for one bin value."""

    def decode_value(self, data: bytes, particle_type: int) -> Any:
        """Rebuild a bin value from its wire payload."""


_INT = struct.Struct(">q")
_FLOAT = struct.Struct(">d")
# GeoJSON payload: flags byte, cell count, then the JSON text
_GEO_HEADER = struct.Struct(">BH")


class BasicSerializer:
    """
    Default serializer for Python scalars, lists and dicts.

    ``bool`` is checked before ``int`` because it is an ``int`` subclass.
    """

    def encode_value(self, value: Any) -> tuple[int, bytes]:
        if value is None:
            return ParticleType.NULL, b""
        if isinstance(value, bool):
            return ParticleType.BOOL, b"\x01" if value else b"\x00"
        if isinstance(value, int):
            return ParticleType.INTEGER, _INT.pack(value)
        if isinstance(value, float):
            return ParticleType.FLOAT, _FLOAT.pack(value)
        if isinstance(value, GeoJSON):
            return ParticleType.GEOJSON, _GEO_HEADER.pack(0, 0) + str(value).encode("utf-8")
        if isinstance(value, str):
            return ParticleType.STRING, value.encode("utf-8")
        if isinstance(value, (bytes, bytearray, memoryview)):
            return ParticleType.BLOB, bytes(value)
        if isinstance(value, dict):
            return ParticleType.MAP, msgpack.packb(value, use_bin_type=True)
        if isinstance(value, (list, tuple)):
            return ParticleType.LIST, msgpack.packb(list(value), use_bin_type=True)
        raise TypeError(f"Unsupported bin value type {type(value).__name__}.")

    def decode_value(self, data: bytes, particle_type: int) -> Any:
        try:
            if particle_type == ParticleType.NULL:
                return None
            if particle_type == ParticleType.INTEGER:
                # servers may send shorter big-endian integers for small values
                return int.from_bytes(data, "big", signed=True)
            if particle_type == ParticleType.FLOAT:
                return _FLOAT.unpack(data)[0]
            if particle_type == ParticleType.BOOL:
                return bool(data[0]) if data else False
            if particle_type == ParticleType.STRING:
                return data.decode("utf-8")
            if particle_type == ParticleType.GEOJSON:
                _, cells = _GEO_HEADER.unpack_from(data, 0)
                offset = _GEO_HEADER.size + cells * 8
                return GeoJSON(data[offset:].decode("utf-8"))
            if particle_type in (ParticleType.MAP, ParticleType.LIST):
                return msgpack.unpackb(data, raw=False, strict_map_key=False)
        except (struct.error, UnicodeDecodeError, ValueError, msgpack.ExtraData) as exc:
            raise ProtocolError(
                f"Failed to decode bin value of particle type {particle_type}."
            ) from exc
        # blobs and unknown particle types are returned raw
        return bytes(data)
