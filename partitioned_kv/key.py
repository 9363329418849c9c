"""
Record keys, digests and partition ids.

A record is addressed by ``(namespace, digest)``. The digest is a
RIPEMD-160 hash over the set name, the user key's particle type and the
user key bytes, so the same user key hashes identically in every client.
The partition id is derived from the first four digest bytes.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Union

from .config import DEFAULT_PARTITION_COUNT
from .serialization import ParticleType

UserKey = Union[int, str, bytes]

DIGEST_SIZE = 20
_INT_KEY = struct.Struct(">q")


def _user_key_bytes(user_key: UserKey) -> tuple[int, bytes]:
    # bool is an int subclass but never a valid key type
    if isinstance(user_key, bool):
        raise TypeError("Boolean values cannot be used as record keys.")
    if isinstance(user_key, int):
        return ParticleType.INTEGER, _INT_KEY.pack(user_key)
    if isinstance(user_key, str):
        return ParticleType.STRING, user_key.encode("utf-8")
    if isinstance(user_key, (bytes, bytearray, memoryview)):
        return ParticleType.BLOB, bytes(user_key)
    raise TypeError(f"Unsupported record key type {type(user_key).__name__}.")


def compute_digest(set_name: str, user_key: UserKey) -> bytes:
    """
    Return the 20-byte RIPEMD-160 digest for ``user_key`` in ``set_name``.
    """
    particle_type, data = _user_key_bytes(user_key)
    hasher = hashlib.new("ripemd160")
    hasher.update(set_name.encode("utf-8"))
    hasher.update(bytes([particle_type]))
    hasher.update(data)
    return hasher.digest()


def partition_id_for(digest: bytes, partition_count: int = DEFAULT_PARTITION_COUNT) -> int:
    """Map a digest onto ``0..partition_count-1``."""
    return int.from_bytes(digest[0:4], "little") % partition_count


@dataclass(frozen=True, slots=True)
class Key:
    """
    Immutable record key.

    Build keys with :meth:`Key.create` (hashes the user key) or
    :meth:`Key.from_digest` (digest already known, for example a key echoed
    back by a scan).
    """

    namespace: str
    set_name: str
    digest: bytes
    user_key: UserKey | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("Key.namespace must be a non-empty string.")
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(f"Key.digest must be {DIGEST_SIZE} bytes.")

    @classmethod
    def create(cls, namespace: str, set_name: str, user_key: UserKey) -> "Key":
        return cls(namespace, set_name, compute_digest(set_name, user_key), user_key)

    @classmethod
    def from_digest(cls, namespace: str, set_name: str, digest: bytes) -> "Key":
        return cls(namespace, set_name, bytes(digest))

    def partition_id(self, partition_count: int = DEFAULT_PARTITION_COUNT) -> int:
        return partition_id_for(self.digest, partition_count)

    def user_key_field(self) -> bytes | None:
        """
        Return the wire form of the user key (particle type byte + value).

        ``None`` when the key was built from a digest only.
        """
        if self.user_key is None:
            return None
        particle_type, data = _user_key_bytes(self.user_key)
        return bytes([particle_type]) + data

    def __repr__(self) -> str:
        return (
            f"Key(namespace={self.namespace!r}, set_name={self.set_name!r}, "
            f"digest={self.digest.hex()}, user_key={self.user_key!r})"
        )
