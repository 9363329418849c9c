"""
Server result codes carried in byte 13 of every response header.

Only the codes the client acts on are enumerated; unknown codes are kept as
plain integers so a newer server never breaks response decoding.
"""

from __future__ import annotations

from enum import IntEnum


class ResultCode(IntEnum):
    OK = 0
    SERVER_ERROR = 1
    KEY_NOT_FOUND_ERROR = 2
    GENERATION_ERROR = 3
    PARAMETER_ERROR = 4
    KEY_EXISTS_ERROR = 5
    BIN_EXISTS_ERROR = 6
    CLUSTER_KEY_MISMATCH = 7
    SERVER_MEM_ERROR = 8
    TIMEOUT = 9
    ALWAYS_FORBIDDEN = 10
    PARTITION_UNAVAILABLE = 11
    BIN_TYPE_ERROR = 12
    RECORD_TOO_BIG = 13
    KEY_BUSY = 14
    SCAN_ABORT = 15
    UNSUPPORTED_FEATURE = 16
    BIN_NOT_FOUND = 17
    DEVICE_OVERLOAD = 18
    KEY_MISMATCH = 19
    INVALID_NAMESPACE = 20
    BIN_NAME_TOO_LONG = 21
    FAIL_FORBIDDEN = 22
    ELEMENT_NOT_FOUND = 23
    ELEMENT_EXISTS = 24
    FILTERED_OUT = 27
    QUERY_END = 50
    INVALID_COMMAND = 54
    INVALID_FIELD = 55
    ILLEGAL_STATE = 56
    BATCH_DISABLED = 150
    BATCH_MAX_REQUESTS_EXCEEDED = 151
    BATCH_QUEUES_FULL = 152
    INDEX_NOT_FOUND = 201
    QUERY_ABORTED = 210
    QUERY_QUEUE_FULL = 211
    QUERY_TIMEOUT = 212

    @classmethod
    def coerce(cls, value: int) -> "ResultCode | int":
        """Return the enum member for ``value`` or the raw integer when unknown."""
        try:
            return cls(int(value))
        except ValueError:
            return int(value)

    @classmethod
    def describe(cls, value: int) -> str:
        code = cls.coerce(value)
        if isinstance(code, ResultCode):
            return _DESCRIPTIONS.get(code, code.name.replace("_", " ").capitalize())
        return f"Unknown server result code {code}"

    @classmethod
    def is_transient(cls, value: int) -> bool:
        """
        Return whether a server code reflects a temporary cluster condition.

        Transient codes mean the server rejected the request before applying
        it (migration, overload, node not owning the partition), so a retry
        against a re-resolved node is safe even for non-idempotent writes.
        """
        return cls.coerce(value) in _TRANSIENT


_DESCRIPTIONS: dict[ResultCode, str] = {
    ResultCode.OK: "ok",
    ResultCode.KEY_NOT_FOUND_ERROR: "Key not found",
    ResultCode.GENERATION_ERROR: "Generation error",
    ResultCode.KEY_EXISTS_ERROR: "Key already exists",
    ResultCode.TIMEOUT: "Server timeout",
    ResultCode.PARTITION_UNAVAILABLE: "Partition unavailable",
    ResultCode.BIN_TYPE_ERROR: "Bin type error",
    ResultCode.RECORD_TOO_BIG: "Record too big",
    ResultCode.KEY_BUSY: "Hot key",
    ResultCode.DEVICE_OVERLOAD: "Device overload",
    ResultCode.INVALID_NAMESPACE: "Namespace not found",
}

_TRANSIENT = frozenset(
    {
        ResultCode.TIMEOUT,
        ResultCode.PARTITION_UNAVAILABLE,
        ResultCode.KEY_BUSY,
        ResultCode.DEVICE_OVERLOAD,
        ResultCode.CLUSTER_KEY_MISMATCH,
        ResultCode.SERVER_MEM_ERROR,
        ResultCode.BATCH_QUEUES_FULL,
        ResultCode.QUERY_QUEUE_FULL,
    }
)
