"""
Custom exceptions used by the partitioned key-value client.

Keeping library-specific errors in one module gives users a predictable
import surface for catching and handling operational edge cases. Every error
raised for a remote or network failure derives from
:class:`PartitionedKVError`; invalid configuration raises ``ValueError`` at
construction time instead.
"""

from __future__ import annotations

from .result_code import ResultCode


class PartitionedKVError(Exception):
    """Base error type for all library-level exceptions."""


class ClusterConnectionError(PartitionedKVError):
    """
    Raised when a node cannot be reached or a socket fails mid-exchange.

    Covers refused connections, resets and socket timeouts. The executor
    treats it as retryable.
    """


class PoolClosedError(ClusterConnectionError):
    """
    Raised when a node's connection pool was closed under a command.

    Happens when the tend loop removes a node that a command had already
    resolved; re-resolving against the current partition map finds the new
    owner, so the executor retries it.
    """


class PoolTimeoutError(PartitionedKVError):
    """
    Raised when a node's connection pool is exhausted for longer than the
    caller was willing to wait.
    """


class CommandTimeoutError(PartitionedKVError):
    """
    Raised when a command's overall deadline expires.

    The deadline spans every retry attempt, so this error is terminal.
    """


class NoAvailableNodeError(PartitionedKVError):
    """
    Raised when the current partition map has no candidate node for a
    partition.

    The condition clears after the next successful cluster tend; callers
    decide whether to retry.
    """


class ServerError(PartitionedKVError):
    """
    Raised when the server answers with a non-success result code.

    Parameters
    ----------
    result_code:
        Result code byte returned by the server.
    """

    def __init__(self, result_code: int, message: str | None = None) -> None:
        self.result_code = ResultCode.coerce(result_code)
        text = message or ResultCode.describe(result_code)
        super().__init__(f"Server error {int(result_code)}: {text}")

    @property
    def is_transient(self) -> bool:
        """Return whether the code signals a condition worth retrying."""
        return ResultCode.is_transient(self.result_code)


class MaybeAppliedError(PartitionedKVError):
    """
    Raised when a non-idempotent write may or may not have been applied.

    The request reached the server but the response was lost, so retrying
    could apply the write twice. ``__cause__`` holds the underlying error.
    """


class PayloadTooLargeError(PartitionedKVError):
    """
    Raised when an encoded request would exceed the configured buffer cap.

    This is a local, deterministic failure and is never retried.
    """


class ProtocolError(PartitionedKVError):
    """
    Raised when a response is malformed or cannot be decoded.

    The offending connection is always discarded because its stream position
    is no longer known.
    """


class InvalidNodeError(PartitionedKVError):
    """
    Raised when a seed or peer fails validation.

    Examples include a missing node name or a cluster name that does not
    match ``ClientConfig.cluster_name``.
    """


class ClusterClosedError(PartitionedKVError):
    """Raised when a command is issued after :meth:`Cluster.close`."""
