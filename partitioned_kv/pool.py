"""
Bounded per-node connection pool.

The pool keeps an idle LIFO of reusable connections and a count of every
open connection (idle or checked out). ``open_count`` never exceeds
``max_size``; callers that find the pool exhausted wait on a condition
variable until a connection is released or their deadline expires.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Protocol

from .exceptions import PoolClosedError, PoolTimeoutError

_LOGGER = logging.getLogger(__name__)


class PooledConnection(Protocol):
    last_used: float

    def close(self) -> None: ...

    def is_idle_expired(self, idle_timeout_seconds: float, now: float | None = None) -> bool: ...


ConnectionFactory = Callable[[], PooledConnection]


class ConnectionPool:
    """
    Thread-safe connection pool for one node.

    Parameters
    ----------
    factory:
        Zero-argument callable that opens a new connection. It runs outside
        the pool lock.
    max_size:
        Upper bound on open connections.
    idle_timeout_seconds:
        Idle connections older than this are discarded on acquire and by
        :meth:`sweep_idle`. ``0`` disables expiry.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        *,
        max_size: int,
        idle_timeout_seconds: float = 0.0,
        name: str = "",
    ) -> None:
        if max_size <= 0:
            raise ValueError("ConnectionPool.max_size must be >= 1.")
        self._factory = factory
        self.max_size = int(max_size)
        self.idle_timeout_seconds = float(idle_timeout_seconds)
        self.name = name
        self._idle: deque[PooledConnection] = deque()
        self._open_count = 0
        self._closed = False
        self._cond = threading.Condition(threading.Lock())

    @property
    def open_count(self) -> int:
        with self._cond:
            return self._open_count

    @property
    def idle_count(self) -> int:
        with self._cond:
            return len(self._idle)

    @property
    def is_drained(self) -> bool:
        """Return true once the pool is closed and no connection remains open."""
        with self._cond:
            return self._closed and self._open_count == 0

    def acquire(self, timeout_seconds: float | None) -> PooledConnection:
        """
        Check out a connection.

        Reuses the most recently released idle connection, opens a new one
        while below ``max_size``, and otherwise waits for a release.

        Raises
        ------
        PoolTimeoutError
            When no connection became available within ``timeout_seconds``.
        PoolClosedError
            When the pool has been closed.
        """
        deadline = None if timeout_seconds is None else time.monotonic() + max(0.0, timeout_seconds)
        expired: list[PooledConnection] = []
        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise PoolClosedError(f"Connection pool {self.name} is closed.")
                    now = time.monotonic()
                    while self._idle:
                        conn = self._idle.pop()
                        if conn.is_idle_expired(self.idle_timeout_seconds, now):
                            self._open_count -= 1
                            expired.append(conn)
                            continue
                        return conn
                    if self._open_count < self.max_size:
                        # reserve the slot before opening outside the lock
                        self._open_count += 1
                        break
                    remaining = None if deadline is None else deadline - now
                    if remaining is not None and remaining <= 0:
                        raise PoolTimeoutError(
                            f"Connection pool {self.name} exhausted: max_size={self.max_size}"
                        )
                    self._cond.wait(remaining)
        finally:
            for conn in expired:
                conn.close()
        try:
            return self._factory()
        except BaseException:
            with self._cond:
                self._open_count -= 1
                self._cond.notify()
            raise

    def release(self, conn: PooledConnection, *, healthy: bool = True) -> None:
        """
        Return a checked-out connection.

        Unhealthy connections, and every connection released after
        :meth:`close`, are closed instead of pooled.
        """
        with self._cond:
            keep = healthy and not self._closed
            if keep:
                conn.last_used = time.monotonic()
                self._idle.append(conn)
            else:
                self._open_count -= 1
            self._cond.notify()
        if not keep:
            conn.close()

    def sweep_idle(self) -> int:
        """Close idle connections past ``idle_timeout_seconds``; return how many."""
        if self.idle_timeout_seconds <= 0:
            return 0
        now = time.monotonic()
        with self._cond:
            expired = [
                conn for conn in self._idle if conn.is_idle_expired(self.idle_timeout_seconds, now)
            ]
            if not expired:
                return 0
            self._idle = deque(
                conn for conn in self._idle if not conn.is_idle_expired(self.idle_timeout_seconds, now)
            )
            self._open_count -= len(expired)
            self._cond.notify_all()
        for conn in expired:
            conn.close()
        if expired:
            _LOGGER.debug("Idle connections swept pool=%s count=%d", self.name, len(expired))
        return len(expired)

    def close(self) -> None:
        """
        Drain the pool.

        Idle connections close now; checked-out connections close when they
        are released. Idempotent.
        """
        with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._open_count -= len(idle)
            self._cond.notify_all()
        for conn in idle:
            conn.close()
