"""
Connection slot pool for the remote vector store.

Slots are handed out through acquire()/release() or the ``connection()``
async context manager. Connections are created lazily through a factory,
``min_connections`` stay warm and idle connections above the minimum are
reclaimed after ``idle_timeout_ms``.
"""

import asyncio
import inspect
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional

from ..core.exceptions import (
    ConfigurationError,
    IngestionError,
    PoolExhaustedError,
    TransientIngestionError,
)
from ..core.logging import logger
from ..models.record import ConnectionPoolConfig, ConnectionPoolHealth
from ..utils.retry import RetryConfig, build_async_retrying, build_retrying
from .metrics import MovingAverage

# Backoff between connection creation attempts (seconds)
CREATE_RETRY_MIN_WAIT = 0.05
CREATE_RETRY_MAX_WAIT = 1.0


def validate_pool_config(config: ConnectionPoolConfig) -> ConnectionPoolConfig:
    """Reject configurations the pool cannot honour."""
    if config.max_connections < 1:
        raise ConfigurationError(
            "max_connections must be >= 1",
            details={"max_connections": config.max_connections},
        )
    if config.min_connections < 0:
        raise ConfigurationError(
            "min_connections must be >= 0",
            details={"min_connections": config.min_connections},
        )
    if config.min_connections > config.max_connections:
        raise ConfigurationError(
            "min_connections cannot exceed max_connections",
            details={
                "min_connections": config.min_connections,
                "max_connections": config.max_connections,
            },
        )
    if config.acquire_timeout_ms <= 0 or config.idle_timeout_ms <= 0:
        raise ConfigurationError(
            "Pool timeouts must be positive",
            details={
                "acquire_timeout_ms": config.acquire_timeout_ms,
                "idle_timeout_ms": config.idle_timeout_ms,
            },
        )
    if config.max_retries < 0:
        raise ConfigurationError(
            "max_retries must be >= 0",
            details={"max_retries": config.max_retries},
        )
    return config


@dataclass
class PooledConnection:
    """One slot in the pool, optionally wrapping a client handle."""

    id: int
    handle: Any = None
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    acquired_at: Optional[float] = None
    uses: int = 0


class ConnectionPool:
    """
    asyncio slot pool bounded by ``max_connections``.

    All pool mutations happen in acquire/release under an asyncio.Condition.
    Stale idle connections are reclaimed on acquire, release and health().
    """

    def __init__(
        self,
        config: Optional[ConnectionPoolConfig] = None,
        factory: Optional[Callable[[], Any]] = None,
        closer: Optional[Callable[[Any], Any]] = None,
    ):
        self.config = validate_pool_config(config or ConnectionPoolConfig())
        self._factory = factory
        self._closer = closer
        self._ids = itertools.count(1)

        self._idle: Deque[PooledConnection] = deque()
        self._active: Dict[int, PooledConnection] = {}
        self._creating = 0
        self._condition: Optional[asyncio.Condition] = None
        self._closed = False

        # Statistics
        self._total_acquires = 0
        self._acquire_timeouts = 0
        self._waiting = 0
        self._hold_times = MovingAverage(window_size=100)
        self._busy_time_ms = 0.0

    # ==================== Configuration ====================

    def configure(self, config: Optional[ConnectionPoolConfig] = None, **updates: Any) -> ConnectionPoolConfig:
        """
        Apply new limits; takes effect for subsequent acquisitions.

        Accepts a full ConnectionPoolConfig, field overrides, or both
        (overrides win). The old config is kept if validation fails.
        """
        merged = (config or self.config).model_copy(update=updates)
        self.config = validate_pool_config(ConnectionPoolConfig.model_validate(merged.model_dump()))
        logger.info(f"Connection pool reconfigured: {self.config.model_dump()}")
        return self.config

    # ==================== Acquire / release ====================

    @property
    def _cond(self) -> asyncio.Condition:
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    @property
    def total_connections(self) -> int:
        return len(self._idle) + len(self._active) + self._creating

    async def acquire(self) -> PooledConnection:
        """
        Take a slot, creating a connection if below ``max_connections``.

        Raises:
            PoolExhaustedError: no slot became free within ``acquire_timeout_ms``
        """
        if self._closed:
            raise IngestionError("Connection pool is closed")

        self._total_acquires += 1
        self._waiting += 1
        try:
            conn = await asyncio.wait_for(
                self._take_slot(), timeout=self.config.acquire_timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            self._acquire_timeouts += 1
            logger.warning(
                f"Connection pool exhausted: {len(self._active)}/{self.config.max_connections} "
                f"active after {self.config.acquire_timeout_ms}ms"
            )
            raise PoolExhaustedError(
                self.config.acquire_timeout_ms,
                len(self._active),
                self.config.max_connections,
            ) from None
        finally:
            self._waiting -= 1

        now = time.monotonic()
        conn.acquired_at = now
        conn.last_used_at = now
        conn.uses += 1
        return conn

    async def _take_slot(self) -> PooledConnection:
        async with self._cond:
            while True:
                if self._closed:
                    raise IngestionError("Connection pool is closed")
                self._reap_idle()
                if self._idle:
                    conn = self._idle.pop()
                    self._active[conn.id] = conn
                    return conn
                if self.total_connections < self.config.max_connections:
                    self._creating += 1
                    break
                await self._cond.wait()

        try:
            conn = await self._create_connection()
        except BaseException:
            self._creating -= 1
            async with self._cond:
                self._cond.notify()
            raise
        self._creating -= 1
        self._active[conn.id] = conn
        return conn

    async def release(self, conn: PooledConnection):
        """Return a slot to the pool and wake one waiter."""
        if self._active.pop(conn.id, None) is None:
            logger.warning(f"Release of unknown connection {conn.id} ignored")
            return

        now = time.monotonic()
        if conn.acquired_at is not None:
            held_ms = (now - conn.acquired_at) * 1000
            self._hold_times.add(held_ms)
            self._busy_time_ms += held_ms
        conn.acquired_at = None
        conn.last_used_at = now

        if self._closed:
            await self._close_connection(conn)
            return

        async with self._cond:
            self._idle.append(conn)
            self._reap_idle()
            self._cond.notify()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[PooledConnection]:
        """``async with pool.connection() as conn:``; the slot is always released."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    # ==================== Lifecycle ====================

    async def warm_up(self):
        """Create connections until ``min_connections`` exist; a no-op once they do."""
        if self._closed:
            raise IngestionError("Connection pool is closed")
        while self.total_connections < self.config.min_connections:
            self._creating += 1
            try:
                conn = await self._create_connection()
            finally:
                self._creating -= 1
            async with self._cond:
                self._idle.append(conn)
                self._cond.notify()
        logger.debug(f"Connection pool warmed up with {self.total_connections} connections")

    async def close(self):
        """Close idle connections; active ones are closed as they are released."""
        self._closed = True
        while self._idle:
            await self._close_connection(self._idle.popleft())
        if self._condition is not None:
            async with self._condition:
                self._condition.notify_all()
        logger.info("Connection pool closed")

    def _reap_idle(self):
        """Drop idle connections beyond the minimum that outlived idle_timeout_ms."""
        cutoff = time.monotonic() - self.config.idle_timeout_ms / 1000
        keep = max(0, self.config.min_connections - len(self._active))
        survivors: Deque[PooledConnection] = deque()
        for conn in reversed(self._idle):
            if len(survivors) < keep or conn.last_used_at >= cutoff:
                survivors.appendleft(conn)
            else:
                logger.debug(f"Reclaiming idle connection {conn.id}")
                self._discard(conn)
        self._idle = survivors

    def _discard(self, conn: PooledConnection):
        if self._closer is None or conn.handle is None:
            return
        try:
            result = self._closer(conn.handle)
        except Exception as e:
            logger.warning(f"Error closing connection {conn.id}: {e}")
            return
        if not inspect.isawaitable(result):
            return
        try:
            asyncio.get_running_loop()
            asyncio.ensure_future(result)
        except RuntimeError:
            # health() called outside the event loop with an async closer
            if inspect.iscoroutine(result):
                result.close()
            logger.warning(f"Could not schedule close of connection {conn.id}: no running event loop")

    async def _close_connection(self, conn: PooledConnection):
        if self._closer is None or conn.handle is None:
            return
        try:
            result = self._closer(conn.handle)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Error closing connection {conn.id}: {e}")

    async def _create_connection(self) -> PooledConnection:
        """Run the factory within the pool's retry budget."""
        conn_id = next(self._ids)
        if self._factory is None:
            return PooledConnection(id=conn_id)

        retry_config = RetryConfig(
            max_attempts=self.config.max_retries + 1,
            min_wait=CREATE_RETRY_MIN_WAIT,
            max_wait=CREATE_RETRY_MAX_WAIT,
            backoff_multiplier=CREATE_RETRY_MIN_WAIT,
        )
        try:
            if inspect.iscoroutinefunction(self._factory):
                async for attempt in build_async_retrying(retry_config):
                    with attempt:
                        handle = await self._factory()
            else:
                for attempt in build_retrying(retry_config):
                    with attempt:
                        handle = self._factory()
        except Exception as e:
            logger.error(f"Failed to create connection after {retry_config.max_attempts} attempts: {e}")
            raise TransientIngestionError(
                f"Failed to create connection: {e}",
                details={"attempts": retry_config.max_attempts},
            ) from e

        logger.debug(f"Created connection {conn_id}")
        return PooledConnection(id=conn_id, handle=handle)

    # ==================== Health ====================

    @property
    def busy_time_ms(self) -> float:
        """Total time slots have been held since the pool was created."""
        return self._busy_time_ms

    @property
    def total_acquires(self) -> int:
        return self._total_acquires

    def health(self) -> ConnectionPoolHealth:
        """
        Snapshot of pool utilisation.

        The score averages slot availability and a response-time score
        (100 minus one point per 100ms of average hold time), scaled down by
        the share of acquisitions that timed out.
        """
        self._reap_idle()
        active = len(self._active)
        idle = len(self._idle)
        max_connections = self.config.max_connections
        average_ms = self._hold_times.value

        availability = max(0.0, (max_connections - active) / max_connections * 100)
        response_score = max(0.0, 100 - average_ms / 100)
        timeout_ratio = (
            self._acquire_timeouts / self._total_acquires if self._total_acquires else 0.0
        )
        score = round((availability + response_score) / 2 * (1 - timeout_ratio))

        return ConnectionPoolHealth(
            active_connections=active,
            idle_connections=idle,
            total_connections=active + idle,
            health_score=min(100, max(0, score)),
            average_response_time_ms=round(average_ms, 2),
            total_acquires=self._total_acquires,
            acquire_timeouts=self._acquire_timeouts,
            waiting=self._waiting,
        )
