# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
Connection pooling and node health tracking.

The ConnectionManager owns the pool and the health of every configured node.
Connections are opened to healthy nodes in round-robin order, reused while
they stay usable and evicted when they go stale, break or their node turns
unhealthy.

Example:
    >>> manager = ConnectionManager(ClientConfig(hosts="n1:7000,n2:7000"))
    >>> async with manager.connection() as conn:
    ...     await conn.ping()
    >>> await manager.disconnect()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import ssl
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Callable

from reactivex import Observable
from reactivex.subject import Subject

from .connection import Connection
from .exceptions import ClientClosedError, InternalError, NetworkError, QDBError, TimeoutError
from .models import ClientConfig, PoolConfig
from .types import ClusterHealth, NodeHealth

logger = logging.getLogger(__name__)


@dataclass
class PooledConnection:
    """A connection plus the bookkeeping the pool needs for eviction."""

    connection: Connection
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)

    @property
    def node_id(self) -> int:
        return self.connection.node_id

    def age_ms(self, now: float) -> float:
        return (now - self.created_at) * 1000.0

    def idle_ms(self, now: float) -> float:
        return (now - self.last_used) * 1000.0

    def touch(self) -> None:
        self.last_used = time.monotonic()


class ConnectionPool:
    """
    Bounded set of connections.

    Every method must be called with ``condition`` held. A slot is counted
    from the moment it is reserved, so the pool never exceeds
    ``max_connections`` even while connections are being opened.
    """

    def __init__(self, config: PoolConfig) -> None:
        self.config = config
        self.condition = asyncio.Condition()
        self._idle: deque[PooledConnection] = deque()
        self._in_use: dict[int, PooledConnection] = {}
        self._reserved = 0

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def total(self) -> int:
        return len(self._idle) + len(self._in_use) + self._reserved

    def is_expired(self, pooled: PooledConnection, now: float) -> bool:
        """True once the connection outlived max_lifetime_ms (0 disables the limit)."""
        lifetime = self.config.max_lifetime_ms
        return lifetime > 0 and pooled.age_ms(now) >= lifetime

    def is_stale(self, pooled: PooledConnection, now: float) -> bool:
        """True once the connection sat idle past idle_timeout_ms (0 disables the limit)."""
        idle = self.config.idle_timeout_ms
        return idle > 0 and pooled.idle_ms(now) >= idle

    def take_idle(
        self, node_ok: Callable[[int], bool]
    ) -> tuple[PooledConnection | None, list[PooledConnection]]:
        """
        Pop the first reusable idle connection.

        Returns:
            The connection (moved to in-use) or None, and the idle
            connections removed along the way, which the caller must close.
        """
        now = time.monotonic()
        evicted: list[PooledConnection] = []
        while self._idle:
            pooled = self._idle.popleft()
            if (
                not pooled.connection.is_usable
                or self.is_stale(pooled, now)
                or self.is_expired(pooled, now)
                or not node_ok(pooled.node_id)
            ):
                evicted.append(pooled)
                continue
            pooled.touch()
            self._in_use[id(pooled.connection)] = pooled
            return pooled, evicted
        return None, evicted

    def try_reserve(self) -> bool:
        if self.total >= self.config.max_connections:
            return False
        self._reserved += 1
        return True

    def cancel_reservation(self) -> None:
        self._reserved -= 1

    def add_acquired(self, pooled: PooledConnection) -> None:
        """Fill a reserved slot with a connection handed to a caller."""
        self._reserved -= 1
        self._in_use[id(pooled.connection)] = pooled

    def add_idle(self, pooled: PooledConnection) -> None:
        """Fill a reserved slot with an idle connection."""
        self._reserved -= 1
        self._idle.append(pooled)

    def checkout(self, connection: Connection) -> PooledConnection | None:
        """Remove an in-use connection, or return None if the pool does not own it."""
        return self._in_use.pop(id(connection), None)

    def put_idle(self, pooled: PooledConnection) -> None:
        pooled.touch()
        self._idle.append(pooled)

    def drain(self) -> list[PooledConnection]:
        """Remove and return every connection, idle and in use."""
        drained = list(self._idle) + list(self._in_use.values())
        self._idle.clear()
        self._in_use.clear()
        return drained


class ConnectionManager:
    """
    Pool of connections across the cluster plus per-node health.

    Nodes are numbered from 1 in the order of ``config.get_hosts()``.
    Health changes are published on ``health_events`` as NodeHealth
    snapshots.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self._config = config
        self._pool_config = config.pool
        self._ssl_context = ssl_context if ssl_context is not None else config.tls_config().create_context()
        self._nodes: dict[int, str] = {i: host for i, host in enumerate(config.get_hosts(), start=1)}
        self._health: dict[int, NodeHealth] = {node_id: NodeHealth(node_id) for node_id in self._nodes}
        self._round_robin = itertools.count()
        self._pool = ConnectionPool(config.pool)
        self._closed = False
        self._health_subject: Subject[NodeHealth] = Subject()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def nodes(self) -> dict[int, str]:
        """Configured nodes by node id."""
        return dict(self._nodes)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def health_events(self) -> Observable[NodeHealth]:
        """Observable of NodeHealth snapshots, emitted when a node turns healthy or unhealthy."""
        return self._health_subject

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError("ConnectionManager")

    # =========================================================================
    # Acquire / Release
    # =========================================================================

    async def acquire(self, timeout_ms: int | None = None) -> Connection:
        """
        Get a connection to a healthy node.

        Reuses an idle connection when possible, otherwise opens a new one
        if the pool has room, otherwise waits for a release.

        Args:
            timeout_ms: Overall deadline for getting a connection, covering
                the wait for a free slot and opening a new connection.
                Defaults to ``pool.connection_timeout_ms``.

        Raises:
            TimeoutError: If no connection became available in time.
            ClientClosedError: If the manager was disconnected.
        """
        if timeout_ms is None:
            timeout_ms = self._pool_config.connection_timeout_ms
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        condition = self._pool.condition

        while True:
            async with condition:
                self._ensure_open()
                pooled, evicted = self._pool.take_idle(self.is_node_healthy)
                reserved = pooled is None and self._pool.try_reserve()
                if pooled is None and not reserved and not evicted:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise TimeoutError("acquire_connection", timeout_ms)
                    try:
                        await asyncio.wait_for(condition.wait(), remaining)
                    except asyncio.TimeoutError:
                        raise TimeoutError("acquire_connection", timeout_ms) from None
                    continue

            for stale in evicted:
                logger.debug("Evicting idle connection to node %d", stale.node_id)
                await self._close_quietly(stale.connection)
            if pooled is not None:
                return pooled.connection
            if reserved:
                return await self._open_reserved(deadline, timeout_ms)

    async def _open_reserved(self, deadline: float, timeout_ms: int) -> Connection:
        condition = self._pool.condition
        try:
            conn = await self._open_to_next_node(deadline, timeout_ms)
        except BaseException:
            async with condition:
                self._pool.cancel_reservation()
                condition.notify()
            raise

        async with condition:
            if self._closed:
                self._pool.cancel_reservation()
                closed = True
            else:
                self._pool.add_acquired(PooledConnection(conn))
                closed = False
        if closed:
            await self._close_quietly(conn)
            raise ClientClosedError("ConnectionManager")
        return conn

    async def release(self, connection: Connection, *, discard: bool = False) -> None:
        """
        Return a connection to the pool.

        The connection is evicted instead if ``discard`` is set, it is
        broken or closed, it exceeded its lifetime or its node is unhealthy.
        """
        condition = self._pool.condition
        async with condition:
            pooled = self._pool.checkout(connection)
            if pooled is None:
                # Already drained by disconnect(), or never ours.
                reason = "not owned by pool"
            elif discard:
                reason = "discarded"
            elif not connection.is_usable:
                reason = "broken"
            elif self._pool.is_expired(pooled, time.monotonic()):
                reason = "max lifetime exceeded"
            elif not self.is_node_healthy(connection.node_id):
                reason = "node unhealthy"
            else:
                reason = None
                self._pool.put_idle(pooled)
            condition.notify()

        if reason is not None:
            if reason == "node unhealthy":
                logger.warning("Evicting connection to unhealthy node %d", connection.node_id)
            else:
                logger.debug("Evicting connection to node %d: %s", connection.node_id, reason)
            await self._close_quietly(connection)

    @asynccontextmanager
    async def connection(self, timeout_ms: int | None = None) -> AsyncIterator[Connection]:
        """
        Acquire a connection for the duration of a block.

        The connection is released on exit; a connection broken by the
        block is evicted rather than reused.
        """
        conn = await self.acquire(timeout_ms)
        try:
            yield conn
        finally:
            await self.release(conn)

    def _candidate_nodes(self) -> list[int]:
        """Healthy nodes in round-robin order, or every node when none is healthy."""
        if not self._nodes:
            return []
        nodes = [node_id for node_id in self._nodes if self.is_node_healthy(node_id)]
        if not nodes:
            logger.warning("No healthy nodes; trying all %d configured nodes", len(self._nodes))
            nodes = list(self._nodes)
        start = next(self._round_robin) % len(nodes)
        return nodes[start:] + nodes[:start]

    async def _open_to_next_node(self, deadline: float | None = None, timeout_ms: int = 0) -> Connection:
        """Open a connection to the first reachable candidate node, within deadline if given."""
        loop = asyncio.get_running_loop()
        last_error: QDBError | None = None
        for node_id in self._candidate_nodes():
            open_timeout_ms = None
            if deadline is not None:
                remaining_ms = int((deadline - loop.time()) * 1000)
                if remaining_ms <= 0:
                    raise TimeoutError("acquire_connection", timeout_ms) from last_error
                open_timeout_ms = min(remaining_ms, self._pool_config.connection_timeout_ms)
            try:
                conn = await self._open(node_id, open_timeout_ms)
            except QDBError as e:
                logger.warning("Failed to connect to node %d (%s): %s", node_id, self._nodes[node_id], e)
                self.record_failure(node_id)
                last_error = e
                continue
            self.record_success(node_id)
            return conn
        if last_error is None:
            raise InternalError("ConnectionManager", "no nodes configured")
        raise last_error

    async def _open(self, node_id: int, timeout_ms: int | None = None) -> Connection:
        return await Connection.open(
            self._nodes[node_id],
            node_id,
            config=self._config,
            ssl_context=self._ssl_context,
            timeout_ms=timeout_ms,
        )

    async def _close_quietly(self, connection: Connection) -> None:
        try:
            await connection.close()
        except NetworkError as e:
            logger.warning("Failed to close connection to node %d: %s", connection.node_id, e)

    async def warm_up(self) -> int:
        """
        Open idle connections until the pool holds ``min_connections``.

        Failures stop the warm-up without raising.

        Returns:
            Number of connections opened.
        """
        condition = self._pool.condition
        target = self._pool_config.min_connections
        opened = 0
        while True:
            async with condition:
                self._ensure_open()
                if self._pool.total >= target or not self._pool.try_reserve():
                    break
            try:
                conn = await self._open_to_next_node()
            except QDBError as e:
                async with condition:
                    self._pool.cancel_reservation()
                    condition.notify()
                logger.warning("Pool warm-up stopped after %d connections: %s", opened, e)
                break
            async with condition:
                self._pool.add_idle(PooledConnection(conn))
                condition.notify()
            opened += 1
        logger.debug("Pool warm-up opened %d connections", opened)
        return opened

    # =========================================================================
    # Health
    # =========================================================================

    def is_node_healthy(self, node_id: int) -> bool:
        health = self._health.get(node_id)
        return health is not None and health.is_healthy

    def get_node_health(self, node_id: int) -> NodeHealth:
        """Snapshot of one node's health."""
        return replace(self._node(node_id))

    def node_healths(self) -> list[NodeHealth]:
        """Snapshots of every node's health, ordered by node id."""
        return [replace(self._health[node_id]) for node_id in sorted(self._health)]

    def cluster_health(self) -> ClusterHealth:
        healths = self.node_healths()
        return ClusterHealth(
            total_nodes=len(self._nodes),
            healthy_nodes=sum(1 for h in healths if h.is_healthy),
            node_healths=healths,
        )

    def _node(self, node_id: int) -> NodeHealth:
        self._ensure_open()
        health = self._health.get(node_id)
        if health is None:
            raise InternalError("ConnectionManager", f"Unknown node {node_id}")
        return health

    def _publish(self, health: NodeHealth) -> None:
        self._health_subject.on_next(replace(health))

    def mark_node_healthy(self, node_id: int) -> None:
        health = self._node(node_id)
        was_healthy = health.is_healthy
        health.mark_healthy()
        if not was_healthy:
            logger.info("Node %d (%s) is healthy again", node_id, self._nodes[node_id])
            self._publish(health)

    def mark_node_unhealthy(self, node_id: int) -> None:
        health = self._node(node_id)
        was_healthy = health.is_healthy
        health.mark_unhealthy()
        if was_healthy:
            logger.warning("Node %d (%s) marked unhealthy", node_id, self._nodes[node_id])
            self._publish(health)

    def record_failure(self, node_id: int) -> None:
        """Count a failed operation against a node."""
        health = self._health.get(node_id)
        if health is None:
            return
        was_healthy = health.is_healthy
        health.record_failure(self._pool_config.unhealthy_threshold)
        if was_healthy and not health.is_healthy:
            logger.warning(
                "Node %d (%s) unhealthy after %d consecutive failures",
                node_id,
                self._nodes[node_id],
                health.consecutive_failures,
            )
            self._publish(health)

    def record_success(self, node_id: int) -> None:
        """Reset a node's failure count without reviving it."""
        health = self._health.get(node_id)
        if health is not None:
            health.record_success()

    async def health_check_all_nodes(self) -> list[NodeHealth]:
        """
        Ping every configured node on a fresh connection, concurrently.

        Returns:
            Health snapshots of all nodes after the check.
        """
        self._ensure_open()
        await asyncio.gather(*(self._check_node(node_id) for node_id in self._nodes))
        return self.node_healths()

    async def _check_node(self, node_id: int) -> None:
        try:
            conn = await self._open(node_id)
            try:
                await conn.ping(self._config.timeout_ms)
            finally:
                await self._close_quietly(conn)
        except QDBError as e:
            logger.debug("Health check of node %d failed: %s", node_id, e)
            self.record_failure(node_id)
        else:
            self.mark_node_healthy(node_id)

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def disconnect(self) -> None:
        """
        Close every connection and reject further acquisitions.

        Close failures are logged and do not stop the shutdown.
        """
        condition = self._pool.condition
        async with condition:
            if self._closed:
                return
            self._closed = True
            drained = self._pool.drain()
            condition.notify_all()

        for pooled in drained:
            await self._close_quietly(pooled.connection)
        self._health.clear()
        self._health_subject.on_completed()
        logger.info("Connection manager closed %d connections", len(drained))
