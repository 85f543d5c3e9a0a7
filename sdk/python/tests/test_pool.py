# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""Tests for connection pooling and node health."""

import asyncio

import pytest

from conftest import make_config
from pyqdb.exceptions import ClientClosedError, ConnectionRefusedError, InternalError, TimeoutError
from pyqdb.models import PoolConfig
from pyqdb.pool import ConnectionManager


def pool_config(**overrides) -> PoolConfig:
    options = {"min_connections": 0, "max_connections": 4, "connection_timeout_ms": 1000}
    options.update(overrides)
    return PoolConfig(**options)


class TestAcquireRelease:
    """Tests for acquiring and releasing connections."""

    @pytest.mark.asyncio
    async def test_reuse(self, node) -> None:
        """Test that sequential acquisitions reuse one connection."""
        manager = ConnectionManager(make_config(node.address))
        try:
            first = await manager.acquire()
            await manager.release(first)
            second = await manager.acquire()
            await manager.release(second)

            assert first is second
            assert node.connections_opened == 1
            assert manager.pool.idle_count == 1
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_context_manager(self, node) -> None:
        manager = ConnectionManager(make_config(node.address))
        try:
            async with manager.connection() as conn:
                await conn.ping()
                assert manager.pool.in_use_count == 1
            assert manager.pool.in_use_count == 0
            assert manager.pool.idle_count == 1
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_broken_connection_evicted(self, node) -> None:
        """Test that a connection broken inside the block is not reused."""
        manager = ConnectionManager(make_config(node.address))
        try:
            async with manager.connection() as conn:
                conn.mark_broken()
            assert conn.is_closed
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_discard(self, node) -> None:
        manager = ConnectionManager(make_config(node.address))
        try:
            conn = await manager.acquire()
            await manager.release(conn, discard=True)
            assert conn.is_closed
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_exhausted_pool_times_out(self, node) -> None:
        """Test that acquire gives up when the pool stays full."""
        manager = ConnectionManager(make_config(node.address, pool=pool_config(max_connections=1)))
        try:
            held = await manager.acquire()
            with pytest.raises(TimeoutError) as exc_info:
                await manager.acquire(timeout_ms=50)
            assert exc_info.value.operation == "acquire_connection"
            await manager.release(held)
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_waiter_gets_released_connection(self, node) -> None:
        """Test that a waiting acquire receives the next released connection."""
        manager = ConnectionManager(make_config(node.address, pool=pool_config(max_connections=1)))
        try:
            held = await manager.acquire()
            waiter = asyncio.create_task(manager.acquire(timeout_ms=1000))
            await asyncio.sleep(0.01)
            assert not waiter.done()

            await manager.release(held)
            conn = await waiter
            assert conn is held
            await manager.release(conn)
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_idle_timeout(self, node) -> None:
        """Test that idle connections past the timeout are replaced."""
        manager = ConnectionManager(make_config(node.address, pool=pool_config(idle_timeout_ms=20)))
        try:
            first = await manager.acquire()
            await manager.release(first)
            await asyncio.sleep(0.05)
            second = await manager.acquire()
            await manager.release(second)

            assert second is not first
            assert first.is_closed
            assert node.connections_opened == 2
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_max_lifetime(self, node) -> None:
        """Test that connections past their lifetime are evicted on release."""
        manager = ConnectionManager(make_config(node.address, pool=pool_config(max_lifetime_ms=20)))
        try:
            conn = await manager.acquire()
            await asyncio.sleep(0.05)
            await manager.release(conn)
            assert conn.is_closed
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_failover(self, node, unused_address) -> None:
        """Test that a failed open moves on to the next node."""
        manager = ConnectionManager(make_config(unused_address, node.address))
        try:
            for _ in range(4):
                conn = await manager.acquire()
                assert conn.node_id == 2
                await manager.release(conn, discard=True)
            assert manager.get_node_health(1).consecutive_failures >= 1
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_all_nodes_down(self, unused_address) -> None:
        manager = ConnectionManager(make_config(unused_address))
        try:
            with pytest.raises(ConnectionRefusedError):
                await manager.acquire()
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_deadline_covers_opening(self, node) -> None:
        """Test that a slow node cannot stretch acquire past its timeout."""
        manager = ConnectionManager(make_config(node.address))
        node.handshake_delay_s = 0.5
        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            with pytest.raises(TimeoutError):
                await manager.acquire(timeout_ms=100)
            assert loop.time() - started < 0.4
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_no_candidate_nodes(self) -> None:
        manager = ConnectionManager(make_config("a:7000"))
        manager._candidate_nodes = lambda: []
        try:
            with pytest.raises(InternalError, match="no nodes configured"):
                await manager.acquire()
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()


class TestHealthRouting:
    """Tests for routing around unhealthy nodes."""

    @pytest.mark.asyncio
    async def test_unhealthy_node_never_chosen(self, cluster) -> None:
        """Test that no connection is opened to an unhealthy node."""
        manager = ConnectionManager(make_config(*(n.address for n in cluster)))
        try:
            manager.mark_node_unhealthy(2)
            for _ in range(50):
                conn = await manager.acquire()
                assert conn.node_id != 2
                await manager.release(conn, discard=True)

            assert cluster[1].connections_opened == 0
            assert cluster[0].connections_opened > 0
            assert cluster[2].connections_opened > 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_round_robin(self, cluster) -> None:
        """Test that new connections spread across healthy nodes."""
        manager = ConnectionManager(make_config(*(n.address for n in cluster)))
        try:
            held = [await manager.acquire() for _ in range(3)]
            assert sorted(c.node_id for c in held) == [1, 2, 3]
            for conn in held:
                await manager.release(conn)
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unhealthy_connection_evicted_on_release(self, cluster) -> None:
        """Test that a connection completes its work, then is evicted."""
        manager = ConnectionManager(make_config(cluster[0].address))
        try:
            conn = await manager.acquire()
            manager.mark_node_unhealthy(1)
            await conn.ping()
            await manager.release(conn)
            assert conn.is_closed
            assert manager.pool.idle_count == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_last_resort(self, node) -> None:
        """Test that all nodes are tried when none is healthy."""
        manager = ConnectionManager(make_config(node.address))
        try:
            manager.mark_node_unhealthy(1)
            conn = await manager.acquire()
            assert conn.node_id == 1
            await manager.release(conn)
        finally:
            await manager.disconnect()


class TestHealth:
    """Tests for health tracking and checks."""

    @pytest.mark.asyncio
    async def test_health_check(self, cluster, unused_address) -> None:
        """Test that failing checks mark a node unhealthy at the threshold."""
        addresses = [cluster[0].address, unused_address]
        manager = ConnectionManager(make_config(*addresses))
        events = []
        manager.health_events.subscribe(events.append)
        try:
            for _ in range(2):
                await manager.health_check_all_nodes()
            assert manager.is_node_healthy(2)
            assert manager.get_node_health(2).consecutive_failures == 2

            healths = await manager.health_check_all_nodes()
            assert [h.is_healthy for h in healths] == [True, False]
            assert cluster[0].pings == 3
            assert len(events) == 1
            assert events[0].node_id == 2
            assert not events[0].is_healthy

            health = manager.cluster_health()
            assert health.total_nodes == 2
            assert health.healthy_nodes == 1
            assert health.is_healthy
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_health_check_revives(self, node) -> None:
        """Test that a successful check marks a node healthy again."""
        manager = ConnectionManager(make_config(node.address))
        events = []
        manager.health_events.subscribe(events.append)
        try:
            manager.mark_node_unhealthy(1)
            await manager.health_check_all_nodes()
            assert manager.is_node_healthy(1)
            assert [e.is_healthy for e in events] == [False, True]
        finally:
            await manager.disconnect()

    def test_record_failure_threshold(self) -> None:
        """Test that operation failures count toward the threshold."""
        manager = ConnectionManager(make_config("a:7000", pool=pool_config(unhealthy_threshold=2)))
        manager.record_failure(1)
        assert manager.is_node_healthy(1)
        manager.record_success(1)
        manager.record_failure(1)
        assert manager.is_node_healthy(1)
        manager.record_failure(1)
        assert not manager.is_node_healthy(1)

        manager.record_success(1)
        assert not manager.is_node_healthy(1)

    def test_snapshots_are_copies(self) -> None:
        manager = ConnectionManager(make_config("a:7000"))
        snapshot = manager.get_node_health(1)
        snapshot.is_healthy = False
        assert manager.is_node_healthy(1)

    def test_unknown_node(self) -> None:
        manager = ConnectionManager(make_config("a:7000"))
        with pytest.raises(InternalError):
            manager.mark_node_unhealthy(9)


class TestLifecycle:
    """Tests for warm-up and shutdown."""

    @pytest.mark.asyncio
    async def test_warm_up(self, node) -> None:
        """Test that warm-up fills the pool to min_connections."""
        manager = ConnectionManager(make_config(node.address, pool=pool_config(min_connections=3)))
        try:
            assert await manager.warm_up() == 3
            assert manager.pool.idle_count == 3
            assert node.connections_opened == 3
            assert await manager.warm_up() == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_warm_up_failure_is_quiet(self, unused_address) -> None:
        manager = ConnectionManager(make_config(unused_address, pool=pool_config(min_connections=2)))
        try:
            assert await manager.warm_up() == 0
            assert manager.pool.total == 0
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect(self, node) -> None:
        """Test that disconnect closes everything and rejects later use."""
        manager = ConnectionManager(make_config(node.address))
        completed = []
        manager.health_events.subscribe(on_completed=lambda: completed.append(True))

        idle = await manager.acquire()
        held = await manager.acquire()
        await manager.release(idle)
        await manager.disconnect()

        assert idle.is_closed
        assert held.is_closed
        assert completed == [True]
        with pytest.raises(ClientClosedError):
            await manager.acquire()

        await manager.release(held)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_wakes_waiters(self, node) -> None:
        manager = ConnectionManager(make_config(node.address, pool=pool_config(max_connections=1)))
        await manager.acquire()
        waiter = asyncio.create_task(manager.acquire(timeout_ms=1000))
        await asyncio.sleep(0.01)
        await manager.disconnect()
        with pytest.raises(ClientClosedError):
            await waiter
