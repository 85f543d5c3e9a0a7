#!/usr/bin/env python3
"""
03_cluster_health.py - Connection Pooling and Node Health

This example demonstrates:
- Connecting to several nodes with one client
- Subscribing to node health changes (ReactiveX)
- Running health checks across the cluster
- Borrowing a pooled connection directly

Prerequisites:
    - Q-Distributed-Database nodes on localhost:7000-7002
    - pyqdb installed

Run with:
    python 03_cluster_health.py
"""

import asyncio

from reactivex import operators as ops

from pyqdb import Client, PoolConfig


async def main():
    client = Client(
        ["localhost:7000", "localhost:7001", "localhost:7002"],
        username="admin",
        password="secret",
        pool=PoolConfig(min_connections=3, max_connections=10),
    )

    # Print only nodes going down
    client.health_events.pipe(
        ops.filter(lambda health: not health.is_healthy),
    ).subscribe(lambda health: print(f"✗ Node {health.node_id} is unhealthy"))

    async with client:
        for health in await client.health_check_all_nodes():
            state = "healthy" if health.is_healthy else f"{health.consecutive_failures} failures"
            print(f"Node {health.node_id}: {state}")

        summary = client.cluster_health()
        print(f"{summary.healthy_nodes}/{summary.total_nodes} nodes healthy")

        async with client.connection() as conn:
            await conn.ping()
            print(f"✓ Pinged node {conn.node_id}, features: {sorted(f.name for f in conn.features)}")


if __name__ == "__main__":
    asyncio.run(main())
