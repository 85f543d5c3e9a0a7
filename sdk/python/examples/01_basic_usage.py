#!/usr/bin/env python3
"""
01_basic_usage.py - PyQDB Basic Client Example

This is the foundational example for the PyQDB client core.

What this example demonstrates:
- Using connect() for one-liner connection and authentication
- Sending a request and reading the response
- Proper resource cleanup with the async context manager

Key Concepts:
- connect(): Connects, authenticates and warms up the pool
- Request: An operation code plus its encoded body
- Response: The node that answered plus the response body

Prerequisites:
    - A Q-Distributed-Database node running on localhost:7000 (default port)
    - pyqdb installed: pip install pyqdb

Run with:
    python 01_basic_usage.py
"""

import asyncio
import logging

from pyqdb import Client, OpCode, Request, connect


async def main():
    logging.basicConfig(level=logging.INFO)

    # Connect using one-liner
    print("Connecting to localhost:7000...")
    client = await connect("localhost:7000", username="admin", password="secret")

    try:
        response = await client.send_request(Request(OpCode.QUERY, b"SELECT 1"))
        print(f"✓ Node {response.node_id} answered: {response.body!r}")
    finally:
        # Always disconnect the client
        await client.disconnect()

    # Same thing with the async context manager
    async with Client("localhost:7000", username="admin", password="secret") as client:
        token = await client.get_valid_token()
        print(f"✓ Authenticated as user {token.user_id}, roles: {sorted(r.value for r in token.roles)}")


if __name__ == "__main__":
    asyncio.run(main())
