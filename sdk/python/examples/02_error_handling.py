#!/usr/bin/env python3
"""
02_error_handling.py - Error Handling Patterns

This example demonstrates:
- Connection error handling
- Server error handling
- Retry configuration
- Telling transient errors from permanent ones

Prerequisites:
    - A Q-Distributed-Database node running on localhost:7000
    - pyqdb installed

Run with:
    python 02_error_handling.py
"""

import asyncio

from pyqdb import Client, OpCode, Request, RetryConfig
from pyqdb.exceptions import (
    AuthenticationError,
    ConnectionError,
    QDBError,
    QuerySyntaxError,
    is_retryable,
)


async def connection_error_handling():
    """Handling connection errors"""
    print("Connection Error Handling")
    print("-" * 50)

    client = Client("localhost:19999", timeout_ms=2000)
    try:
        print("Attempting to connect to invalid server...")
        await client.connect()
    except ConnectionError as e:
        print(f"✓ Caught connection error ({e.kind.value}): {e}")
    finally:
        await client.disconnect()


async def server_error_handling():
    """Handling errors reported by the server"""
    print("\nServer Error Handling")
    print("-" * 50)

    async with Client("localhost:7000", username="admin", password="secret") as client:
        try:
            await client.send_request(Request(OpCode.QUERY, b"SELEC 1"))
        except QuerySyntaxError as e:
            print(f"✓ Syntax error at position {e.position}: {e}")
        except QDBError as e:
            print(f"✓ Caught {type(e).__name__}, retryable={is_retryable(e)}")


async def retry_configuration():
    """Tuning retries per request"""
    print("\nRetry Configuration")
    print("-" * 50)

    async with Client("localhost:7000", username="admin", password="secret", retry=RetryConfig.aggressive()) as client:
        # Fail fast for this one request
        try:
            response = await client.send_request(
                Request(OpCode.QUERY, b"SELECT 1"),
                retry_config=RetryConfig.no_retry(),
            )
            print(f"✓ Got {len(response.body)} bytes")
        except AuthenticationError as e:
            print(f"✗ Authentication problem: {e}")
        except QDBError as e:
            print(f"✗ Gave up: {e}")


async def main():
    await connection_error_handling()
    await server_error_handling()
    await retry_configuration()


if __name__ == "__main__":
    asyncio.run(main())
