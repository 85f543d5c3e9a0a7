# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
PyQDB Python Client.

The client ties together the connection pool, node health tracking,
authentication and retries:
- Connections to healthy nodes are pooled and reused
- Requests carry a valid session token, renewed transparently
- Transient failures are retried with exponential backoff

Usage Patterns:

    # Pattern 1: Context manager (recommended for applications)
    from pyqdb import Client
    async with Client("localhost:7000", username="admin", password="secret") as client:
        response = await client.send_request(Request(OpCode.QUERY, b"SELECT 1"))
    # Connections are closed when exiting the block

    # Pattern 2: Explicit lifecycle management
    client = await connect("node1:7000,node2:7000")
    try:
        health = await client.health_check_all_nodes()
    finally:
        await client.disconnect()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from reactivex import Observable

from .auth import AuthenticationManager
from .binary import Request, Response, encode_request
from .connection import Connection
from .exceptions import QDBError, TokenExpiredError, is_retryable
from .models import ClientConfig, RetryConfig
from .pool import ConnectionManager
from .retry import RetryExecutor
from .tls import TLSConfig
from .types import AuthToken, ClusterHealth, NodeHealth

logger = logging.getLogger(__name__)


class Client:
    """
    Asynchronous client for a Q-Distributed-Database cluster.

    Example:
        >>> client = Client(["node1:7000", "node2:7000"], username="admin", password="secret")
        >>> await client.connect()
        >>> response = await client.send_request(Request(OpCode.QUERY, b"SELECT 1"))
        >>> await client.disconnect()
    """

    def __init__(
        self,
        hosts: str | list[str] | None = None,
        *,
        config: ClientConfig | None = None,
        tls: TLSConfig | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the client. No connection is made until connect().

        Args:
            hosts: Comma-separated addresses or a list of addresses.
                Defaults to "localhost:7000"; overrides config.hosts when given.
            config: Optional ClientConfig object.
            tls: Optional TLSConfig for secure connections.
            **kwargs: Override config options (username, timeout_ms, etc.)
        """
        if config is None:
            config = ClientConfig(hosts=hosts or "localhost:7000", **kwargs)
        else:
            config = config.model_copy(deep=True)
            if hosts:
                config.hosts = hosts
            for key, value in kwargs.items():
                if hasattr(config, key):
                    setattr(config, key, value)

        if tls:
            config.enable_tls = tls.enabled
            config.tls_cert_file = tls.cert_file
            config.tls_key_file = tls.key_file
            config.tls_ca_file = tls.ca_file
            config.tls_server_name = tls.server_name
            config.tls_insecure_skip_verify = tls.insecure_skip_verify

        self._config = config
        self._manager = ConnectionManager(config)
        self._auth = AuthenticationManager.from_config(config)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._manager

    @property
    def auth(self) -> AuthenticationManager:
        return self._auth

    @property
    def is_authenticated(self) -> bool:
        return self._auth.is_authenticated

    @property
    def health_events(self) -> Observable[NodeHealth]:
        """NodeHealth snapshots emitted when a node turns healthy or unhealthy."""
        return self._manager.health_events

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> Client:
        """
        Open the first connection, authenticate if credentials are set and
        warm up the pool.

        Raises:
            ConnectionError: If no node can be reached.
            AuthenticationError: If authentication fails.
        """
        async with self._manager.connection() as conn:
            if self._auth.credentials is not None:
                await self._auth.authenticate(conn)
        await self._manager.warm_up()
        logger.info("Connected to cluster (%d nodes)", len(self._manager.nodes))
        return self

    async def disconnect(self) -> None:
        """Close all connections. Later operations raise ClientClosedError."""
        await self._manager.disconnect()
        self._auth.invalidate()
        logger.info("Disconnected from cluster")

    async def __aenter__(self) -> Client:
        return await self.connect()

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    # =========================================================================
    # Connections
    # =========================================================================

    async def acquire_connection(self, timeout_ms: int | None = None) -> Connection:
        """Take a connection from the pool; release it with release_connection()."""
        return await self._manager.acquire(timeout_ms)

    async def release_connection(self, connection: Connection, *, discard: bool = False) -> None:
        await self._manager.release(connection, discard=discard)

    @asynccontextmanager
    async def connection(self, timeout_ms: int | None = None) -> AsyncIterator[Connection]:
        """Acquire a pooled connection for the duration of a block."""
        async with self._manager.connection(timeout_ms) as conn:
            yield conn

    # =========================================================================
    # Authentication
    # =========================================================================

    async def authenticate(self) -> AuthToken:
        """Authenticate with the configured credentials."""
        async with self._manager.connection() as conn:
            return await self._auth.authenticate(conn)

    async def get_valid_token(self) -> AuthToken:
        """Return a token valid beyond the refresh margin, renewing it if needed."""
        async with self._manager.connection() as conn:
            return await self._auth.get_valid_token(conn)

    async def logout(self) -> None:
        """Invalidate the session; the local token is dropped even if the request fails."""
        if self._auth.token is None:
            return
        async with self._manager.connection() as conn:
            await self._auth.logout(conn)

    # =========================================================================
    # Requests
    # =========================================================================

    async def send_request(
        self,
        request: Request,
        *,
        retry_config: RetryConfig | None = None,
    ) -> Response:
        """
        Send a request to a healthy node and return its response.

        Transient failures are retried per ``retry_config`` (default: the
        client's retry configuration). A token rejected as expired by the
        server is renewed and the request resent once.

        Raises:
            QDBError: The server's error, or the last transient error once
                retries are exhausted.
        """
        executor = RetryExecutor(retry_config or self._config.retry)
        return await executor.execute(lambda: self._send_once(request))

    async def _send_once(self, request: Request) -> Response:
        async with self._manager.connection() as conn:
            try:
                response = await self._send_with_reauth(conn, request)
            except QDBError as e:
                if is_retryable(e):
                    self._manager.record_failure(conn.node_id)
                raise
            self._manager.record_success(conn.node_id)
            return response

    async def _send_with_reauth(self, conn: Connection, request: Request) -> Response:
        try:
            return await self._send_on(conn, request)
        except TokenExpiredError:
            if self._auth.credentials is None:
                raise
            logger.info("Server reported an expired token, re-authenticating")
            self._auth.invalidate()
            return await self._send_on(conn, request)

    async def _send_on(self, conn: Connection, request: Request) -> Response:
        signature = b""
        if self._auth.credentials is not None:
            signature = (await self._auth.get_valid_token(conn)).signature
        payload = encode_request(request.op, request.body, signature)
        message = await conn.send_request(request.message_type, payload, self._config.timeout_ms)
        return Response(
            node_id=conn.node_id,
            message_type=message.message_type,
            sequence_number=message.sequence_number,
            body=message.payload,
        )

    # =========================================================================
    # Health
    # =========================================================================

    async def health_check_all_nodes(self) -> list[NodeHealth]:
        """Ping every node and return the updated health of each."""
        return await self._manager.health_check_all_nodes()

    def cluster_health(self) -> ClusterHealth:
        return self._manager.cluster_health()


async def connect(
    hosts: str | list[str] = "localhost:7000",
    *,
    username: str = "",
    password: str | None = None,
    tls: TLSConfig | None = None,
    **kwargs: Any,
) -> Client:
    """
    Create and connect a PyQDB client.

    Args:
        hosts: Server address(es). Can be:
            - Single server: "localhost:7000"
            - Multiple servers: "node1:7000,node2:7000"
            - List: ["node1:7000", "node2:7000"]
        username: Optional username for authentication.
        password: Optional password for authentication.
        tls: TLSConfig object for secure connections.
        **kwargs: Additional configuration options.

    Returns:
        Connected Client instance.

    Examples:
        >>> client = await connect("localhost:7000", username="admin", password="secret")

        # Mutual TLS
        >>> tls = TLSConfig(enabled=True, cert_file="client.crt", key_file="client.key", ca_file="ca.crt")
        >>> client = await connect("node1:7443", tls=tls)

    Note:
        Remember to await client.disconnect() when done, or use the async
        context manager.
    """
    client = Client(hosts, tls=tls, username=username, password=password, **kwargs)
    return await client.connect()
