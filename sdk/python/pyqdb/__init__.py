# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
PyQDB - Python Client Core for Q-Distributed-Database.

An asyncio client core with support for:
- Connection pooling across cluster nodes
- Node health tracking and automatic failover
- Token authentication with transparent renewal
- Retries with exponential backoff
- TLS/SSL encryption and LZ4 compression

Quick Start:
    >>> from pyqdb import connect, OpCode, Request
    >>>
    >>> client = await connect("localhost:7000", username="admin", password="secret")
    >>> response = await client.send_request(Request(OpCode.QUERY, b"SELECT 1"))
    >>> await client.disconnect()

Context Manager (Recommended for applications):
    >>> from pyqdb import Client
    >>>
    >>> async with Client("localhost:7000") as client:
    ...     health = await client.health_check_all_nodes()
    # Connections are closed when exiting the block

TLS Connection:
    >>> client = await connect(
    ...     "localhost:7443",
    ...     tls=TLSConfig(enabled=True, ca_file="/path/to/ca.crt"),
    ... )

High Availability (Multiple Servers):
    >>> client = await connect(["node1:7000", "node2:7000", "node3:7000"])
    >>> # Unhealthy nodes are skipped until they recover
"""

from .auth import AuthenticationManager
from .binary import ErrorCode, OpCode, Request, Response
from .client import Client, connect
from .connection import Connection
from .exceptions import (
    AuthenticationError,
    AuthenticationFailedError,
    ChecksumMismatchError,
    ClientClosedError,
    ConnectionError,
    ConnectionLostError,
    ConnectionRefusedError,
    ConnectionTimeoutError,
    ConstraintViolationError,
    ErrorKind,
    InternalError,
    InvalidCredentialsError,
    MessageTooLargeError,
    NetworkError,
    ProtocolError,
    ProtocolVersionMismatchError,
    QDBError,
    QuerySyntaxError,
    SequenceMismatchError,
    SerializationError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    is_retryable,
)
from .models import ClientConfig, PoolConfig, RetryConfig
from .pool import ConnectionManager, ConnectionPool
from .protocol import Feature, Message, MessageCodec, MessageType, ProtocolType
from .retry import RetryExecutor, RetryState
from .tls import TLSConfig
from .types import AuthToken, Certificate, ClusterHealth, Credentials, NodeHealth, Role

__version__ = "0.1.0"
__author__ = "Firefly Software Solutions Inc."
__license__ = "Apache-2.0"

__all__ = [
    # Client
    "Client",
    "connect",
    "Request",
    "Response",
    "OpCode",
    "ErrorCode",
    # Connections
    "Connection",
    "ConnectionManager",
    "ConnectionPool",
    # Authentication
    "AuthenticationManager",
    "AuthToken",
    "Certificate",
    "Credentials",
    "Role",
    # Retry
    "RetryExecutor",
    "RetryState",
    # Protocol
    "Feature",
    "Message",
    "MessageCodec",
    "MessageType",
    "ProtocolType",
    # Health
    "ClusterHealth",
    "NodeHealth",
    # Configuration
    "ClientConfig",
    "PoolConfig",
    "RetryConfig",
    "TLSConfig",
    # Exceptions
    "QDBError",
    "ErrorKind",
    "is_retryable",
    "ConnectionError",
    "ConnectionTimeoutError",
    "ConnectionRefusedError",
    "ConnectionLostError",
    "AuthenticationError",
    "AuthenticationFailedError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "ProtocolError",
    "SerializationError",
    "ChecksumMismatchError",
    "MessageTooLargeError",
    "ProtocolVersionMismatchError",
    "SequenceMismatchError",
    "NetworkError",
    "TimeoutError",
    "ServerError",
    "QuerySyntaxError",
    "ConstraintViolationError",
    "InternalError",
    "ClientClosedError",
]
