# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
Custom exceptions for the PyQDB client core.

All exceptions inherit from QDBError, so every client failure can be caught
with a single except clause:

    try:
        response = await client.send_request(request)
    except QDBError as e:
        print(f"Database error ({e.kind.value}): {e}")

Each exception carries an ErrorKind and the contextual fields of the failure
(host, timeout, node id, SQL text, ...), so callers can branch on structure
rather than on message text:

    try:
        await client.send_request(request)
    except ConnectionTimeoutError as e:
        print(f"Gave up connecting to {e.host} after {e.timeout_ms}ms")
    except QuerySyntaxError as e:
        print(f"Bad SQL at position {e.position}: {e.sql}")

Transient failures (connection timeout, connection lost, network errors and
operation timeouts) are retried by the client before they reach the caller;
use is_retryable() to apply the same classification elsewhere.
"""

from __future__ import annotations

import builtins
from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error kinds."""

    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_LOST = "connection_lost"
    AUTHENTICATION_FAILED = "authentication_failed"
    TOKEN_EXPIRED = "token_expired"
    INVALID_CREDENTIALS = "invalid_credentials"
    SERIALIZATION = "serialization"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    MESSAGE_TOO_LARGE = "message_too_large"
    PROTOCOL_VERSION_MISMATCH = "protocol_version_mismatch"
    SEQUENCE_MISMATCH = "sequence_mismatch"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SYNTAX = "syntax"
    CONSTRAINT_VIOLATION = "constraint_violation"
    SERVER = "server"
    INTERNAL = "internal"


class QDBError(Exception):
    """
    Base exception for all PyQDB errors.

    All PyQDB exceptions inherit from this class, allowing you to catch
    all client errors with a single except clause.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        self.hint = hint
        if hint:
            message = f"{message}\n\n  Hint: {hint}"
        super().__init__(message)


# =============================================================================
# Connection Errors
# =============================================================================


class ConnectionError(QDBError):
    """
    Raised when a connection to a database node fails.

    Common causes:
    - Node is not running
    - Wrong host or port
    - Firewall blocking connection
    """

    def __init__(
        self,
        message: str,
        host: str | None = None,
        *,
        hint: str | None = None,
    ) -> None:
        self.host = host
        if hint is None and host:
            hint = f"Check that a database node is listening on {host}"
        super().__init__(message, hint=hint)


class ConnectionTimeoutError(ConnectionError):
    """
    Raised when establishing a connection times out.

    This applies to the initial connect only; a request that times out on an
    established connection raises TimeoutError instead.
    """

    kind = ErrorKind.CONNECTION_TIMEOUT
    retryable = True

    def __init__(self, host: str, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Connection timeout to {host} after {timeout_ms}ms",
            host,
            hint="Try increasing pool.connection_timeout_ms or check network connectivity",
        )


class ConnectionRefusedError(ConnectionError):
    """Raised when a node actively refuses the connection."""

    kind = ErrorKind.CONNECTION_REFUSED

    def __init__(self, host: str) -> None:
        super().__init__(f"Connection refused by {host}", host)


class ConnectionLostError(ConnectionError):
    """
    Raised when an established connection drops during an operation.

    This typically happens when:
    - The node was restarted
    - The network connection was interrupted
    - The node closed an idle connection
    """

    kind = ErrorKind.CONNECTION_LOST
    retryable = True

    def __init__(self, node_id: int | None = None, host: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(
            f"Connection lost to node {node_id}",
            host,
            hint="The node may have been restarted. The request is retried on a fresh connection.",
        )


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(QDBError):
    """Base exception for authentication errors."""

    kind = ErrorKind.AUTHENTICATION_FAILED


class AuthenticationFailedError(AuthenticationError):
    """
    Raised when the server rejects an authentication attempt.

    Common causes:
    - Invalid username or password
    - User account is disabled
    - Certificate not trusted by the cluster
    """

    def __init__(self, reason: str = "rejected by server") -> None:
        self.reason = reason
        super().__init__(
            f"Authentication failed: {reason}",
            hint="Check your credentials. Pass username and password (or a certificate) to connect().",
        )


class TokenExpiredError(AuthenticationError):
    """
    Raised when an authentication token has expired.

    The client recovers from this by re-authenticating; it is only visible
    when talking to a Connection directly.
    """

    kind = ErrorKind.TOKEN_EXPIRED

    def __init__(self, expired_at: int) -> None:
        self.expired_at = expired_at
        super().__init__(f"Token expired at {expired_at}")


class InvalidCredentialsError(AuthenticationError):
    """Raised when credentials are incomplete or malformed."""

    kind = ErrorKind.INVALID_CREDENTIALS

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(
            message,
            hint="A username plus a password, a certificate or a token is required",
        )


# =============================================================================
# Protocol Errors
# =============================================================================


class ProtocolError(QDBError):
    """
    Base exception for wire protocol errors.

    Protocol errors are never retried: resending a corrupted or
    incompatible frame cannot succeed.
    """


class SerializationError(ProtocolError):
    """Raised when a message cannot be serialized or deserialized."""

    kind = ErrorKind.SERIALIZATION

    def __init__(self, message: str) -> None:
        super().__init__(f"Serialization error: {message}")


class ChecksumMismatchError(ProtocolError):
    """
    Raised when a decoded payload does not match its CRC32 checksum.

    The frame was corrupted in transit; it is rejected, never repaired.
    """

    kind = ErrorKind.CHECKSUM_MISMATCH

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: expected {expected:#x}, got {actual:#x}")


class MessageTooLargeError(ProtocolError):
    """
    Raised when a message exceeds the maximum message size.

    The size is checked before any byte is written to the transport.
    """

    kind = ErrorKind.MESSAGE_TOO_LARGE

    def __init__(self, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        super().__init__(
            f"Message too large: {size} bytes (max: {max_size} bytes)",
            hint="Split large requests or raise max_message_size on both client and server",
        )


class ProtocolVersionMismatchError(ProtocolError):
    """Raised when the server speaks a different protocol version."""

    kind = ErrorKind.PROTOCOL_VERSION_MISMATCH

    def __init__(self, client_version: int, server_version: int) -> None:
        self.client_version = client_version
        self.server_version = server_version
        super().__init__(
            f"Protocol version mismatch: client v{client_version}, server v{server_version}",
            hint="Upgrade the client or the server so both speak the same protocol version",
        )


class SequenceMismatchError(ProtocolError):
    """Raised when a response does not answer the request that was sent."""

    kind = ErrorKind.SEQUENCE_MISMATCH

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Response sequence mismatch: expected {expected}, got {actual}")


# =============================================================================
# Network / Operation Errors
# =============================================================================


class NetworkError(QDBError):
    """Raised for generic I/O failures on an established stream."""

    kind = ErrorKind.NETWORK
    retryable = True

    def __init__(self, details: str) -> None:
        self.details = details
        super().__init__(f"Network error: {details}")


class TimeoutError(QDBError):
    """
    Raised when an operation does not complete within its timeout.

    A connection whose request timed out is considered unusable and is
    evicted from the pool.
    """

    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, operation: str, timeout_ms: int) -> None:
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"Operation '{operation}' timed out after {timeout_ms}ms")


# =============================================================================
# Server Errors
# =============================================================================


class ServerError(QDBError):
    """
    Raised when the server returns an error response.

    This is a general error from the server. Check the message for details.
    """

    kind = ErrorKind.SERVER

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class QuerySyntaxError(ServerError):
    """Raised when the server cannot parse the submitted SQL."""

    kind = ErrorKind.SYNTAX

    def __init__(self, sql: str, position: int, message: str) -> None:
        self.sql = sql
        self.position = position
        super().__init__(f"Syntax error in SQL at position {position}: {message}\nSQL: {sql}")


class ConstraintViolationError(ServerError):
    """Raised when a statement violates a table constraint."""

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(self, constraint: str, details: str) -> None:
        self.constraint = constraint
        self.details = details
        super().__init__(f"Constraint violation: {constraint} - {details}")


# =============================================================================
# Internal Errors
# =============================================================================


class InternalError(QDBError):
    """Raised when the client reaches a state it cannot handle."""

    kind = ErrorKind.INTERNAL

    def __init__(self, component: str, details: str) -> None:
        self.component = component
        self.details = details
        super().__init__(f"Internal error in {component}: {details}")


class ClientClosedError(InternalError):
    """Raised when the client is used after disconnect()."""

    def __init__(self, component: str = "ConnectionManager") -> None:
        super().__init__(component, "client is closed")


def is_retryable(error: builtins.BaseException) -> bool:
    """
    Check whether an error is transient and worth retrying.

    Only connection timeouts, lost connections, network errors and
    operation timeouts are retryable.
    """
    return isinstance(error, QDBError) and error.retryable
