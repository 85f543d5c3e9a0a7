# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
PyQDB Payload Encoding/Decoding.

Message payloads carry the application-level records of the protocol: the
request envelope, the connection handshake, authentication exchanges and
error responses.

Binary Format Conventions:
- All multi-byte integers are big-endian
- Strings are length-prefixed: [2 bytes len][N bytes UTF-8]
- Byte arrays are length-prefixed: [4 bytes len][N bytes data]
- Booleans are 1 byte (0x00 = False, 0x01 = True)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum

from .exceptions import (
    AuthenticationFailedError,
    ConstraintViolationError,
    InternalError,
    InvalidCredentialsError,
    QDBError,
    QuerySyntaxError,
    SerializationError,
    ServerError,
    TokenExpiredError,
)
from .protocol import PROTOCOL_VERSION, Feature, MessageType, ProtocolType
from .types import AuthToken, Role


class OpCode(IntEnum):
    """Request operation codes carried in the request envelope."""

    # Data Operations (0x01-0x0F)
    QUERY = 0x01
    EXECUTE = 0x02
    BATCH = 0x03

    # Transaction Operations (0x40-0x4F)
    BEGIN_TX = 0x40
    COMMIT_TX = 0x41
    ROLLBACK_TX = 0x42

    # Admin Operations (0x50-0x5F)
    CLUSTER_STATUS = 0x50
    ADMIN = 0x51

    # Authentication Operations (0x70-0x7F)
    AUTHENTICATE = 0x70
    REFRESH_TOKEN = 0x71
    LOGOUT = 0x72


class ErrorCode(IntEnum):
    """Error codes sent by the server in error responses."""

    UNKNOWN = 0x0000
    SYNTAX_ERROR = 0x0001
    CONSTRAINT_VIOLATION = 0x0002
    AUTHENTICATION_FAILED = 0x0010
    TOKEN_EXPIRED = 0x0011
    INVALID_CREDENTIALS = 0x0012
    INTERNAL = 0x00FF


# =============================================================================
# Reader helper
# =============================================================================


class _Reader:
    """Cursor over a payload; short buffers raise SerializationError."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise SerializationError(
                f"Buffer too small: need {n} bytes at offset {self._pos}, have {len(self._data) - self._pos}"
            )
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def string(self) -> str:
        return self.text(self.unpack(">H"))

    def text(self, n: int) -> str:
        raw = self.take(n)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"Invalid UTF-8 string at offset {self._pos - n}: {e}") from e

    def short_bytes(self) -> bytes:
        return self.take(self.unpack(">H"))

    def long_bytes(self) -> bytes:
        return self.take(self.unpack(">I"))

    def rest(self) -> bytes:
        chunk = self._data[self._pos:]
        self._pos = len(self._data)
        return chunk


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack(">H", len(raw)) + raw


def _short_bytes(value: bytes) -> bytes:
    return struct.pack(">H", len(value)) + value


# =============================================================================
# Request / Response Envelope
# =============================================================================


@dataclass(frozen=True)
class Request:
    """An application request: an operation code and its encoded body."""

    op: OpCode
    body: bytes = b""
    message_type: MessageType = MessageType.DATA


@dataclass(frozen=True)
class Response:
    """A successful response from a node."""

    node_id: int
    message_type: MessageType
    sequence_number: int
    body: bytes


def encode_request(op: OpCode, body: bytes = b"", token: bytes = b"") -> bytes:
    """
    Encode a request envelope.

    Format:
        [1B op][2B token_len][token signature][body]
    """
    return struct.pack(">B", op) + _short_bytes(token) + body


def decode_request(data: bytes) -> tuple[OpCode, bytes, bytes]:
    """Decode a request envelope into (op, token, body)."""
    reader = _Reader(data)
    raw_op = reader.unpack(">B")
    try:
        op = OpCode(raw_op)
    except ValueError:
        raise SerializationError(f"Unknown operation code: 0x{raw_op:02X}")
    token = reader.short_bytes()
    return op, token, reader.rest()


# =============================================================================
# Handshake
# =============================================================================


@dataclass(frozen=True)
class Hello:
    """Handshake record exchanged in the first Ping/Pong of a connection."""

    version: int = PROTOCOL_VERSION
    features: frozenset[Feature] = frozenset()
    protocols: frozenset[ProtocolType] = frozenset()


def encode_hello(hello: Hello) -> bytes:
    """
    Encode a handshake record.

    Format:
        [1B version][1B n][n x 1B feature][1B m][m x 1B protocol]
    """
    features = sorted(hello.features)
    protocols = sorted(hello.protocols)
    return (
        struct.pack(">BB", hello.version, len(features))
        + bytes(features)
        + struct.pack(">B", len(protocols))
        + bytes(protocols)
    )


def decode_hello(data: bytes) -> Hello:
    """Decode a handshake record; unknown feature or protocol codes are ignored."""
    reader = _Reader(data)
    version = reader.unpack(">B")
    features = set()
    for code in reader.take(reader.unpack(">B")):
        if code in Feature._value2member_map_:
            features.add(Feature(code))
    protocols = set()
    for code in reader.take(reader.unpack(">B")):
        if code in ProtocolType._value2member_map_:
            protocols.add(ProtocolType(code))
    return Hello(version=version, features=frozenset(features), protocols=frozenset(protocols))


# =============================================================================
# Authentication
# =============================================================================


@dataclass
class BinaryAuthRequest:
    """Binary authentication request."""

    username: str
    password: str = ""
    certificate: bytes = b""
    static_token: str = ""
    protocol: ProtocolType = ProtocolType.TCP


def encode_auth_request(req: BinaryAuthRequest) -> bytes:
    """
    Encode auth request.

    Format:
        [2B user_len][user][2B pass_len][pass][4B cert_len][cert PEM]
        [2B token_len][token][1B protocol]
    """
    return (
        _string(req.username)
        + _string(req.password)
        + struct.pack(">I", len(req.certificate)) + req.certificate
        + _string(req.static_token)
        + struct.pack(">B", req.protocol)
    )


def decode_auth_request(data: bytes) -> BinaryAuthRequest:
    """Decode auth request."""
    reader = _Reader(data)
    username = reader.string()
    password = reader.string()
    certificate = reader.long_bytes()
    static_token = reader.string()
    protocol = ProtocolType(reader.unpack(">B"))
    return BinaryAuthRequest(
        username=username,
        password=password,
        certificate=certificate,
        static_token=static_token,
        protocol=protocol,
    )


@dataclass
class BinaryTokenResponse:
    """Binary response to authenticate and refresh requests."""

    success: bool
    user_id: int = 0
    roles: list[str] = field(default_factory=list)
    expires_at_ms: int = 0
    signature: bytes = b""
    error: str = ""

    def to_token(self) -> AuthToken:
        """Convert a successful response into an AuthToken."""
        roles = set()
        for name in self.roles:
            try:
                roles.add(Role(name))
            except ValueError:
                raise SerializationError(f"Unknown role in token: {name!r}")
        try:
            expires_at = datetime.fromtimestamp(self.expires_at_ms / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise SerializationError(f"Token expiry out of range: {self.expires_at_ms}") from e
        return AuthToken(
            user_id=self.user_id,
            roles=frozenset(roles),
            expires_at=expires_at,
            signature=self.signature,
        )


def encode_token_response(resp: BinaryTokenResponse) -> bytes:
    """
    Encode token response.

    Format:
        [1B success][8B user_id][1B role_count]{[1B role_len][role]}...
        [8B expires_at_ms][2B sig_len][sig][2B err_len][err]
    """
    parts = [struct.pack(">BQB", 1 if resp.success else 0, resp.user_id, len(resp.roles))]
    for role in resp.roles:
        raw = role.encode("utf-8")
        parts.append(struct.pack(">B", len(raw)) + raw)
    parts.append(struct.pack(">q", resp.expires_at_ms))
    parts.append(_short_bytes(resp.signature))
    parts.append(_string(resp.error))
    return b"".join(parts)


def decode_token_response(data: bytes) -> BinaryTokenResponse:
    """Decode token response."""
    reader = _Reader(data)
    success = reader.unpack(">B") == 1
    user_id = reader.unpack(">Q")
    role_count = reader.unpack(">B")
    roles: list[str] = []
    for _ in range(role_count):
        roles.append(reader.text(reader.unpack(">B")))
    expires_at_ms = reader.unpack(">q")
    signature = reader.short_bytes()
    error = reader.string()
    return BinaryTokenResponse(
        success=success,
        user_id=user_id,
        roles=roles,
        expires_at_ms=expires_at_ms,
        signature=signature,
        error=error,
    )


# =============================================================================
# Error Response
# =============================================================================


@dataclass
class BinaryErrorResponse:
    """Binary error response."""

    code: int
    message: str
    position: int = 0
    context: str = ""


def encode_error_response(resp: BinaryErrorResponse) -> bytes:
    """
    Encode error response.

    Format:
        [2B code][4B position][2B msg_len][msg][2B ctx_len][ctx]

    ``context`` holds the SQL text for syntax errors, the constraint
    name for constraint violations and the expiry (ms) for expired tokens.
    """
    return (
        struct.pack(">HI", resp.code, resp.position)
        + _string(resp.message)
        + _string(resp.context)
    )


def decode_error_response(data: bytes) -> BinaryErrorResponse:
    """Decode error response."""
    reader = _Reader(data)
    code = reader.unpack(">H")
    position = reader.unpack(">I")
    message = reader.string()
    context = reader.string()
    return BinaryErrorResponse(code=code, message=message, position=position, context=context)


def error_from_response(resp: BinaryErrorResponse) -> QDBError:
    """Map a server error response to the matching exception."""
    if resp.code == ErrorCode.SYNTAX_ERROR:
        return QuerySyntaxError(resp.context, resp.position, resp.message)
    if resp.code == ErrorCode.CONSTRAINT_VIOLATION:
        return ConstraintViolationError(resp.context, resp.message)
    if resp.code == ErrorCode.AUTHENTICATION_FAILED:
        return AuthenticationFailedError(resp.message)
    if resp.code == ErrorCode.TOKEN_EXPIRED:
        return TokenExpiredError(int(resp.context) if resp.context.isdigit() else 0)
    if resp.code == ErrorCode.INVALID_CREDENTIALS:
        return InvalidCredentialsError(resp.message or "Invalid credentials")
    if resp.code == ErrorCode.INTERNAL:
        return InternalError("server", resp.message)
    return ServerError(resp.message, resp.code)
