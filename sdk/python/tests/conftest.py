# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""Shared fixtures: an in-process fake cluster node speaking the real codec."""

from __future__ import annotations

import asyncio
import socket

import pytest
import pytest_asyncio

from pyqdb.binary import (
    BinaryErrorResponse,
    BinaryTokenResponse,
    ErrorCode,
    Hello,
    OpCode,
    decode_auth_request,
    decode_hello,
    decode_request,
    encode_error_response,
    encode_hello,
    encode_token_response,
)
from pyqdb.exceptions import QDBError
from pyqdb.models import ClientConfig, PoolConfig, RetryConfig
from pyqdb.protocol import (
    PROTOCOL_VERSION,
    Feature,
    Message,
    MessageCodec,
    MessageType,
    ProtocolType,
    now_ms,
)


class FakeNode:
    """
    A cluster node good enough for client tests.

    Knobs:
        fail_next: close the connection instead of answering this many
            data requests.
        delay_s: sleep before answering data requests.
        handshake_delay_s: sleep before answering the hello Ping.
        wrong_sequence: answer with a different sequence number.
        reject_auth: reject authentication requests.
        fail_logout: close the connection on logout.
        expired_signatures: token signatures answered with TokenExpired.
    """

    def __init__(
        self,
        node_id: int,
        *,
        features: frozenset[Feature] = frozenset({Feature.COMPRESSION, Feature.HEARTBEAT}),
        protocols: frozenset[ProtocolType] = frozenset({ProtocolType.TCP}),
        version: int = PROTOCOL_VERSION,
    ) -> None:
        self.node_id = node_id
        self.features = features
        self.protocols = protocols
        self.version = version
        self.token_ttl_ms = 60_000

        self.fail_next = 0
        self.delay_s = 0.0
        self.handshake_delay_s = 0.0
        self.wrong_sequence = False
        self.reject_auth = False
        self.fail_logout = False
        self.expired_signatures: set[bytes] = set()

        self.connections_opened = 0
        self.auth_count = 0
        self.refresh_count = 0
        self.logout_count = 0
        self.pings = 0
        self.requests: list[tuple[OpCode, bytes, bytes]] = []
        self.auth_requests = []

        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self.port = 0

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections_opened += 1
        self._writers.add(writer)
        codec = MessageCodec()
        try:
            while True:
                request = await codec.read_message(reader)
                reply = await self._respond(request)
                if reply is None:
                    break
                await codec.write_message(writer, reply)
        except (QDBError, asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    def _reply(self, request: Message, message_type: MessageType, payload: bytes = b"") -> Message:
        seq = request.sequence_number + 1 if self.wrong_sequence else request.sequence_number
        return Message.create(
            message_type,
            payload,
            sender_node_id=self.node_id,
            recipient_node_id=0,
            sequence_number=seq,
        )

    def _error(self, request: Message, code: ErrorCode, message: str, context: str = "") -> Message:
        payload = encode_error_response(BinaryErrorResponse(code=code, message=message, context=context))
        return self._reply(request, MessageType.ERROR, payload)

    def _token(self, prefix: str, count: int) -> bytes:
        return encode_token_response(
            BinaryTokenResponse(
                success=True,
                user_id=42,
                roles=["admin", "user"],
                expires_at_ms=now_ms() + self.token_ttl_ms,
                signature=f"{prefix}-{self.node_id}-{count}".encode(),
            )
        )

    async def _respond(self, request: Message) -> Message | None:
        if request.message_type == MessageType.PING:
            if request.payload:
                decode_hello(request.payload)
                if self.handshake_delay_s:
                    await asyncio.sleep(self.handshake_delay_s)
                hello = Hello(version=self.version, features=self.features, protocols=self.protocols)
                return self._reply(request, MessageType.PONG, encode_hello(hello))
            self.pings += 1
            return self._reply(request, MessageType.PONG)

        if request.message_type == MessageType.HEARTBEAT:
            return self._reply(request, MessageType.HEARTBEAT)

        op, token, body = decode_request(request.payload)

        if op == OpCode.AUTHENTICATE:
            self.auth_count += 1
            self.auth_requests.append(decode_auth_request(body))
            if self.reject_auth:
                return self._error(request, ErrorCode.AUTHENTICATION_FAILED, "bad password")
            return self._reply(request, MessageType.DATA, self._token("sig", self.auth_count))

        if op == OpCode.REFRESH_TOKEN:
            self.refresh_count += 1
            if token in self.expired_signatures:
                return self._error(request, ErrorCode.TOKEN_EXPIRED, "token expired", "0")
            return self._reply(request, MessageType.DATA, self._token("ref", self.refresh_count))

        if op == OpCode.LOGOUT:
            self.logout_count += 1
            if self.fail_logout:
                return None
            return self._reply(request, MessageType.ACK)

        self.requests.append((op, token, body))
        if self.fail_next > 0:
            self.fail_next -= 1
            return None
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if token in self.expired_signatures:
            return self._error(request, ErrorCode.TOKEN_EXPIRED, "token expired", "1700000000000")
        if body == b"bad sql":
            return self._error(request, ErrorCode.SYNTAX_ERROR, "unexpected token", "bad sql")
        return self._reply(request, MessageType.DATA, b"result:" + body)


def make_config(*addresses: str, **overrides) -> ClientConfig:
    """Client configuration with small pools and fast retries for tests."""
    options = {
        "hosts": list(addresses),
        "timeout_ms": 1000,
        "pool": PoolConfig(min_connections=0, max_connections=4, connection_timeout_ms=1000),
        "retry": RetryConfig(max_retries=3, initial_backoff_ms=1, max_backoff_ms=5),
    }
    options.update(overrides)
    return ClientConfig(**options)


@pytest.fixture
def unused_address() -> str:
    """Address of a local port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"127.0.0.1:{port}"


@pytest_asyncio.fixture
async def node():
    fake = FakeNode(1)
    await fake.start()
    yield fake
    await fake.stop()


@pytest_asyncio.fixture
async def cluster():
    nodes = [FakeNode(i) for i in (1, 2, 3)]
    for fake in nodes:
        await fake.start()
    yield nodes
    for fake in nodes:
        await fake.stop()
