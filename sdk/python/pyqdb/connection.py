# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
A single connection to one database node.

A Connection owns one asyncio stream. Requests on a connection are strictly
request-then-response: every request gets the next sequence number and the
response must echo it.
"""

from __future__ import annotations

import asyncio
import builtins
import contextlib
import itertools
import logging
import socket
import ssl
from typing import TYPE_CHECKING

from .binary import Hello, decode_error_response, decode_hello, encode_hello, error_from_response
from .exceptions import (
    ConnectionError,
    ConnectionLostError,
    ConnectionRefusedError,
    ConnectionTimeoutError,
    NetworkError,
    ProtocolError,
    ProtocolVersionMismatchError,
    SequenceMismatchError,
    TimeoutError,
)
from .models import split_host
from .protocol import (
    PROTOCOL_VERSION,
    Feature,
    Message,
    MessageCodec,
    MessageType,
    ProtocolType,
    negotiate_features,
)

if TYPE_CHECKING:
    from .models import ClientConfig

logger = logging.getLogger(__name__)


class Connection:
    """
    One TCP (optionally TLS) connection to one node.

    Use Connection.open() to connect; it performs the feature handshake and
    returns a ready connection. Negotiated features never change afterwards.

    Example:
        >>> conn = await Connection.open("localhost:7000", 1, config=ClientConfig())
        >>> reply = await conn.send_request(MessageType.DATA, b"payload", timeout_ms=5000)
        >>> await conn.close()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        host: str,
        node_id: int,
        codec: MessageCodec | None = None,
        protocol: ProtocolType = ProtocolType.TCP,
    ) -> None:
        self.host = host
        self.node_id = node_id
        self.protocol = protocol
        self._reader = reader
        self._writer = writer
        self._codec = codec or MessageCodec()
        self._sequence = itertools.count()
        self._last_sequence: int | None = None
        self._lock = asyncio.Lock()
        self._features: frozenset[Feature] = frozenset()
        self._server_protocols: frozenset[ProtocolType] = frozenset({protocol})
        self._broken = False
        self._closed = False

    @classmethod
    async def open(
        cls,
        host: str,
        node_id: int,
        *,
        config: ClientConfig,
        ssl_context: ssl.SSLContext | None = None,
        timeout_ms: int | None = None,
    ) -> Connection:
        """
        Connect to a node and negotiate features.

        timeout_ms bounds connecting and the handshake each; it defaults to
        ``pool.connection_timeout_ms``.

        Raises:
            ConnectionTimeoutError: If the connection is not established in time.
            ConnectionRefusedError: If the node refuses the connection.
            NetworkError: For other socket failures.
            ProtocolVersionMismatchError: If the node speaks another protocol version.
        """
        hostname, port = split_host(host)
        if timeout_ms is None:
            timeout_ms = config.pool.connection_timeout_ms
        server_hostname = (config.tls_server_name or hostname) if ssl_context else None

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    hostname, port, ssl=ssl_context, server_hostname=server_hostname
                ),
                timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError as e:
            raise ConnectionTimeoutError(host, timeout_ms) from e
        except builtins.ConnectionRefusedError as e:
            raise ConnectionRefusedError(host) from e
        except ssl.SSLError as e:
            raise ConnectionError(f"TLS handshake with {host} failed: {e}", host) from e
        except OSError as e:
            raise NetworkError(f"Failed to connect to {host}: {e}") from e

        sock = writer.get_extra_info("socket")
        if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        conn = cls(
            reader,
            writer,
            host=host,
            node_id=node_id,
            codec=MessageCodec(config.max_message_size),
            protocol=ProtocolType.TLS if ssl_context else ProtocolType.TCP,
        )

        if config.negotiate_features:
            try:
                await conn._handshake(config, timeout_ms)
            except BaseException:
                with contextlib.suppress(NetworkError):
                    await conn.close()
                raise

        logger.debug(
            "Connected to node %d at %s (protocol=%s, features=%s)",
            node_id,
            host,
            conn.protocol.name,
            sorted(f.name for f in conn.features),
        )
        return conn

    async def _handshake(self, config: ClientConfig, timeout_ms: int) -> None:
        """Exchange hello records and fix the negotiated feature set."""
        client_features = {Feature.HEARTBEAT}
        if config.compression_enabled:
            client_features.add(Feature.COMPRESSION)
        hello = Hello(
            features=frozenset(client_features),
            protocols=frozenset({ProtocolType.TCP, self.protocol}),
        )

        response = await self.send_request(MessageType.PING, encode_hello(hello), timeout_ms)
        if response.message_type != MessageType.PONG:
            self._broken = True
            raise ProtocolError(
                f"Unexpected handshake response from node {self.node_id}: {response.message_type.name}"
            )

        server = decode_hello(response.payload)
        if server.version != PROTOCOL_VERSION:
            raise ProtocolVersionMismatchError(PROTOCOL_VERSION, server.version)

        self._features = negotiate_features(client_features, server.features)
        self._server_protocols = server.protocols
        self._codec = MessageCodec(
            config.max_message_size,
            compression_enabled=config.compression_enabled and Feature.COMPRESSION in self._features,
            compression_threshold=config.compression_threshold_bytes,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def features(self) -> frozenset[Feature]:
        """Features negotiated with the node."""
        return self._features

    @property
    def server_protocols(self) -> frozenset[ProtocolType]:
        """Transport protocols the node advertised."""
        return self._server_protocols

    @property
    def codec(self) -> MessageCodec:
        return self._codec

    @property
    def last_sequence_number(self) -> int | None:
        """Sequence number of the most recent request, None before the first."""
        return self._last_sequence

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_broken(self) -> bool:
        """True once a timeout, I/O or protocol failure left the stream in an unknown state."""
        return self._broken

    @property
    def is_usable(self) -> bool:
        return not (self._closed or self._broken or self._reader.at_eof())

    def has_feature(self, feature: Feature) -> bool:
        return feature in self._features

    def mark_broken(self) -> None:
        """Flag the connection so the pool evicts it on release."""
        self._broken = True

    # =========================================================================
    # I/O
    # =========================================================================

    async def send_message(self, message: Message) -> None:
        """Send one message without waiting for a reply."""
        await self._codec.write_message(self._writer, message)

    async def receive_message(self) -> Message:
        """Receive one message."""
        try:
            return await self._codec.read_message(self._reader)
        except NetworkError as e:
            if self._reader.at_eof():
                raise ConnectionLostError(self.node_id, self.host) from e
            raise

    async def send_request(
        self,
        message_type: MessageType,
        payload: bytes = b"",
        timeout_ms: int = 5000,
    ) -> Message:
        """
        Send a request and wait for its response.

        Args:
            message_type: Type of the request message.
            payload: Request payload.
            timeout_ms: Upper bound for writing the request and reading the response.

        Returns:
            The response message.

        Raises:
            TimeoutError: If no response arrives in time.
            ConnectionLostError: If the node closes the connection.
            SequenceMismatchError: If the response answers another request.
            QDBError: The mapped server error for Error responses.
        """
        if self._closed:
            raise ConnectionLostError(self.node_id, self.host)

        async with self._lock:
            seq = next(self._sequence)
            self._last_sequence = seq
            request = Message.create(
                message_type,
                payload,
                recipient_node_id=self.node_id,
                sequence_number=seq,
            )
            # Encoding errors surface here, before anything touches the stream.
            frame = self._codec.encode_with_length(request)

            try:
                response = await asyncio.wait_for(self._exchange(frame), timeout_ms / 1000.0)
            except asyncio.TimeoutError as e:
                self._broken = True
                raise TimeoutError("send_request", timeout_ms) from e
            except BaseException:
                # Cancelled or failed mid-exchange: the response may still be in flight.
                self._broken = True
                raise

            if response.sequence_number != seq:
                self._broken = True
                raise SequenceMismatchError(seq, response.sequence_number)

        if response.message_type == MessageType.ERROR:
            raise error_from_response(decode_error_response(response.payload))
        return response

    async def _exchange(self, frame: bytes) -> Message:
        await self._codec.write_frame(self._writer, frame)
        return await self.receive_message()

    async def ping(self, timeout_ms: int = 5000) -> None:
        """
        Send an empty Ping and wait for the Pong.

        Raises:
            ProtocolError: If the node answers with anything but Pong.
        """
        response = await self.send_request(MessageType.PING, b"", timeout_ms)
        if response.message_type != MessageType.PONG:
            self._broken = True
            raise ProtocolError(f"Expected Pong from node {self.node_id}, got {response.message_type.name}")

    async def close(self) -> None:
        """
        Close the stream. Safe to call more than once.

        Raises:
            NetworkError: If the stream fails while shutting down.
        """
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            raise NetworkError(f"Failed to close connection to {self.host}: {e}") from e
        logger.debug("Closed connection to node %d at %s", self.node_id, self.host)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "broken" if self._broken else "open"
        return f"<Connection node={self.node_id} host={self.host} {state}>"
