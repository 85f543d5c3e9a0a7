# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
PyQDB Message Protocol Implementation.

Frame Format:
    +-------+-------+-------+-------+--------------------------------+
    | Length (4 bytes, big-endian)  | Serialized Message (Length B)  |
    +-------+-------+-------+-------+--------------------------------+

Serialized Message (little-endian, fixed-width, bincode layout):
    - sender_node_id     u64
    - recipient_node_id  u8 option tag (0 = none, 1 = some) [+ u64]
    - sequence_number    u64
    - timestamp          i64 (milliseconds since epoch)
    - message_type       u32 (variant index of MessageType)
    - compressed         u8 (1 when the payload is LZ4 compressed)
    - payload            u64 length + bytes
    - checksum           u32 (CRC32 of the payload bytes as sent)
"""

from __future__ import annotations

import asyncio
import struct
import time
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable

import lz4.block

from .exceptions import (
    ChecksumMismatchError,
    MessageTooLargeError,
    NetworkError,
    SerializationError,
)

# Protocol constants
PROTOCOL_VERSION: int = 0x01
DEFAULT_PORT: int = 7000
LENGTH_PREFIX_SIZE: int = 4
MAX_MESSAGE_SIZE: int = 1024 * 1024  # 1MB
DEFAULT_COMPRESSION_THRESHOLD: int = 1024
CLIENT_NODE_ID: int = 0

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_LENGTH = struct.Struct(">I")


class MessageType(IntEnum):
    """Message types of the cluster protocol, valued by their wire variant index."""

    PING = 0
    PONG = 1
    DATA = 2
    ACK = 3
    ERROR = 4
    HEARTBEAT = 5
    CLUSTER_JOIN = 6
    CLUSTER_LEAVE = 7
    REPLICATION = 8
    TRANSACTION = 9


class Feature(IntEnum):
    """Optional protocol features negotiated per connection."""

    COMPRESSION = 0
    HEARTBEAT = 1
    STREAMING = 2


class ProtocolType(IntEnum):
    """Transport protocols a node may offer."""

    TCP = 0
    UDP = 1
    TLS = 2

    @property
    def priority(self) -> int:
        """Selection priority, higher is preferred (TLS > TCP > UDP)."""
        return _PROTOCOL_PRIORITY[self]


_PROTOCOL_PRIORITY = {
    ProtocolType.TLS: 3,
    ProtocolType.TCP: 2,
    ProtocolType.UDP: 1,
}


def select_protocol(
    client_protocols: Iterable[ProtocolType],
    server_protocols: Iterable[ProtocolType],
) -> ProtocolType | None:
    """
    Select the best protocol supported by both sides.

    Returns:
        The highest priority common protocol, or None if there is none.
    """
    common = set(client_protocols) & set(server_protocols)
    if not common:
        return None
    return max(common, key=lambda p: p.priority)


def negotiate_features(
    client_features: Iterable[Feature],
    server_features: Iterable[Feature],
) -> frozenset[Feature]:
    """Return the features both the client and the server advertise."""
    return frozenset(client_features) & frozenset(server_features)


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def crc32(data: bytes) -> int:
    """CRC32 (IEEE) of data as an unsigned 32-bit value."""
    return zlib.crc32(data) & 0xFFFFFFFF


@dataclass(frozen=True)
class Message:
    """
    One logical protocol message.

    Equality covers the logical fields only; ``checksum`` and ``compressed``
    describe how the payload travelled on the wire.
    """

    message_type: MessageType
    sender_node_id: int
    recipient_node_id: int | None
    sequence_number: int
    timestamp: int
    payload: bytes
    checksum: int = field(default=0, compare=False)
    compressed: bool = field(default=False, compare=False)

    @classmethod
    def create(
        cls,
        message_type: MessageType,
        payload: bytes = b"",
        *,
        sender_node_id: int = CLIENT_NODE_ID,
        recipient_node_id: int | None = None,
        sequence_number: int = 0,
        timestamp: int | None = None,
    ) -> Message:
        """Build a message stamped with the current time and its payload checksum."""
        return cls(
            message_type=message_type,
            sender_node_id=sender_node_id,
            recipient_node_id=recipient_node_id,
            sequence_number=sequence_number,
            timestamp=now_ms() if timestamp is None else timestamp,
            payload=bytes(payload),
            checksum=crc32(payload),
        )

    def verify_checksum(self) -> bool:
        """Check the stored checksum against the payload."""
        return self.checksum == crc32(self.payload)


class MessageCodec:
    """
    Encodes and decodes messages and length-prefixed frames.

    A codec is configured once and then shared by everything that talks over
    one connection; it holds no per-message state.

    Example:
        >>> codec = MessageCodec()
        >>> msg = Message.create(MessageType.DATA, b"hello", recipient_node_id=1)
        >>> codec.decode(codec.encode(msg)) == msg
        True
    """

    def __init__(
        self,
        max_message_size: int = MAX_MESSAGE_SIZE,
        *,
        compression_enabled: bool = False,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
    ) -> None:
        self.max_message_size = max_message_size
        self.compression_enabled = compression_enabled
        self.compression_threshold = compression_threshold

    def encode(self, message: Message) -> bytes:
        """
        Serialize a message.

        The payload is compressed first when compression is enabled and the
        payload is larger than the threshold; the checksum is computed over
        the bytes actually sent.

        Raises:
            SerializationError: If a field cannot be represented on the wire.
            MessageTooLargeError: If the result exceeds max_message_size.
        """
        payload = message.payload
        compressed = False
        if self.compression_enabled and len(payload) > self.compression_threshold:
            payload = lz4.block.compress(payload, store_size=True)
            compressed = True

        try:
            parts = [_U64.pack(message.sender_node_id)]
            if message.recipient_node_id is None:
                parts.append(_U8.pack(0))
            else:
                parts.append(_U8.pack(1))
                parts.append(_U64.pack(message.recipient_node_id))
            parts.extend([
                _U64.pack(message.sequence_number),
                _I64.pack(message.timestamp),
                _U32.pack(MessageType(message.message_type).value),
                _U8.pack(1 if compressed else 0),
                _U64.pack(len(payload)),
                payload,
                _U32.pack(crc32(payload)),
            ])
        except (struct.error, ValueError, TypeError) as e:
            raise SerializationError(f"Failed to serialize message: {e}") from e

        encoded = b"".join(parts)
        if len(encoded) > self.max_message_size:
            raise MessageTooLargeError(len(encoded), self.max_message_size)
        return encoded

    def decode(self, data: bytes) -> Message:
        """
        Deserialize a message and verify its checksum.

        Raises:
            MessageTooLargeError: If data exceeds max_message_size.
            SerializationError: If data is not a well-formed message.
            ChecksumMismatchError: If the payload does not match its checksum.
        """
        if len(data) > self.max_message_size:
            raise MessageTooLargeError(len(data), self.max_message_size)

        view = memoryview(data)
        try:
            pos = 0
            (sender,) = _U64.unpack_from(view, pos)
            pos += 8
            (tag,) = _U8.unpack_from(view, pos)
            pos += 1
            if tag == 0:
                recipient = None
            elif tag == 1:
                (recipient,) = _U64.unpack_from(view, pos)
                pos += 8
            else:
                raise SerializationError(f"Invalid option tag for recipient: {tag}")
            (sequence_number,) = _U64.unpack_from(view, pos)
            pos += 8
            (timestamp,) = _I64.unpack_from(view, pos)
            pos += 8
            (variant,) = _U32.unpack_from(view, pos)
            pos += 4
            (flag,) = _U8.unpack_from(view, pos)
            pos += 1
            (payload_len,) = _U64.unpack_from(view, pos)
            pos += 8
            if pos + payload_len + 4 != len(data):
                raise SerializationError(
                    f"Payload length {payload_len} does not match frame size {len(data)}"
                )
            payload = bytes(view[pos:pos + payload_len])
            pos += payload_len
            (checksum,) = _U32.unpack_from(view, pos)
        except struct.error as e:
            raise SerializationError(f"Failed to deserialize message: {e}") from e

        try:
            message_type = MessageType(variant)
        except ValueError:
            raise SerializationError(f"Unknown message type variant: {variant}")
        if flag not in (0, 1):
            raise SerializationError(f"Invalid compression flag: {flag}")

        actual = crc32(payload)
        if actual != checksum:
            raise ChecksumMismatchError(expected=checksum, actual=actual)

        if flag:
            # The stored size prefix bounds the decompressed payload.
            if len(payload) < _U32.size:
                raise SerializationError("Compressed payload is missing its size header")
            (stored_size,) = _U32.unpack_from(payload, 0)
            if stored_size > self.max_message_size:
                raise MessageTooLargeError(stored_size, self.max_message_size)
            try:
                payload = lz4.block.decompress(payload)
            except (lz4.block.LZ4BlockError, ValueError) as e:
                raise SerializationError(f"Failed to decompress payload: {e}") from e

        return Message(
            message_type=message_type,
            sender_node_id=sender,
            recipient_node_id=recipient,
            sequence_number=sequence_number,
            timestamp=timestamp,
            payload=payload,
            checksum=checksum,
            compressed=bool(flag),
        )

    def encode_with_length(self, message: Message) -> bytes:
        """Encode a message as a frame: 4-byte big-endian length + message."""
        encoded = self.encode(message)
        return _LENGTH.pack(len(encoded)) + encoded

    async def read_message(self, reader: asyncio.StreamReader) -> Message:
        """
        Read one frame from a stream and decode it.

        The advertised length is validated before the body is read, and the
        body is only decoded once all of it has arrived.

        Raises:
            NetworkError: If the stream ends or fails mid-frame.
            MessageTooLargeError: If the advertised length is too large.
        """
        try:
            prefix = await reader.readexactly(LENGTH_PREFIX_SIZE)
        except asyncio.IncompleteReadError as e:
            raise NetworkError(
                f"Failed to read message length: got {len(e.partial)} of {LENGTH_PREFIX_SIZE} bytes"
            ) from e
        except OSError as e:
            raise NetworkError(f"Failed to read message length: {e}") from e

        (length,) = _LENGTH.unpack(prefix)
        if length > self.max_message_size:
            raise MessageTooLargeError(length, self.max_message_size)

        try:
            data = await reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            raise NetworkError(
                f"Failed to read message data: got {len(e.partial)} of {length} bytes"
            ) from e
        except OSError as e:
            raise NetworkError(f"Failed to read message data: {e}") from e

        return self.decode(data)

    async def write_message(self, writer: asyncio.StreamWriter, message: Message) -> None:
        """
        Encode a message and write it as one frame.

        Encoding (and the size check) happens before anything is written.
        """
        await self.write_frame(writer, self.encode_with_length(message))

    async def write_frame(self, writer: asyncio.StreamWriter, frame: bytes) -> None:
        """Write an already encoded frame and wait for the buffer to drain."""
        try:
            writer.write(frame)
            await writer.drain()
        except OSError as e:
            raise NetworkError(f"Failed to write message: {e}") from e
