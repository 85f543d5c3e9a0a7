# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
Authentication and session token management.

The AuthenticationManager holds the current AuthToken and keeps it valid:
tokens close to expiry are refreshed, expired or missing tokens trigger a
fresh authentication from the configured credentials. Concurrent callers
share one in-flight request.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from .binary import (
    BinaryAuthRequest,
    OpCode,
    decode_token_response,
    encode_auth_request,
    encode_request,
)
from .exceptions import AuthenticationFailedError, InvalidCredentialsError, TokenExpiredError
from .protocol import MessageType, ProtocolType, select_protocol
from .types import AuthToken, Credentials

if TYPE_CHECKING:
    from .connection import Connection
    from .models import ClientConfig

logger = logging.getLogger(__name__)


class AuthenticationManager:
    """
    Manages authentication state for a client.

    Example:
        >>> auth = AuthenticationManager(Credentials("admin", password="secret"))
        >>> token = await auth.get_valid_token(conn)
        >>> token.has_role(Role.ADMIN)
        True
    """

    def __init__(
        self,
        credentials: Credentials | None,
        *,
        token_refresh_margin_ms: int = 30000,
        enable_tls: bool = False,
        request_timeout_ms: int = 5000,
    ) -> None:
        self._credentials = credentials
        self._refresh_margin = timedelta(milliseconds=token_refresh_margin_ms)
        self._enable_tls = enable_tls
        self._timeout_ms = request_timeout_ms
        self._token: AuthToken | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: ClientConfig) -> AuthenticationManager:
        """Build a manager from client configuration."""
        return cls(
            config.credentials(),
            token_refresh_margin_ms=config.token_refresh_margin_ms,
            enable_tls=config.enable_tls,
            request_timeout_ms=config.timeout_ms,
        )

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @property
    def token(self) -> AuthToken | None:
        """The current token, if any; it may be expired."""
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None and not self._token.is_expired()

    @property
    def client_protocols(self) -> frozenset[ProtocolType]:
        """Protocols this client can use; TLS only when enabled."""
        protocols = {ProtocolType.TCP, ProtocolType.UDP}
        if self._enable_tls:
            protocols.add(ProtocolType.TLS)
        return frozenset(protocols)

    def select_protocol(self, connection: Connection) -> ProtocolType:
        """
        Pick the best protocol shared with the server (TLS > TCP > UDP).

        Raises:
            AuthenticationFailedError: If there is no common protocol.
        """
        protocol = select_protocol(self.client_protocols, connection.server_protocols)
        if protocol is None:
            raise AuthenticationFailedError("no common transport protocol with server")
        return protocol

    # =========================================================================
    # Public API
    # =========================================================================

    async def authenticate(self, connection: Connection) -> AuthToken:
        """
        Authenticate with the configured credentials and store the token.

        Raises:
            InvalidCredentialsError: If the credentials are incomplete.
            AuthenticationFailedError: If the server rejects them.
        """
        async with self._lock:
            return await self._authenticate(connection)

    async def get_valid_token(self, connection: Connection) -> AuthToken:
        """
        Return a token that is valid beyond the refresh margin.

        Refreshes a token inside the margin and re-authenticates when the
        token is missing or expired.
        """
        token = self._token
        if token is not None and not token.expires_within(self._refresh_margin):
            return token

        async with self._lock:
            # Another caller may have renewed the token while we waited.
            token = self._token
            if token is not None and not token.expires_within(self._refresh_margin):
                return token
            if token is None or token.is_expired():
                return await self._authenticate(connection)
            return await self._refresh(connection)

    async def refresh_token(self, connection: Connection) -> AuthToken:
        """
        Renew the current token.

        Falls back to a full authentication when there is no token or it has
        already expired.
        """
        async with self._lock:
            return await self._refresh(connection)

    async def logout(self, connection: Connection) -> None:
        """
        Invalidate the session on the server.

        The local token is cleared even if the request fails.
        """
        async with self._lock:
            token, self._token = self._token, None
            if token is None:
                return
            payload = encode_request(OpCode.LOGOUT, token=token.signature)
            await connection.send_request(MessageType.DATA, payload, self._timeout_ms)
            logger.info("Logged out user %d", token.user_id)

    def invalidate(self) -> None:
        """Drop the local token so the next request authenticates again."""
        self._token = None

    # =========================================================================
    # Requests
    # =========================================================================

    async def _authenticate(self, connection: Connection) -> AuthToken:
        credentials = self._credentials
        if credentials is None:
            raise InvalidCredentialsError("No credentials configured")
        credentials.validate()

        request = BinaryAuthRequest(
            username=credentials.username,
            password=credentials.password or "",
            certificate=credentials.certificate.data if credentials.certificate else b"",
            static_token=credentials.static_token or "",
            protocol=self.select_protocol(connection),
        )
        payload = encode_request(OpCode.AUTHENTICATE, encode_auth_request(request))
        response = await connection.send_request(MessageType.DATA, payload, self._timeout_ms)

        token = self._token_from(response.payload)
        self._token = token
        logger.info(
            "Authenticated as %s (user_id=%d, expires_at=%s)",
            credentials.username,
            token.user_id,
            token.expires_at.isoformat(),
        )
        return token

    async def _refresh(self, connection: Connection) -> AuthToken:
        token = self._token
        if token is None or token.is_expired():
            logger.debug("No valid token to refresh, authenticating")
            return await self._authenticate(connection)

        payload = encode_request(OpCode.REFRESH_TOKEN, token=token.signature)
        try:
            response = await connection.send_request(MessageType.DATA, payload, self._timeout_ms)
        except TokenExpiredError:
            self._token = None
            logger.debug("Server rejected refresh of expired token, authenticating")
            return await self._authenticate(connection)

        self._token = self._token_from(response.payload)
        logger.debug("Refreshed token for user %d", self._token.user_id)
        return self._token

    @staticmethod
    def _token_from(payload: bytes) -> AuthToken:
        response = decode_token_response(payload)
        if not response.success:
            raise AuthenticationFailedError(response.error or "rejected by server")
        return response.to_token()
