# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""Type definitions for the PyQDB client core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .exceptions import InvalidCredentialsError
from .protocol import now_ms


class Role(str, Enum):
    """User roles granted by the cluster."""

    ADMIN = "admin"
    USER = "user"
    READ_ONLY = "read_only"


@dataclass
class NodeHealth:
    """
    Health bookkeeping for one cluster node.

    Instances are owned by the ConnectionManager; callers receive copies.
    """

    node_id: int
    is_healthy: bool = True
    last_check: int = field(default_factory=now_ms)
    consecutive_failures: int = 0

    def mark_healthy(self) -> None:
        """Mark the node healthy and reset its failure count."""
        self.is_healthy = True
        self.consecutive_failures = 0
        self.last_check = now_ms()

    def mark_unhealthy(self) -> None:
        """Mark the node unhealthy immediately."""
        self.is_healthy = False
        self.consecutive_failures += 1
        self.last_check = now_ms()

    def record_success(self) -> None:
        """Reset the failure count; an unhealthy node stays unhealthy."""
        self.consecutive_failures = 0
        self.last_check = now_ms()

    def record_failure(self, threshold: int) -> None:
        """Count one failure; the node turns unhealthy at the threshold."""
        self.consecutive_failures += 1
        self.last_check = now_ms()
        if self.consecutive_failures >= threshold:
            self.is_healthy = False


@dataclass(frozen=True)
class ClusterHealth:
    """Health summary of all configured nodes."""

    total_nodes: int
    healthy_nodes: int
    node_healths: list[NodeHealth] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        """True if at least one node is healthy."""
        return self.healthy_nodes > 0


@dataclass(frozen=True)
class Certificate:
    """
    PEM-encoded client certificate used for certificate authentication.

    Example:
        >>> cert = Certificate.from_file("/path/to/client.crt")
        >>> print(cert.subject, cert.fingerprint)
    """

    data: bytes = field(repr=False)

    def __post_init__(self) -> None:
        try:
            x509.load_pem_x509_certificate(self.data)
        except ValueError as e:
            raise InvalidCredentialsError(f"Invalid PEM certificate: {e}") from e

    @classmethod
    def from_file(cls, path: str) -> Certificate:
        """Load a certificate from a PEM file."""
        with open(path, "rb") as f:
            return cls(f.read())

    @property
    def subject(self) -> str:
        """RFC 4514 subject of the certificate."""
        return x509.load_pem_x509_certificate(self.data).subject.rfc4514_string()

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint as lowercase hex."""
        cert = x509.load_pem_x509_certificate(self.data)
        return cert.fingerprint(hashes.SHA256()).hex()


@dataclass(frozen=True)
class Credentials:
    """
    User credentials for authentication.

    Supports username/password, client certificate and static token
    authentication. Secrets are kept out of repr() and never logged.
    """

    username: str
    password: str | None = field(default=None, repr=False)
    certificate: Certificate | None = None
    static_token: str | None = field(default=None, repr=False)

    def validate(self) -> None:
        """
        Check that the credentials can be sent to the server.

        Raises:
            InvalidCredentialsError: If the username is empty or no
                authentication method is present.
        """
        if not self.username:
            raise InvalidCredentialsError("Username is required")
        if self.password is None and self.certificate is None and self.static_token is None:
            raise InvalidCredentialsError(
                "At least one authentication method (password, certificate, or token) is required"
            )


@dataclass(frozen=True)
class AuthToken:
    """
    Authentication token issued by the server.

    A token is valid while the current time is before ``expires_at``.
    Tokens are replaced on refresh, never modified.
    """

    user_id: int
    roles: frozenset[Role]
    expires_at: datetime
    signature: bytes = field(repr=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the token has expired."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def time_until_expiration(self, now: datetime | None = None) -> timedelta:
        """Time left before expiry, zero once expired."""
        now = now or datetime.now(timezone.utc)
        if now >= self.expires_at:
            return timedelta(0)
        return self.expires_at - now

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """Check if the token expires within the given window."""
        return self.time_until_expiration(now) <= window

    def has_role(self, role: Role) -> bool:
        return role in self.roles
