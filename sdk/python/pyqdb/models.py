# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
Pydantic configuration models for the PyQDB client core.

Provides validated configuration for the client, the connection pool and
the retry policy.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .protocol import DEFAULT_COMPRESSION_THRESHOLD, DEFAULT_PORT, MAX_MESSAGE_SIZE
from .tls import TLSConfig
from .types import Certificate, Credentials


def split_host(address: str) -> tuple[str, int]:
    """
    Split a ``host:port`` address.

    The port defaults to 7000; IPv6 literals may be bracketed.
    """
    address = address.strip()
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, port = address.split(":")
    else:
        host, port = address, ""
    if not host:
        raise ValueError(f"Missing host in address: {address!r}")
    if not port:
        return host, DEFAULT_PORT
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Invalid port in address: {address!r}")
    return host, int(port)


# ============================================================================
# Configuration Models
# ============================================================================


class PoolConfig(BaseModel):
    """Configuration for the connection pool."""

    model_config = ConfigDict(validate_assignment=True)

    min_connections: int = Field(default=5, ge=0)
    max_connections: int = Field(default=20, ge=1)
    connection_timeout_ms: int = Field(default=5000, ge=1, le=300000)
    idle_timeout_ms: int = Field(default=60000, ge=0)
    max_lifetime_ms: int = Field(default=1_800_000, ge=0)
    unhealthy_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures after which a node is considered unhealthy",
    )

    @model_validator(mode="after")
    def check_bounds(self) -> PoolConfig:
        if self.min_connections > self.max_connections:
            raise ValueError("min_connections must not exceed max_connections")
        return self


class RetryConfig(BaseModel):
    """
    Configuration for retries with exponential backoff.

    The delay before retry n is
    ``min(initial_backoff_ms * backoff_multiplier ** (n - 1), max_backoff_ms)``.
    """

    model_config = ConfigDict(validate_assignment=True)

    max_retries: int = Field(default=3, ge=0, le=100)
    initial_backoff_ms: int = Field(default=100, ge=0)
    max_backoff_ms: int = Field(default=5000, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=1.0)

    @model_validator(mode="after")
    def check_backoff(self) -> RetryConfig:
        if self.initial_backoff_ms > self.max_backoff_ms:
            raise ValueError("initial_backoff_ms must not exceed max_backoff_ms")
        return self

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Fail on the first error."""
        return cls(max_retries=0, initial_backoff_ms=0, max_backoff_ms=0)

    @classmethod
    def aggressive(cls) -> RetryConfig:
        """More retries with short delays, for operations that must fail fast."""
        return cls(max_retries=5, initial_backoff_ms=50, max_backoff_ms=2000, backoff_multiplier=1.5)

    @classmethod
    def conservative(cls) -> RetryConfig:
        """Few retries with long delays, for operations that can wait."""
        return cls(max_retries=2, initial_backoff_ms=200, max_backoff_ms=10000, backoff_multiplier=3.0)


class ClientConfig(BaseModel):
    """Configuration for the PyQDB client."""

    model_config = ConfigDict(validate_assignment=True)

    hosts: str | list[str] = Field(
        default="localhost:7000",
        description="Comma-separated list of host:port addresses or list of strings",
    )

    # Authentication settings
    username: str = ""
    password: str | None = Field(default=None, repr=False)
    certificate_file: str | None = None
    static_token: str | None = Field(default=None, repr=False)

    # TLS settings
    enable_tls: bool = False
    tls_ca_file: str | None = None
    tls_cert_file: str | None = None
    tls_key_file: str | None = None
    tls_server_name: str | None = None
    tls_insecure_skip_verify: bool = False

    # Request settings
    timeout_ms: int = Field(default=5000, ge=1, le=300000)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    # Protocol settings
    compression_enabled: bool = False
    compression_threshold_bytes: int = Field(default=DEFAULT_COMPRESSION_THRESHOLD, ge=0)
    max_message_size: int = Field(default=MAX_MESSAGE_SIZE, ge=64)
    negotiate_features: bool = True

    # Token settings
    token_refresh_margin_ms: int = Field(
        default=30000,
        ge=0,
        description="Refresh a token proactively when it expires within this window",
    )

    # Client identification
    client_id: str = "pyqdb-client"

    @field_validator("hosts")
    @classmethod
    def validate_hosts(cls, v: str | list[str]) -> str | list[str]:
        hosts = [s.strip() for s in v.split(",")] if isinstance(v, str) else list(v)
        hosts = [h for h in hosts if h]
        if not hosts:
            raise ValueError("At least one host is required")
        for host in hosts:
            split_host(host)
        return v

    def get_hosts(self) -> list[str]:
        """Get the list of configured host addresses."""
        if isinstance(self.hosts, str):
            return [s.strip() for s in self.hosts.split(",") if s.strip()]
        return [h.strip() for h in self.hosts if h.strip()]

    def credentials(self) -> Credentials | None:
        """Build credentials from the configured settings, or None without a username."""
        if not self.username:
            return None
        certificate = Certificate.from_file(self.certificate_file) if self.certificate_file else None
        return Credentials(
            username=self.username,
            password=self.password,
            certificate=certificate,
            static_token=self.static_token,
        )

    def tls_config(self) -> TLSConfig:
        """TLS settings as a TLSConfig."""
        return TLSConfig(
            enabled=self.enable_tls,
            cert_file=self.tls_cert_file,
            key_file=self.tls_key_file,
            ca_file=self.tls_ca_file,
            server_name=self.tls_server_name,
            insecure_skip_verify=self.tls_insecure_skip_verify,
        )
