# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
TLS configuration for PyQDB client connections.
"""

import ssl
from dataclasses import dataclass
from typing import Optional


@dataclass
class TLSConfig:
    """
    TLS/SSL configuration for secure connections.

    Security Levels:
    - No TLS: Plain text (development only)
    - TLS (Server Auth): Server certificate validation
    - TLS + CA: Custom CA certificate (private PKI)
    - Mutual TLS: Client + server certificates
    - Insecure TLS: Skip certificate verification (testing/debugging only)

    Examples:
        # Mutual TLS with a private CA
        >>> tls = TLSConfig(
        ...     enabled=True,
        ...     cert_file="/path/to/client.crt",
        ...     key_file="/path/to/client.key",
        ...     ca_file="/path/to/ca.crt",
        ...     server_name="qdb-node"
        ... )

        # System CA certificates
        >>> tls = TLSConfig(enabled=True)
    """

    enabled: bool = False
    """Enable TLS encryption."""

    cert_file: Optional[str] = None
    """Path to client certificate file (for mutual TLS)."""

    key_file: Optional[str] = None
    """Path to client private key file (for mutual TLS)."""

    ca_file: Optional[str] = None
    """Path to CA certificate file for server verification."""

    server_name: Optional[str] = None
    """Expected server name in certificate (for SNI and verification)."""

    insecure_skip_verify: bool = False
    """Skip certificate verification (INSECURE - use only for testing)."""

    def create_context(self) -> Optional[ssl.SSLContext]:
        """Build the client SSL context, or None when TLS is disabled."""
        if not self.enabled:
            return None

        context = ssl.create_default_context()
        if self.insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        elif self.ca_file:
            context.load_verify_locations(self.ca_file)

        if self.cert_file and self.key_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        return context
