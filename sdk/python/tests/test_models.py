# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""Tests for configuration models and core types."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pyqdb.exceptions import InvalidCredentialsError
from pyqdb.models import ClientConfig, PoolConfig, RetryConfig, split_host
from pyqdb.tls import TLSConfig
from pyqdb.types import AuthToken, ClusterHealth, Credentials, NodeHealth, Role


class TestSplitHost:
    """Tests for host:port parsing."""

    def test_with_port(self) -> None:
        assert split_host("db1:7100") == ("db1", 7100)

    def test_default_port(self) -> None:
        assert split_host("db1") == ("db1", 7000)

    def test_ipv6(self) -> None:
        assert split_host("[::1]:7001") == ("::1", 7001)
        assert split_host("[::1]") == ("::1", 7000)

    @pytest.mark.parametrize("address", ["db1:abc", "db1:0", "db1:70000", ":7000"])
    def test_invalid(self, address: str) -> None:
        with pytest.raises(ValueError):
            split_host(address)


class TestClientConfig:
    """Tests for ClientConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = ClientConfig()
        assert config.get_hosts() == ["localhost:7000"]
        assert config.timeout_ms == 5000
        assert config.pool.max_connections == 20
        assert config.pool.unhealthy_threshold == 3
        assert config.retry.max_retries == 3
        assert config.compression_enabled is False
        assert config.max_message_size == 1024 * 1024
        assert config.token_refresh_margin_ms == 30000

    def test_hosts_string(self) -> None:
        """Test comma-separated hosts."""
        config = ClientConfig(hosts="a:7000, b:7001,")
        assert config.get_hosts() == ["a:7000", "b:7001"]

    def test_hosts_list(self) -> None:
        config = ClientConfig(hosts=["a:7000", "b"])
        assert config.get_hosts() == ["a:7000", "b"]

    def test_hosts_required(self) -> None:
        with pytest.raises(ValidationError):
            ClientConfig(hosts="")

    def test_hosts_validated(self) -> None:
        with pytest.raises(ValidationError):
            ClientConfig(hosts="a:notaport")

    def test_validate_assignment(self) -> None:
        """Test that assignments are validated."""
        config = ClientConfig()
        with pytest.raises(ValidationError):
            config.timeout_ms = 0

    def test_credentials(self) -> None:
        """Test building credentials from settings."""
        assert ClientConfig().credentials() is None
        creds = ClientConfig(username="admin", password="secret").credentials()
        assert creds == Credentials(username="admin", password="secret")

    def test_password_not_in_repr(self) -> None:
        assert "secret" not in repr(ClientConfig(username="admin", password="secret"))

    def test_tls_config(self) -> None:
        """Test TLS settings conversion."""
        config = ClientConfig(enable_tls=True, tls_ca_file="ca.crt", tls_server_name="db")
        tls = config.tls_config()
        assert tls == TLSConfig(enabled=True, ca_file="ca.crt", server_name="db")

    def test_tls_disabled_has_no_context(self) -> None:
        assert ClientConfig().tls_config().create_context() is None

    def test_tls_insecure_context(self) -> None:
        context = TLSConfig(enabled=True, insecure_skip_verify=True).create_context()
        assert context is not None
        assert context.check_hostname is False


class TestPoolAndRetryConfig:
    """Tests for PoolConfig and RetryConfig validation."""

    def test_pool_bounds(self) -> None:
        with pytest.raises(ValidationError, match="min_connections"):
            PoolConfig(min_connections=10, max_connections=5)

    def test_retry_bounds(self) -> None:
        with pytest.raises(ValidationError, match="initial_backoff_ms"):
            RetryConfig(initial_backoff_ms=1000, max_backoff_ms=10)

    def test_multiplier_above_one(self) -> None:
        with pytest.raises(ValidationError):
            RetryConfig(backoff_multiplier=1.0)

    def test_presets(self) -> None:
        assert RetryConfig.no_retry().max_retries == 0
        assert RetryConfig.aggressive().max_retries == 5
        assert RetryConfig.conservative().backoff_multiplier == 3.0


class TestCredentials:
    """Tests for Credentials validation."""

    def test_valid(self) -> None:
        Credentials("admin", password="secret").validate()
        Credentials("svc", static_token="abc").validate()

    def test_username_required(self) -> None:
        with pytest.raises(InvalidCredentialsError, match="Username"):
            Credentials("", password="secret").validate()

    def test_method_required(self) -> None:
        with pytest.raises(InvalidCredentialsError, match="authentication method"):
            Credentials("admin").validate()

    def test_secrets_not_in_repr(self) -> None:
        text = repr(Credentials("admin", password="hunter2", static_token="tok"))
        assert "hunter2" not in text
        assert "tok" not in text


class TestAuthToken:
    """Tests for AuthToken expiry."""

    def make_token(self, expires_at: datetime) -> AuthToken:
        return AuthToken(user_id=1, roles=frozenset({Role.USER}), expires_at=expires_at, signature=b"s")

    def test_expiry(self) -> None:
        """Test that a token is expired at and after expires_at."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        token = self.make_token(now)
        assert token.is_expired(now)
        assert not token.is_expired(now - timedelta(milliseconds=1))

    def test_time_until_expiration(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        token = self.make_token(now + timedelta(seconds=10))
        assert token.time_until_expiration(now) == timedelta(seconds=10)
        assert token.time_until_expiration(now + timedelta(hours=1)) == timedelta(0)

    def test_expires_within(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        token = self.make_token(now + timedelta(seconds=10))
        assert token.expires_within(timedelta(seconds=30), now)
        assert not token.expires_within(timedelta(seconds=5), now)

    def test_roles(self) -> None:
        token = self.make_token(datetime.now(timezone.utc))
        assert token.has_role(Role.USER)
        assert not token.has_role(Role.ADMIN)


class TestHealth:
    """Tests for NodeHealth and ClusterHealth."""

    def test_threshold(self) -> None:
        """Test that a node turns unhealthy at the failure threshold."""
        health = NodeHealth(node_id=1)
        health.record_failure(3)
        health.record_failure(3)
        assert health.is_healthy
        health.record_failure(3)
        assert not health.is_healthy
        assert health.consecutive_failures == 3

    def test_success_does_not_revive(self) -> None:
        health = NodeHealth(node_id=1, is_healthy=False, consecutive_failures=5)
        health.record_success()
        assert not health.is_healthy
        assert health.consecutive_failures == 0

    def test_mark_healthy_resets(self) -> None:
        health = NodeHealth(node_id=1, is_healthy=False, consecutive_failures=5)
        health.mark_healthy()
        assert health.is_healthy
        assert health.consecutive_failures == 0

    def test_cluster_health(self) -> None:
        assert ClusterHealth(total_nodes=3, healthy_nodes=1).is_healthy
        assert not ClusterHealth(total_nodes=3, healthy_nodes=0).is_healthy
