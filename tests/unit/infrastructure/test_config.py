"""Unit tests for application configuration."""

from __future__ import annotations

import pytest

from provisioner.config import (
    CheckpointBackend,
    CheckpointSettings,
    DatabaseSettings,
    DnsSettings,
    Environment,
    KubernetesSettings,
    ObservabilitySettings,
    Settings,
    StateStoreSettings,
    TerraformSettings,
)


class TestDatabaseSettings:
    def test_defaults(self) -> None:
        settings = DatabaseSettings()
        assert settings.host == "localhost"
        assert settings.port == 5432
        assert settings.name == "provisioner"

    def test_async_url(self) -> None:
        settings = DatabaseSettings(host="db", port=5432, name="test", user="u", password="p")
        assert settings.async_url == "postgresql+asyncpg://u:p@db:5432/test"


class TestCheckpointSettings:
    def test_defaults(self) -> None:
        settings = CheckpointSettings()
        assert settings.backend == CheckpointBackend.MEMORY
        assert settings.namespace == "kubefirst"

    def test_backend_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHECKPOINT_BACKEND", "kubernetes")
        assert CheckpointSettings().backend == CheckpointBackend.KUBERNETES


class TestTerraformSettings:
    def test_single_retry_backoff(self) -> None:
        settings = TerraformSettings()
        assert settings.binary == "terraform"
        assert settings.retry_backoff_seconds == 10.0


class TestKubernetesSettings:
    def test_wait_timeouts(self) -> None:
        settings = KubernetesSettings()
        assert settings.argocd_ready_timeout == 300
        assert settings.vault_ready_timeout == 1200
        assert settings.final_check_timeout == 3600
        assert settings.volume_cleanup_timeout == 300

    def test_port_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("K8S_VAULT_LOCAL_PORT", "18200")
        assert KubernetesSettings().vault_local_port == 18200

    def test_cluster_ready_timeout(self) -> None:
        assert KubernetesSettings().cluster_ready_timeout == 120


class TestDnsSettings:
    def test_defaults(self) -> None:
        settings = DnsSettings()
        assert settings.resolver_url == "https://dns.google/resolve"
        assert settings.liveness_timeout == 300

    def test_resolver_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DNS_RESOLVER_URL", "https://cloudflare-dns.com/dns-query")
        assert DnsSettings().resolver_url == "https://cloudflare-dns.com/dns-query"


class TestStateStoreSettings:
    def test_defaults(self) -> None:
        settings = StateStoreSettings()
        assert settings.civo_api_url == "https://api.civo.com/v2"
        assert settings.vultr_region == "ewr"
        assert settings.poll_attempts == 12

    def test_spaces_region_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STATE_STORE_SPACES_REGION", "ams3")
        assert StateStoreSettings().digitalocean_spaces_region == "ams3"


class TestObservabilitySettings:
    def test_defaults(self) -> None:
        settings = ObservabilitySettings()
        assert settings.tracing_enabled is False
        assert settings.metrics_enabled is True
        assert settings.log_level == "INFO"


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.api_prefix == "/api/v1"
        assert settings.port == 8081

    def test_environment_enum(self) -> None:
        settings = Settings(environment=Environment.TESTING)
        assert settings.environment == Environment.TESTING

    def test_nested_groups(self) -> None:
        settings = Settings()
        assert isinstance(settings.checkpoint, CheckpointSettings)
        assert isinstance(settings.terraform, TerraformSettings)
