"""Application configuration using pydantic-settings."""

from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class CheckpointBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"
    KUBERNETES = "kubernetes"


class DatabaseSettings(BaseSettings):
    """Database configuration for the SQL checkpoint store."""

    host: str = Field(default="localhost", alias="DB_HOST")
    port: int = Field(default=5432, alias="DB_PORT")
    name: str = Field(default="provisioner", alias="DB_NAME")
    user: str = Field(default="provisioner", alias="DB_USER")
    password: str = Field(default="", alias="DB_PASSWORD")
    pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    max_overflow: int = Field(default=5, alias="DB_MAX_OVERFLOW")
    pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")

    @property
    def async_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.name}"
        )

    model_config = {"env_prefix": "DB_", "extra": "ignore", "populate_by_name": True}


class CheckpointSettings(BaseSettings):
    """Where the cluster record lives between runs."""

    backend: CheckpointBackend = Field(default=CheckpointBackend.MEMORY, alias="CHECKPOINT_BACKEND")
    namespace: str = Field(default="kubefirst", alias="CHECKPOINT_NAMESPACE")
    kubeconfig: str = Field(default="", alias="CHECKPOINT_KUBECONFIG")

    model_config = {"env_prefix": "CHECKPOINT_", "extra": "ignore", "populate_by_name": True}


class TerraformSettings(BaseSettings):
    """Terraform CLI configuration."""

    binary: str = Field(default="terraform", alias="TERRAFORM_BINARY")
    retry_backoff_seconds: float = Field(default=10.0, alias="TERRAFORM_RETRY_BACKOFF")

    model_config = {"env_prefix": "TERRAFORM_", "extra": "ignore", "populate_by_name": True}


class KubernetesSettings(BaseSettings):
    """Kubernetes client and readiness-wait configuration."""

    kubectl_binary: str = Field(default="kubectl", alias="KUBECTL_BINARY")
    poll_interval_seconds: float = Field(default=1.0, alias="K8S_POLL_INTERVAL")
    argocd_ready_timeout: int = Field(default=300, alias="K8S_ARGOCD_READY_TIMEOUT")
    vault_ready_timeout: int = Field(default=1200, alias="K8S_VAULT_READY_TIMEOUT")
    vault_handler_timeout: int = Field(default=240, alias="K8S_VAULT_HANDLER_TIMEOUT")
    final_check_timeout: int = Field(default=3600, alias="K8S_FINAL_CHECK_TIMEOUT")
    volume_cleanup_timeout: int = Field(default=300, alias="K8S_VOLUME_CLEANUP_TIMEOUT")
    cluster_ready_timeout: int = Field(default=120, alias="K8S_CLUSTER_READY_TIMEOUT")
    argocd_local_port: int = Field(default=8080, alias="K8S_ARGOCD_LOCAL_PORT")
    vault_local_port: int = Field(default=8200, alias="K8S_VAULT_LOCAL_PORT")

    model_config = {"env_prefix": "K8S_", "extra": "ignore", "populate_by_name": True}


class DnsSettings(BaseSettings):
    """Domain liveness lookups."""

    resolver_url: str = Field(default="https://dns.google/resolve", alias="DNS_RESOLVER_URL")
    liveness_timeout: int = Field(default=300, alias="DNS_LIVENESS_TIMEOUT")
    liveness_interval_seconds: float = Field(default=10.0, alias="DNS_LIVENESS_INTERVAL")

    model_config = {"env_prefix": "DNS_", "extra": "ignore", "populate_by_name": True}


class StateStoreSettings(BaseSettings):
    """Cloud endpoints and CLIs used to create the Terraform state store."""

    civo_api_url: str = Field(default="https://api.civo.com/v2", alias="STATE_STORE_CIVO_API_URL")
    vultr_api_url: str = Field(default="https://api.vultr.com/v2", alias="STATE_STORE_VULTR_API_URL")
    vultr_region: str = Field(default="ewr", alias="STATE_STORE_VULTR_REGION")
    digitalocean_spaces_region: str = Field(default="nyc3", alias="STATE_STORE_SPACES_REGION")
    azure_binary: str = Field(default="az", alias="STATE_STORE_AZURE_BINARY")
    gcloud_binary: str = Field(default="gcloud", alias="STATE_STORE_GCLOUD_BINARY")
    poll_interval_seconds: float = Field(default=10.0, alias="STATE_STORE_POLL_INTERVAL")
    poll_attempts: int = Field(default=12, alias="STATE_STORE_POLL_ATTEMPTS")

    model_config = {"env_prefix": "STATE_STORE_", "extra": "ignore", "populate_by_name": True}


class GitopsSettings(BaseSettings):
    """Template repositories and manifests used to build the platform."""

    template_url: str = Field(
        default="https://github.com/kubefirst/gitops-template.git",
        alias="GITOPS_TEMPLATE_URL",
    )
    template_branch: str = Field(default="main", alias="GITOPS_TEMPLATE_BRANCH")
    argocd_manifest_url: str = Field(
        default="https://github.com/kubefirst/manifests/argocd/cloud?ref=main",
        alias="GITOPS_ARGOCD_MANIFEST_URL",
    )
    vault_handler_manifest_url: str = Field(
        default="https://github.com/kubefirst/manifests/vault-handler/replicas-3?ref=main",
        alias="GITOPS_VAULT_HANDLER_MANIFEST_URL",
    )
    base_dir: str = Field(
        default=os.path.join(os.path.expanduser("~"), ".k1"),
        alias="GITOPS_BASE_DIR",
    )
    commit_author: str = Field(default="kbot <kbot@kubefirst.io>", alias="GITOPS_COMMIT_AUTHOR")

    model_config = {"env_prefix": "GITOPS_", "extra": "ignore", "populate_by_name": True}


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    otlp_endpoint: str = Field(default="http://localhost:4317", alias="OTLP_ENDPOINT")
    service_name: str = Field(default="mgmt-provisioner", alias="SERVICE_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    tracing_enabled: bool = Field(default=False, alias="TRACING_ENABLED")

    model_config = {"env_prefix": "OBS_", "extra": "ignore", "populate_by_name": True}


class Settings(BaseSettings):
    """Main application settings."""

    environment: Environment = Field(default=Environment.DEVELOPMENT, alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_prefix: str = Field(default="/api/v1", alias="API_PREFIX")
    host: str = Field(default="0.0.0.0", alias="HOST")  # noqa: S104
    port: int = Field(default=8081, alias="PORT")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    terraform: TerraformSettings = Field(default_factory=TerraformSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    dns: DnsSettings = Field(default_factory=DnsSettings)
    state_store: StateStoreSettings = Field(default_factory=StateStoreSettings)
    gitops: GitopsSettings = Field(default_factory=GitopsSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
