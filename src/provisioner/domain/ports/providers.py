"""Cloud and git provider adapter ports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from enum import Enum

from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.services import KubernetesClient


class TerraformModule(str, Enum):
    """Terraform entrypoints the pipeline applies."""

    GIT = "git"
    CLOUD = "cloud"
    VAULT = "vault"
    USERS = "users"


class GitEnv(ABC):
    """Port for git-provider-specific Terraform variables."""

    provider: GitProvider

    @abstractmethod
    def module_env(self, module: TerraformModule, cluster: Cluster) -> dict[str, str]:
        """Variables a module needs from the git provider."""

    @abstractmethod
    def module_keys(self, module: TerraformModule) -> frozenset[str]:
        """Names of the variables ``module_env`` always produces."""


class ProviderAdapter(ABC):
    """Port for everything that differs between cloud providers.

    One adapter is resolved per (cloud, git) pair and carried by the
    pipeline context; steps never branch on the provider name.
    """

    cloud: CloudProvider
    git_env: GitEnv

    @property
    @abstractmethod
    def auto_unseal(self) -> bool:
        """Whether Vault unseals itself through the cloud KMS."""

    @abstractmethod
    def validate_credentials(self, cluster: Cluster) -> None:
        """Raise ConfigurationError when required credentials are missing."""

    @abstractmethod
    def build_terraform_env(
        self,
        module: TerraformModule,
        cluster: Cluster,
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Assemble the full environment for a Terraform module."""

    @abstractmethod
    def required_terraform_keys(self, module: TerraformModule) -> frozenset[str]:
        """Variable names a module's environment must contain."""

    @abstractmethod
    def external_dns_token(self, cluster: Cluster) -> str:
        """Token external-dns uses against the DNS provider."""

    @abstractmethod
    def kms_key_alias(self, cluster: Cluster) -> str:
        """Alias of the cloud KMS key Vault unseals with, or an empty string."""

    @abstractmethod
    async def bootstrap(self, kube: KubernetesClient, cluster: Cluster) -> None:
        """Create the namespaces, secrets and service accounts the platform expects."""

    @abstractmethod
    async def get_kubeconfig(self, paths: ClusterPaths, cluster: Cluster) -> str:
        """Make a kubeconfig for the new cluster available and return its path."""

    @abstractmethod
    async def delete_block_storage(
        self, kube: KubernetesClient, cluster: Cluster, timeout: int
    ) -> None:
        """Release persistent volumes before the cluster is destroyed."""


AdapterResolver = Callable[[CloudProvider, GitProvider], ProviderAdapter]
