"""Provider adapter dispatch on the (cloud, git) pair."""

from __future__ import annotations

from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import ConfigurationError
from provisioner.domain.ports.providers import AdapterResolver, ProviderAdapter
from provisioner.infrastructure.providers.base import BaseProviderAdapter, VAULT_PORT_FORWARD_URL
from provisioner.infrastructure.providers.clouds import (
    AwsAdapter,
    AzureAdapter,
    CivoAdapter,
    DigitaloceanAdapter,
    GoogleAdapter,
    VultrAdapter,
)
from provisioner.infrastructure.providers.git_env import GIT_ENVS


ADAPTERS: dict[CloudProvider, type[BaseProviderAdapter]] = {
    CloudProvider.AWS: AwsAdapter,
    CloudProvider.AZURE: AzureAdapter,
    CloudProvider.CIVO: CivoAdapter,
    CloudProvider.DIGITALOCEAN: DigitaloceanAdapter,
    CloudProvider.GOOGLE: GoogleAdapter,
    CloudProvider.VULTR: VultrAdapter,
}


def resolve_adapter(
    cloud: CloudProvider | str,
    git: GitProvider | str,
    vault_addr: str = VAULT_PORT_FORWARD_URL,
) -> ProviderAdapter:
    """Return the adapter for a cloud and git provider pair.

    Raises ConfigurationError for a provider this build does not support.
    """
    try:
        cloud_provider = CloudProvider(cloud)
    except ValueError as e:
        raise ConfigurationError(f"Unsupported cloud provider: {cloud}") from e
    try:
        git_provider = GitProvider(git)
    except ValueError as e:
        raise ConfigurationError(f"Unsupported git provider: {git}") from e

    return ADAPTERS[cloud_provider](GIT_ENVS[git_provider], vault_addr)


def adapter_resolver(vault_addr: str = VAULT_PORT_FORWARD_URL) -> AdapterResolver:
    """Bind the Vault address Terraform reaches through the port-forward."""

    def resolve(cloud: CloudProvider, git: GitProvider) -> ProviderAdapter:
        return resolve_adapter(cloud, git, vault_addr)

    return resolve
