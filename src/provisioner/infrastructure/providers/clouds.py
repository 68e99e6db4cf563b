"""Cloud provider adapters."""

from __future__ import annotations

import os

import structlog

from provisioner.domain.models.cloud_provider import CloudProvider
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.providers import GitEnv
from provisioner.infrastructure.providers.base import (
    BaseProviderAdapter,
    STATE_STORE_KEYS,
    state_store_env,
    VAULT_PORT_FORWARD_URL,
)
from provisioner.infrastructure.shell import run_command


logger = structlog.get_logger(__name__)


class AwsAdapter(BaseProviderAdapter):
    """EKS clusters. Vault unseals through KMS and the kubeconfig comes from the aws CLI."""

    cloud = CloudProvider.AWS
    cloud_keys = frozenset(
        {
            "AWS_ACCESS_KEY_ID",
            "AWS_SECRET_ACCESS_KEY",
            "AWS_SESSION_TOKEN",
            "TF_VAR_aws_access_key_id",
            "TF_VAR_aws_secret_access_key",
            "TF_VAR_aws_session_token",
            "TF_VAR_aws_region",
            "TF_VAR_hosted_zone_name",
        }
    )

    def __init__(
        self,
        git_env: GitEnv,
        vault_addr: str = VAULT_PORT_FORWARD_URL,
        aws_binary: str = "aws",
    ) -> None:
        super().__init__(git_env, vault_addr)
        self._aws = aws_binary

    @property
    def auto_unseal(self) -> bool:
        return True

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        auth = cluster.aws_auth
        return {
            "AWS_ACCESS_KEY_ID": auth.access_key_id,
            "AWS_SECRET_ACCESS_KEY": auth.secret_access_key,
            "AWS_SESSION_TOKEN": auth.session_token,
            "TF_VAR_aws_access_key_id": auth.access_key_id,
            "TF_VAR_aws_secret_access_key": auth.secret_access_key,
            "TF_VAR_aws_session_token": auth.session_token,
            "TF_VAR_aws_region": cluster.cloud_region,
            "TF_VAR_hosted_zone_name": cluster.domain_name,
        }

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        auth = cluster.aws_auth
        missing = []
        if not auth.access_key_id:
            missing.append("aws access key id")
        if not auth.secret_access_key:
            missing.append("aws secret access key")
        if not cluster.cloud_region:
            missing.append("aws region")
        return missing

    def kms_key_alias(self, cluster: Cluster) -> str:
        return f"alias/vault_{cluster.cluster_name}"

    async def get_kubeconfig(self, paths: ClusterPaths, cluster: Cluster) -> str:
        env = {**os.environ, **self.cloud_env(cluster)}
        await run_command(
            [
                self._aws,
                "eks",
                "update-kubeconfig",
                "--name",
                cluster.cluster_name,
                "--region",
                cluster.cloud_region,
                "--kubeconfig",
                paths.kubeconfig,
            ],
            env=env,
            secrets=[cluster.aws_auth.secret_access_key, cluster.aws_auth.session_token],
        )
        logger.info("kubeconfig_written", cloud_provider=self.cloud.value, path=paths.kubeconfig)
        return paths.kubeconfig


class AzureAdapter(BaseProviderAdapter):
    cloud = CloudProvider.AZURE
    cloud_keys = frozenset(
        {
            "ARM_CLIENT_ID",
            "ARM_CLIENT_SECRET",
            "ARM_TENANT_ID",
            "ARM_SUBSCRIPTION_ID",
            "ARM_ACCESS_KEY",
        }
    )

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        auth = cluster.azure_auth
        return {
            "ARM_CLIENT_ID": auth.client_id,
            "ARM_CLIENT_SECRET": auth.client_secret,
            "ARM_TENANT_ID": auth.tenant_id,
            "ARM_SUBSCRIPTION_ID": auth.subscription_id,
            # azurerm state backend
            "ARM_ACCESS_KEY": cluster.state_store_credentials.secret_access_key,
        }

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        auth = cluster.azure_auth
        return [
            name
            for name, value in (
                ("azure client id", auth.client_id),
                ("azure client secret", auth.client_secret),
                ("azure tenant id", auth.tenant_id),
                ("azure subscription id", auth.subscription_id),
            )
            if not value
        ]


class CivoAdapter(BaseProviderAdapter):
    cloud = CloudProvider.CIVO
    cloud_keys = frozenset({"CIVO_TOKEN", "TF_VAR_civo_token"}) | STATE_STORE_KEYS

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        token = cluster.civo_auth.token
        return {"CIVO_TOKEN": token, "TF_VAR_civo_token": token, **state_store_env(cluster)}

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        return [] if cluster.civo_auth.token else ["civo token"]

    def cloud_dns_token(self, cluster: Cluster) -> str:
        return cluster.civo_auth.token


class DigitaloceanAdapter(BaseProviderAdapter):
    cloud = CloudProvider.DIGITALOCEAN
    cloud_keys = frozenset({"DO_TOKEN", "TF_VAR_do_token"}) | STATE_STORE_KEYS

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        token = cluster.digitalocean_auth.token
        return {"DO_TOKEN": token, "TF_VAR_do_token": token, **state_store_env(cluster)}

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        return [] if cluster.digitalocean_auth.token else ["digitalocean token"]

    def cloud_dns_token(self, cluster: Cluster) -> str:
        return cluster.digitalocean_auth.token


class GoogleAdapter(BaseProviderAdapter):
    """GKE clusters. Vault unseals through Cloud KMS and the kubeconfig comes from gcloud."""

    cloud = CloudProvider.GOOGLE
    cloud_keys = frozenset(
        {"GOOGLE_APPLICATION_CREDENTIALS", "TF_VAR_project", "TF_VAR_gcp_region"}
    )

    def __init__(
        self,
        git_env: GitEnv,
        vault_addr: str = VAULT_PORT_FORWARD_URL,
        gcloud_binary: str = "gcloud",
    ) -> None:
        super().__init__(git_env, vault_addr)
        self._gcloud = gcloud_binary

    @property
    def auto_unseal(self) -> bool:
        return True

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        return {
            "GOOGLE_APPLICATION_CREDENTIALS": cluster.google_auth.key_file,
            "TF_VAR_project": cluster.google_auth.project_id,
            "TF_VAR_gcp_region": cluster.cloud_region,
        }

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        missing = []
        if not cluster.google_auth.key_file:
            missing.append("google application credentials")
        if not cluster.google_auth.project_id:
            missing.append("google project")
        return missing

    async def get_kubeconfig(self, paths: ClusterPaths, cluster: Cluster) -> str:
        env = {
            **os.environ,
            "KUBECONFIG": paths.kubeconfig,
            "CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE": cluster.google_auth.key_file,
        }
        await run_command(
            [
                self._gcloud,
                "container",
                "clusters",
                "get-credentials",
                cluster.cluster_name,
                "--region",
                cluster.cloud_region,
                "--project",
                cluster.google_auth.project_id,
            ],
            env=env,
        )
        logger.info("kubeconfig_written", cloud_provider=self.cloud.value, path=paths.kubeconfig)
        return paths.kubeconfig


class VultrAdapter(BaseProviderAdapter):
    cloud = CloudProvider.VULTR
    cloud_keys = frozenset({"VULTR_API_KEY"}) | STATE_STORE_KEYS
    vault_cloud_keys = frozenset({"TF_VAR_vultr_api_key"})

    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        return {"VULTR_API_KEY": cluster.vultr_auth.token, **state_store_env(cluster)}

    def vault_cloud_env(self, cluster: Cluster) -> dict[str, str]:
        return {"TF_VAR_vultr_api_key": cluster.vultr_auth.token}

    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        return [] if cluster.vultr_auth.token else ["vultr api key"]

    def cloud_dns_token(self, cluster: Cluster) -> str:
        return cluster.vultr_auth.token
