"""Behavior shared by every cloud provider adapter."""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Mapping

import structlog

from provisioner.domain.models.cloud_provider import GitProtocol
from provisioner.domain.models.cluster import Cluster, ConfigurationError
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.providers import GitEnv, ProviderAdapter, TerraformModule
from provisioner.domain.ports.services import KubernetesClient
from provisioner.infrastructure.gitops.detokenize import external_dns_names


logger = structlog.get_logger(__name__)

VAULT_PORT_FORWARD_URL = "http://127.0.0.1:8200"

PLATFORM_NAMESPACES = [
    "argocd",
    "argo",
    "atlantis",
    "chartmuseum",
    "cert-manager",
    "kubefirst",
    "external-dns",
    "external-secrets-operator",
    "vault",
]
SERVICE_ACCOUNTS = (
    ("atlantis", "atlantis"),
    ("external-secrets-operator", "external-secrets"),
)
CLOUDFLARE_CREDS_NAMESPACES = ("argo", "atlantis", "chartmuseum", "kubefirst", "vault")

STATE_STORE_KEYS = frozenset(
    {
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "TF_VAR_aws_access_key_id",
        "TF_VAR_aws_secret_access_key",
        "TF_VAR_aws_session_token",
    }
)
VAULT_ACCESS_KEYS = frozenset({"VAULT_ADDR", "VAULT_TOKEN"})
VAULT_MODULE_KEYS = frozenset(
    {
        "TF_VAR_email_address",
        "TF_VAR_vault_addr",
        "TF_VAR_vault_token",
        "TF_VAR_cloudflare_api_key",
        "TF_VAR_cloudflare_origin_ca_api_key",
    }
)


def state_store_env(cluster: Cluster) -> dict[str, str]:
    """S3-compatible backend credentials in the variable names Terraform reads."""
    creds = cluster.state_store_credentials
    return {
        "AWS_ACCESS_KEY_ID": creds.access_key_id,
        "AWS_SECRET_ACCESS_KEY": creds.secret_access_key,
        "AWS_SESSION_TOKEN": creds.session_token,
        "TF_VAR_aws_access_key_id": creds.access_key_id,
        "TF_VAR_aws_secret_access_key": creds.secret_access_key,
        "TF_VAR_aws_session_token": creds.session_token,
    }


class BaseProviderAdapter(ProviderAdapter):
    """Common Terraform environment assembly and cluster bootstrap.

    Subclasses supply the cloud half of every module environment through
    :meth:`cloud_env` and declare its variable names in ``cloud_keys``.
    Vault-only cloud variables go through :meth:`vault_cloud_env` and
    ``vault_cloud_keys``.
    """

    cloud_keys: frozenset[str] = frozenset()
    vault_cloud_keys: frozenset[str] = frozenset()

    def __init__(self, git_env: GitEnv, vault_addr: str = VAULT_PORT_FORWARD_URL) -> None:
        self.git_env = git_env
        self.vault_addr = vault_addr

    @property
    def auto_unseal(self) -> bool:
        return False

    @abstractmethod
    def cloud_env(self, cluster: Cluster) -> dict[str, str]:
        """Cloud credentials and settings every module receives."""

    @abstractmethod
    def missing_cloud_credentials(self, cluster: Cluster) -> list[str]:
        """Names of required cloud credentials that are empty."""

    def vault_cloud_env(self, cluster: Cluster) -> dict[str, str]:
        return {}

    def cloud_dns_token(self, cluster: Cluster) -> str:
        """Token external-dns uses when the cloud hosts the zone."""
        return ""

    def kms_key_alias(self, cluster: Cluster) -> str:
        return ""

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------

    def validate_credentials(self, cluster: Cluster) -> None:
        missing = []
        if not cluster.git_auth.token:
            missing.append(f"{self.git_env.provider.value} token")
        if not cluster.git_auth.owner:
            missing.append(f"{self.git_env.provider.value} owner")
        if cluster.dns_provider == "cloudflare" and not cluster.cloudflare_auth.api_token:
            missing.append("cloudflare api token")
        missing.extend(self.missing_cloud_credentials(cluster))
        if missing:
            raise ConfigurationError(
                f"Missing credentials for {self.cloud.value}/{self.git_env.provider.value}: "
                + ", ".join(missing)
            )

    def build_terraform_env(
        self,
        module: TerraformModule,
        cluster: Cluster,
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        env = dict(existing or {})
        env.update(self.cloud_env(cluster))
        env.update(self.git_env.module_env(module, cluster))

        if module in (TerraformModule.VAULT, TerraformModule.USERS):
            env["VAULT_ADDR"] = self.vault_addr
            env["VAULT_TOKEN"] = cluster.vault_auth.root_token

        if module is TerraformModule.VAULT:
            env.update(
                {
                    "TF_VAR_email_address": cluster.alerts_email,
                    "TF_VAR_vault_addr": self.vault_addr,
                    "TF_VAR_vault_token": cluster.vault_auth.root_token,
                    "TF_VAR_cloudflare_api_key": cluster.cloudflare_auth.api_token,
                    "TF_VAR_cloudflare_origin_ca_api_key": cluster.cloudflare_auth.origin_ca_issuer_key,
                }
            )
            env.update(self.vault_cloud_env(cluster))
        return env

    def required_terraform_keys(self, module: TerraformModule) -> frozenset[str]:
        keys = self.cloud_keys | self.git_env.module_keys(module)
        if module in (TerraformModule.VAULT, TerraformModule.USERS):
            keys |= VAULT_ACCESS_KEYS
        if module is TerraformModule.VAULT:
            keys |= VAULT_MODULE_KEYS | self.vault_cloud_keys
        return keys

    def external_dns_token(self, cluster: Cluster) -> str:
        if cluster.dns_provider == "cloudflare":
            return cluster.cloudflare_auth.api_token
        return self.cloud_dns_token(cluster)

    async def bootstrap(self, kube: KubernetesClient, cluster: Cluster) -> None:
        await kube.ensure_namespaces(PLATFORM_NAMESPACES)
        for namespace, name in SERVICE_ACCOUNTS:
            await kube.ensure_service_account(namespace, name)

        await kube.create_secret_if_absent(
            "argocd",
            "repo-credentials-template",
            self._repository_credentials(cluster),
            labels={"argocd.argoproj.io/secret-type": "repository"},
            annotations={"managed-by": "argocd.argoproj.io"},
        )

        cloudflare_token = cluster.cloudflare_auth.api_token
        _, secret_key = external_dns_names(cluster)
        await kube.create_secret_if_absent(
            "external-dns",
            f"{self.cloud.value}-creds",
            {
                secret_key: self.external_dns_token(cluster),
                "cf-api-token": cloudflare_token,
                "cloudflare-token": cloudflare_token,
            },
        )
        for namespace in CLOUDFLARE_CREDS_NAMESPACES:
            await kube.create_secret_if_absent(
                namespace,
                "cloudflare-creds",
                {"origin-ca-api-key": cluster.cloudflare_auth.origin_ca_issuer_key},
            )
        logger.info("cluster_bootstrapped", cloud_provider=self.cloud.value)

    async def get_kubeconfig(self, paths: ClusterPaths, cluster: Cluster) -> str:
        # Written by the cloud Terraform module.
        return paths.kubeconfig

    async def delete_block_storage(
        self, kube: KubernetesClient, cluster: Cluster, timeout: int
    ) -> None:
        removed = await kube.delete_persistent_volume_claims(timeout)
        logger.info("block_storage_released", cloud_provider=self.cloud.value, claims=removed)

    @staticmethod
    def _repository_credentials(cluster: Cluster) -> dict[str, str]:
        user = cluster.git_auth.user or cluster.git_auth.owner
        data = {
            "type": "git",
            "name": f"{user}-gitops",
            "url": cluster.repo_url("gitops"),
        }
        if cluster.git_protocol is GitProtocol.SSH:
            data["sshPrivateKey"] = cluster.git_auth.private_key
        else:
            data["username"] = user
            data["password"] = cluster.git_auth.token
        return data
