"""Placeholder token substitution over checked-out repository trees.

Templates mark deployment-specific values with bracketed upper-case
tokens such as ``<CLUSTER_NAME>``. Token names are matched after
normalization (brackets and underscores dropped, case folded), so
``<ARGOCD_INGRESS_URL>`` and ``<ARGO_CD_INGRESS_URL>`` resolve to the
same value. Tokens with no known value are left as they are.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from types import MappingProxyType

import structlog

from provisioner.domain.models.cloud_provider import CloudProvider, GitProtocol
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.services import RenderedTree, TemplateRenderer


logger = structlog.get_logger(__name__)

TOKEN_PATTERN = re.compile(r"<[A-Z0-9_]+>")

TemplateValues = Mapping[str, str]

CLOUDFLARE_ISSUER_ANNOTATIONS = (
    "cert-manager.io/issuer: cloudflare-origin-issuer",
    "cert-manager.io/issuer-kind: OriginIssuer",
    "cert-manager.io/issuer-group: cert-manager.k8s.cloudflare.com",
    'external-dns.alpha.kubernetes.io/cloudflare-proxied: "true"',
)
LETSENCRYPT_ISSUER_ANNOTATIONS = ('cert-manager.io/cluster-issuer: "letsencrypt-prod"', "", "", "")


def normalize_token(token: str) -> str:
    return token.strip("<>").replace("_", "").lower()


def git_fqdn(git_provider: str, protocol: GitProtocol) -> str:
    if protocol is GitProtocol.HTTPS:
        return f"https://{git_provider}.com/"
    return f"git@{git_provider}.com:"


def issuer_annotations(use_cloudflare_origin_issuer: bool) -> dict[str, str]:
    annotations = (
        CLOUDFLARE_ISSUER_ANNOTATIONS if use_cloudflare_origin_issuer else LETSENCRYPT_ISSUER_ANNOTATIONS
    )
    return {
        f"<CERT_MANAGER_ISSUER_ANNOTATION_{i}>": value
        for i, value in enumerate(annotations, start=1)
    }


def external_dns_names(cluster: Cluster) -> tuple[str, str]:
    """Environment variable name and secret key external-dns reads its token from."""
    if cluster.dns_provider == "cloudflare":
        return "CF_API_TOKEN", "cf-api-token"
    cloud = cluster.cloud_provider.value
    return f"{cloud.upper()}_TOKEN", f"{cloud}-token"


def build_gitops_values(
    cluster: Cluster, paths: ClusterPaths, gitops_repo_url: str
) -> TemplateValues:
    domain = cluster.full_domain_name
    git = cluster.git_provider.value
    owner = cluster.git_auth.owner
    user = cluster.git_auth.user
    token_env, secret_key = external_dns_names(cluster)

    values = {
        "<ALERTS_EMAIL>": cluster.alerts_email,
        "<ATLANTIS_ALLOW_LIST>": f"{cluster.git_host}/{owner}/*",
        "<CLOUD_PROVIDER>": cluster.cloud_provider.value,
        "<CLOUD_REGION>": cluster.cloud_region,
        "<CLUSTER_ID>": cluster.cluster_id,
        "<CLUSTER_NAME>": cluster.cluster_name,
        "<CLUSTER_TYPE>": cluster.cluster_type.value,
        "<CONTAINER_REGISTRY_URL>": f"{cluster.container_registry_host}/{owner}",
        "<DOMAIN_NAME>": domain,
        "<KUBEFIRST_STATE_STORE_BUCKET>": cluster.state_store_bucket,
        "<KUBEFIRST_ARTIFACTS_BUCKET>": cluster.artifacts_bucket,
        "<STATE_STORE_BUCKET_HOSTNAME>": cluster.state_store_details.hostname,
        "<KUBECONFIG_PATH>": paths.kubeconfig,
        "<KUBE_CONFIG_PATH>": paths.kubeconfig,
        "<ARGOCD_INGRESS_URL>": f"https://argocd.{domain}",
        "<ARGOCD_INGRESS_NO_HTTPS_URL>": f"argocd.{domain}",
        "<ARGO_WORKFLOWS_INGRESS_URL>": f"https://argo.{domain}",
        "<ARGO_WORKFLOWS_INGRESS_NO_HTTPS_URL>": f"argo.{domain}",
        "<ATLANTIS_INGRESS_URL>": f"https://atlantis.{domain}",
        "<ATLANTIS_INGRESS_NO_HTTPS_URL>": f"atlantis.{domain}",
        "<ATLANTIS_WEBHOOK_URL>": cluster.atlantis_webhook_url,
        "<CHART_MUSEUM_INGRESS_URL>": f"https://chartmuseum.{domain}",
        "<VAULT_INGRESS_URL>": f"https://vault.{domain}",
        "<VAULT_INGRESS_NO_HTTPS_URL>": f"vault.{domain}",
        "<VOUCH_INGRESS_URL>": f"https://vouch.{domain}",
        "<GIT_DESCRIPTION>": f"{git} hosted git",
        "<GIT_NAMESPACE>": "N/A",
        "<GIT_PROVIDER>": git,
        "<GIT_PROTOCOL>": cluster.git_protocol.value,
        "<GIT_RUNNER>": f"{git} Runner",
        "<GIT_RUNNER_DESCRIPTION>": f"Self Hosted {git} Runner",
        "<GIT_RUNNER_NS>": f"{git}-runner",
        "<GIT_URL>": cluster.gitops_template_url,
        "<GIT_FQDN>": git_fqdn(git, cluster.git_protocol),
        "<GITHUB_HOST>": f"https://github.com/{owner}/gitops.git",
        "<GITHUB_OWNER>": owner,
        "<GITHUB_USER>": user,
        "<GITLAB_HOST>": cluster.git_host,
        "<GITLAB_OWNER>": owner,
        "<GITLAB_OWNER_GROUP_ID>": str(cluster.gitlab_owner_group_id),
        "<GITLAB_USER>": user,
        "<GITOPS_REPO_ATLANTIS_WEBHOOK_URL>": cluster.atlantis_webhook_url,
        "<GITOPS_REPO_NO_HTTPS_URL>": f"{cluster.git_host}/{owner}/gitops.git",
        "<GITOPS_REPO_URL>": gitops_repo_url,
        "<EXTERNAL_DNS_PROVIDER_NAME>": cluster.dns_provider or cluster.cloud_provider.value,
        "<EXTERNAL_DNS_PROVIDER_TOKEN_ENV_NAME>": token_env,
        "<EXTERNAL_DNS_PROVIDER_SECRET_NAME>": f"{cluster.cloud_provider.value}-creds",
        "<EXTERNAL_DNS_PROVIDER_SECRET_KEY>": secret_key,
        "<USE_TELEMETRY>": "false",
        **issuer_annotations(bool(cluster.cloudflare_auth.origin_ca_issuer_key)),
    }

    if cluster.cloud_provider is CloudProvider.AWS:
        account = cluster.aws_auth.account_id
        values.update(
            {
                "<AWS_ACCOUNT_ID>": account,
                "<AWS_IAM_ARN_ACCOUNT_ROOT>": f"arn:aws:iam::{account}:root",
                "<AWS_NODE_CAPACITY_TYPE>": "ON_DEMAND",
            }
        )
        if cluster.aws_auth.use_ecr:
            values["<CONTAINER_REGISTRY_URL>"] = (
                f"{account}.dkr.ecr.{cluster.cloud_region}.amazonaws.com"
            )
    elif cluster.cloud_provider is CloudProvider.GOOGLE:
        values["<GOOGLE_PROJECT>"] = cluster.google_auth.project_id
    elif cluster.cloud_provider is CloudProvider.AZURE:
        values.update(
            {
                "<AZURE_STORAGE_ACCOUNT_NAME>": cluster.state_store_details.name,
                "<AZURE_STORAGE_CONTAINER_NAME>": "terraform",
                "<AZURE_STORAGE_RESOURCE_GROUP>": f"{cluster.cluster_name}-state",
            }
        )

    return MappingProxyType(values)


def build_metaphor_values(cluster: Cluster) -> TemplateValues:
    domain = cluster.full_domain_name
    return MappingProxyType(
        {
            "<CLUSTER_NAME>": cluster.cluster_name,
            "<CLOUD_REGION>": cluster.cloud_region,
            "<CONTAINER_REGISTRY_URL>": (
                f"{cluster.container_registry_host}/{cluster.git_auth.owner}/metaphor"
            ),
            "<DOMAIN_NAME>": domain,
            "<METAPHOR_DEVELOPMENT_INGRESS_URL>": f"metaphor-development.{domain}",
            "<METAPHOR_STAGING_INGRESS_URL>": f"metaphor-staging.{domain}",
            "<METAPHOR_PRODUCTION_INGRESS_URL>": f"metaphor-production.{domain}",
        }
    )


class LiteralTokenRenderer(TemplateRenderer):
    """Literal find-and-replace of known tokens, file by file."""

    def render(self, root: str, values: Mapping[str, str]) -> RenderedTree:
        lookup = {normalize_token(token): value for token, value in values.items()}

        def replace(match: re.Match[str]) -> str:
            return lookup.get(normalize_token(match.group(0)), match.group(0))

        scanned = changed = 0
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d != ".git"]
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                scanned += 1
                if self._render_file(path, replace):
                    changed += 1

        logger.info("tree_detokenized", root=root, files_scanned=scanned, files_changed=changed)
        return RenderedTree(root=root, files_scanned=scanned, files_changed=changed)

    @staticmethod
    def _render_file(path: str, replace: Callable[[re.Match[str]], str]) -> bool:
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except UnicodeDecodeError:
            return False
        except OSError as e:
            raise DetokenizeError(path, e) from e

        rendered = TOKEN_PATTERN.sub(replace, content)
        if rendered == content:
            return False

        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(rendered)
        except OSError as e:
            raise DetokenizeError(path, e) from e
        return True


class DetokenizeError(Exception):
    """Raised when a file in the tree cannot be read or written."""

    def __init__(self, path: str, cause: Exception) -> None:
        self.path = path
        super().__init__(f"detokenize {path}: {cause}")
