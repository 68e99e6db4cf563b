"""Local gitops and metaphor working copies built from the platform template."""

from __future__ import annotations

import asyncio
import os
import shutil

import structlog

from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.services import GitopsWorkspace, GitRepository, TemplateRenderer
from provisioner.infrastructure.gitops.detokenize import (
    build_gitops_values,
    build_metaphor_values,
)


logger = structlog.get_logger(__name__)

DEFAULT_BRANCH = "main"
KMS_KEY_TOKEN = "<AWS_KMS_KEY_ID>"

PLATFORMS = tuple(f"{cloud.value}-{git.value}" for cloud in CloudProvider for git in GitProvider)

# Relative to templates/ inside the driver directory.
CLOUDFLARE_ISSUER_FILES = (
    "mgmt/cloudflare-origin-ca-issuer.yaml",
    "mgmt/cloudflare-origin-issuer-crd.yaml",
    "mgmt/components/argo-workflows/cloudflareissuer.yaml",
    "mgmt/components/argocd/cloudflareissuer.yaml",
    "mgmt/components/atlantis/cloudflareissuer.yaml",
    "mgmt/components/chartmuseum/cloudflareissuer.yaml",
    "mgmt/components/kubefirst/cloudflareissuer.yaml",
    "mgmt/components/vault/cloudflareissuer.yaml",
    "workload-cluster/cloudflare-origin-issuer",
    "workload-cluster/40-cloudflare-origin-issuer-crd.yaml",
    "workload-cluster/41-cloudflare-origin-ca-issuer.yaml",
    "workload-cluster/45-cloudflare-origin-issuer.yaml",
)

_COPY_IGNORE = shutil.ignore_patterns(".git", ".terraform")


def _remove(path: str) -> None:
    if os.path.isdir(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def adjust_gitops_tree(gitops_dir: str, cluster: Cluster) -> None:
    """Reduce a cloned template to the content for one platform and cluster.

    The template carries one driver directory per ``<cloud>-<git>`` pair.
    The selected driver is merged into the repository root and the others
    are dropped, then the cluster-type templates are copied into
    ``registry/clusters/<name>``.
    """
    platform = f"{cluster.cloud_provider.value}-{cluster.git_provider.value}"
    driver_dir = os.path.join(gitops_dir, platform)
    if not os.path.isdir(driver_dir):
        raise GitopsLayoutError(f"template has no {platform} directory")

    for other in PLATFORMS:
        if other != platform:
            _remove(os.path.join(gitops_dir, other))

    if not cluster.cloudflare_auth.origin_ca_issuer_key:
        for relative in CLOUDFLARE_ISSUER_FILES:
            _remove(os.path.join(driver_dir, "templates", relative))

    shutil.copytree(driver_dir, gitops_dir, ignore=_COPY_IGNORE, dirs_exist_ok=True)
    shutil.rmtree(driver_dir)

    cluster_templates = os.path.join(gitops_dir, "templates", cluster.cluster_type.value)
    if not os.path.isdir(cluster_templates):
        raise GitopsLayoutError(f"template has no templates/{cluster.cluster_type.value} directory")
    shutil.copytree(
        cluster_templates,
        os.path.join(gitops_dir, "registry", "clusters", cluster.cluster_name),
        ignore=_COPY_IGNORE,
        dirs_exist_ok=True,
    )
    _remove(os.path.join(gitops_dir, "templates", "mgmt"))
    logger.info("gitops_tree_adjusted", platform=platform, cluster_type=cluster.cluster_type.value)


def extract_metaphor(gitops_dir: str, metaphor_dir: str) -> None:
    """Move the metaphor sample application out into its own tree."""
    source = os.path.join(gitops_dir, "metaphor")
    if not os.path.isdir(source):
        raise GitopsLayoutError("template has no metaphor directory")
    _remove(metaphor_dir)
    shutil.move(source, metaphor_dir)


class FilesystemGitopsWorkspace(GitopsWorkspace):
    """Builds the two platform repositories under the cluster's working directory."""

    def __init__(self, git: GitRepository, renderer: TemplateRenderer) -> None:
        self._git = git
        self._renderer = renderer

    async def prepare(self, paths: ClusterPaths, cluster: Cluster) -> None:
        gitops_url = cluster.repo_url("gitops")
        metaphor_url = cluster.repo_url("metaphor")
        remote = cluster.git_provider.value

        # A previous attempt may have left partial trees behind.
        for stale in (paths.gitops_dir, paths.metaphor_dir):
            _remove(stale)
        os.makedirs(paths.k1_dir, exist_ok=True)

        await self._git.clone(
            cluster.gitops_template_url, cluster.gitops_template_branch, paths.gitops_dir
        )
        await asyncio.to_thread(adjust_gitops_tree, paths.gitops_dir, cluster)
        await asyncio.to_thread(extract_metaphor, paths.gitops_dir, paths.metaphor_dir)

        await asyncio.to_thread(
            self._renderer.render,
            paths.gitops_dir,
            build_gitops_values(cluster, paths, gitops_url),
        )
        await asyncio.to_thread(
            self._renderer.render, paths.metaphor_dir, build_metaphor_values(cluster)
        )

        await self._git.init(paths.metaphor_dir, DEFAULT_BRANCH)
        await self._git.commit_all(
            paths.metaphor_dir, "committing initial detokenized metaphor repo content"
        )
        await self._git.add_remote(paths.metaphor_dir, remote, metaphor_url)

        await self._git.commit_all(
            paths.gitops_dir, "committing initial detokenized gitops-template repo content"
        )
        await self._git.add_remote(paths.gitops_dir, remote, gitops_url)
        logger.info("gitops_workspace_prepared", gitops_dir=paths.gitops_dir)

    async def push(self, paths: ClusterPaths, cluster: Cluster) -> None:
        for path in (paths.gitops_dir, paths.metaphor_dir):
            await self._push(path, cluster)
        logger.info("gitops_workspace_pushed", owner=cluster.git_auth.owner)

    async def publish_kms_key(self, paths: ClusterPaths, cluster: Cluster, key_id: str) -> None:
        registry = os.path.join(paths.gitops_dir, "registry", "clusters", cluster.cluster_name)
        rendered = await asyncio.to_thread(
            self._renderer.render, registry, {KMS_KEY_TOKEN: key_id}
        )
        if rendered.files_changed:
            await self._git.commit_all(paths.gitops_dir, "committing detokenized kms key")
        await self._push(paths.gitops_dir, cluster)
        logger.info("kms_key_published", files_changed=rendered.files_changed)

    async def _push(self, path: str, cluster: Cluster) -> None:
        auth = cluster.git_auth
        await self._git.push(
            path,
            cluster.git_provider.value,
            DEFAULT_BRANCH,
            username=auth.user or auth.owner,
            token=auth.token,
            ssh_private_key=auth.private_key,
        )


class GitopsLayoutError(Exception):
    """Raised when the template repository lacks an expected directory."""
