"""Cloud and git provider domain models."""

from __future__ import annotations

from enum import Enum

from provisioner.domain.models.base import ValueObject


class CloudProvider(str, Enum):
    """Supported cloud providers."""

    AWS = "aws"
    AZURE = "azure"
    CIVO = "civo"
    DIGITALOCEAN = "digitalocean"
    GOOGLE = "google"
    VULTR = "vultr"


class GitProvider(str, Enum):
    """Supported git SaaS providers."""

    GITHUB = "github"
    GITLAB = "gitlab"


class GitProtocol(str, Enum):
    HTTPS = "https"
    SSH = "ssh"


class ClusterType(str, Enum):
    MGMT = "mgmt"
    WORKLOAD = "workload"


class GitHost(ValueObject):
    """Hostnames a git provider exposes for repositories and container images."""

    provider: GitProvider
    host: str
    registry_host: str

    def https_repo_url(self, owner: str, repo: str) -> str:
        return f"https://{self.host}/{owner}/{repo}.git"

    def ssh_repo_url(self, owner: str, repo: str) -> str:
        return f"git@{self.host}:{owner}/{repo}.git"


GIT_HOSTS: dict[GitProvider, GitHost] = {
    GitProvider.GITHUB: GitHost(
        provider=GitProvider.GITHUB, host="github.com", registry_host="ghcr.io"
    ),
    GitProvider.GITLAB: GitHost(
        provider=GitProvider.GITLAB, host="gitlab.com", registry_host="registry.gitlab.com"
    ),
}
