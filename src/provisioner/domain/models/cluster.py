"""Cluster record: the single unit of orchestration state."""

from __future__ import annotations

import base64
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from provisioner.domain.models.base import DomainEntity, random_string, ValueObject
from provisioner.domain.models.cloud_provider import (
    CloudProvider,
    ClusterType,
    GIT_HOSTS,
    GitHost,
    GitProtocol,
    GitProvider,
)
from provisioner.domain.models.steps import Step, StepStatus


CLUSTER_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


def generate_cluster_id() -> str:
    """Generate the short opaque cluster identifier."""
    return random_string(6)


class ClusterStatus(str, Enum):
    """Cluster lifecycle states."""

    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


# ----------------------------------------------------------------------
# Credential bundles
# ----------------------------------------------------------------------


class GitAuth(ValueObject):
    owner: str = ""
    user: str = ""
    token: str = ""
    public_key: str = ""
    private_key: str = ""


class AwsAuth(ValueObject):
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    account_id: str = ""
    use_ecr: bool = False


class AzureAuth(ValueObject):
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""
    subscription_id: str = ""


class GoogleAuth(ValueObject):
    key_file: str = ""
    project_id: str = ""


class CivoAuth(ValueObject):
    token: str = ""


class DigitaloceanAuth(ValueObject):
    token: str = ""
    spaces_key: str = ""
    spaces_secret: str = ""


class VultrAuth(ValueObject):
    token: str = ""


class CloudflareAuth(ValueObject):
    api_token: str = ""
    origin_ca_issuer_key: str = ""


class VaultAuth(ValueObject):
    root_token: str = ""


class StateStoreCredentials(ValueObject):
    """Object-storage credentials for the Terraform state backend.

    Azure stores the storage account key in ``secret_access_key``.
    """

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    name: str = ""
    id: str = ""


class StateStoreDetails(ValueObject):
    """Where the state bucket was created."""

    name: str = ""
    id: str = ""
    hostname: str = ""
    aws_state_store_bucket: str = ""
    aws_artifacts_bucket: str = ""


# ----------------------------------------------------------------------
# Definition and record
# ----------------------------------------------------------------------


class ClusterDefinition(ValueObject):
    """Operator input used to create or refresh a cluster record."""

    cluster_name: str = Field(..., min_length=1, max_length=63, pattern=CLUSTER_NAME_PATTERN)
    cluster_type: ClusterType = ClusterType.MGMT
    cloud_provider: CloudProvider
    git_provider: GitProvider
    git_protocol: GitProtocol = GitProtocol.HTTPS
    cloud_region: str = ""
    domain_name: str = Field(..., min_length=1)
    subdomain_name: str = ""
    dns_provider: str = ""
    alerts_email: str = ""
    git_auth: GitAuth = Field(default_factory=GitAuth)
    aws_auth: AwsAuth = Field(default_factory=AwsAuth)
    azure_auth: AzureAuth = Field(default_factory=AzureAuth)
    google_auth: GoogleAuth = Field(default_factory=GoogleAuth)
    civo_auth: CivoAuth = Field(default_factory=CivoAuth)
    digitalocean_auth: DigitaloceanAuth = Field(default_factory=DigitaloceanAuth)
    vultr_auth: VultrAuth = Field(default_factory=VultrAuth)
    cloudflare_auth: CloudflareAuth = Field(default_factory=CloudflareAuth)


class Cluster(DomainEntity):
    """Persisted orchestration record for one cluster.

    Progress lives in ``checkpoints``, a map of step name to
    :class:`StepStatus`. Steps absent from the map are pending.
    Every write goes through :meth:`apply_updates`, which mirrors the
    field-level update semantics of the checkpoint store.
    """

    cluster_name: str = Field(..., min_length=1, max_length=63, pattern=CLUSTER_NAME_PATTERN)
    cluster_id: str = Field(default_factory=generate_cluster_id)
    cluster_type: ClusterType = ClusterType.MGMT
    cloud_provider: CloudProvider
    git_provider: GitProvider
    git_protocol: GitProtocol = GitProtocol.HTTPS
    cloud_region: str = ""
    domain_name: str
    subdomain_name: str = ""
    dns_provider: str = ""
    alerts_email: str = ""

    git_auth: GitAuth = Field(default_factory=GitAuth)
    aws_auth: AwsAuth = Field(default_factory=AwsAuth)
    azure_auth: AzureAuth = Field(default_factory=AzureAuth)
    google_auth: GoogleAuth = Field(default_factory=GoogleAuth)
    civo_auth: CivoAuth = Field(default_factory=CivoAuth)
    digitalocean_auth: DigitaloceanAuth = Field(default_factory=DigitaloceanAuth)
    vultr_auth: VultrAuth = Field(default_factory=VultrAuth)
    cloudflare_auth: CloudflareAuth = Field(default_factory=CloudflareAuth)
    vault_auth: VaultAuth = Field(default_factory=VaultAuth)
    state_store_credentials: StateStoreCredentials = Field(default_factory=StateStoreCredentials)
    state_store_details: StateStoreDetails = Field(default_factory=StateStoreDetails)

    git_host: str = ""
    container_registry_host: str = ""
    gitlab_owner_group_id: int = 0
    atlantis_webhook_secret: str = ""
    atlantis_webhook_url: str = ""
    kubefirst_api_token: str = ""
    state_store_bucket: str = ""
    artifacts_bucket: str = ""
    aws_kms_key_id: str = ""
    gitops_template_url: str = ""
    gitops_template_branch: str = ""

    argocd_password: str = ""
    argocd_auth_token: str = ""

    status: ClusterStatus = ClusterStatus.PROVISIONING
    in_progress: bool = False
    last_condition: str = ""
    checkpoints: dict[str, StepStatus] = Field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: ClusterDefinition) -> Cluster:
        return cls(**definition.model_dump())

    @property
    def full_domain_name(self) -> str:
        if self.subdomain_name:
            return f"{self.subdomain_name}.{self.domain_name}"
        return self.domain_name

    @property
    def docker_auth(self) -> str:
        """Base64 registry credentials for the git provider's container registry."""
        raw = f"{self.git_auth.user or self.git_auth.owner}:{self.git_auth.token}"
        return base64.b64encode(raw.encode()).decode()

    @property
    def git_host_details(self) -> GitHost:
        return GIT_HOSTS[self.git_provider]

    def repo_url(self, repo: str) -> str:
        """Remote URL of one of the owner's platform repositories, per git protocol."""
        host = self.git_host_details
        if self.git_protocol is GitProtocol.SSH:
            return host.ssh_repo_url(self.git_auth.owner, repo)
        return host.https_repo_url(self.git_auth.owner, repo)

    def step_status(self, step: Step) -> StepStatus:
        return self.checkpoints.get(step.value, StepStatus.PENDING)

    def is_done(self, step: Step) -> bool:
        return self.step_status(step) is StepStatus.DONE

    def apply_updates(self, updates: Mapping[str, Any]) -> Cluster:
        """Return a validated copy with dotted-path field updates applied."""
        data = self.model_dump(mode="python")
        for path, value in updates.items():
            *parents, leaf = path.split(".")
            target = data
            for key in parents:
                node = target.get(key)
                if not isinstance(node, dict):
                    raise InvalidFieldPathError(f"Unknown field path: {path}")
                target = node

            if parents == ["checkpoints"]:
                try:
                    Step(leaf)
                except ValueError as e:
                    raise InvalidFieldPathError(f"Unknown pipeline step: {leaf}") from e
            elif leaf not in target:
                raise InvalidFieldPathError(f"Unknown field path: {path}")

            target[leaf] = value.model_dump() if isinstance(value, BaseModel) else value

        updated = type(self).model_validate(data)
        updated.touch()
        return updated


class ConfigurationError(Exception):
    """Raised for unsupported providers or missing required settings."""


class InvalidFieldPathError(Exception):
    """Raised when a field-level update targets a field the record does not have."""
