"""Per-run pipeline context and step output accumulator."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from provisioner.domain.models.base import ValueObject
from provisioner.domain.models.cloud_provider import (
    CloudProvider,
    ClusterType,
    GitProtocol,
    GitProvider,
)
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.ports.providers import ProviderAdapter


class StepResult(BaseModel):
    """Field updates a step wants persisted together with its checkpoint."""

    updates: dict[str, Any] = Field(default_factory=dict)

    def set(self, path: str, value: Any) -> None:
        self.updates[path] = value


class PipelineContext(ValueObject):
    """Immutable facts about one pipeline run."""

    cluster_name: str
    cluster_type: ClusterType
    cloud_provider: CloudProvider
    git_provider: GitProvider
    git_protocol: GitProtocol
    paths: ClusterPaths
    template_url: str
    template_branch: str
    gitops_repo_url: str
    metaphor_repo_url: str
    adapter: ProviderAdapter

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @classmethod
    def from_cluster(cls, cluster: Cluster, adapter: ProviderAdapter, base_dir: str) -> PipelineContext:
        return cls(
            cluster_name=cluster.cluster_name,
            cluster_type=cluster.cluster_type,
            cloud_provider=cluster.cloud_provider,
            git_provider=cluster.git_provider,
            git_protocol=cluster.git_protocol,
            paths=ClusterPaths(base_dir=base_dir, cluster_name=cluster.cluster_name),
            template_url=cluster.gitops_template_url,
            template_branch=cluster.gitops_template_branch,
            gitops_repo_url=cluster.repo_url("gitops"),
            metaphor_repo_url=cluster.repo_url("metaphor"),
            adapter=adapter,
        )


class PipelineOptions(ValueObject):
    """Run-wide settings the pipeline steps need."""

    base_dir: str
    template_url: str
    template_branch: str = "main"
    argocd_manifest_url: str
    vault_handler_manifest_url: str
    argocd_ready_timeout: int = 300
    vault_ready_timeout: int = 1200
    vault_handler_timeout: int = 240
    final_check_timeout: int = 3600
    volume_cleanup_timeout: int = 300
    cluster_ready_timeout: int = 120
    domain_liveness_timeout: int = 300
    domain_liveness_interval: float = 10.0
    argocd_local_port: int = 8080
    vault_local_port: int = 8200
