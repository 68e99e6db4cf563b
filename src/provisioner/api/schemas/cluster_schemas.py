"""API schemas for cluster endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from provisioner.domain.models.cloud_provider import (
    CloudProvider,
    ClusterType,
    GitProtocol,
    GitProvider,
)
from provisioner.domain.models.cluster import (
    AwsAuth,
    AzureAuth,
    CivoAuth,
    CloudflareAuth,
    Cluster,
    CLUSTER_NAME_PATTERN,
    ClusterDefinition,
    ClusterStatus,
    DigitaloceanAuth,
    GitAuth,
    GoogleAuth,
    VultrAuth,
)
from provisioner.domain.models.steps import StepStatus


class CreateClusterRequest(BaseModel):
    """Body of ``POST /cluster/{cluster_name}``; the name comes from the path."""

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

    def to_definition(self, cluster_name: str) -> ClusterDefinition:
        return ClusterDefinition(cluster_name=cluster_name, **self.model_dump())


class ClusterResponse(BaseModel):
    """Public view of a cluster record. Credentials are never returned."""

    cluster_name: str = Field(..., pattern=CLUSTER_NAME_PATTERN)
    cluster_id: str
    cluster_type: ClusterType
    cloud_provider: CloudProvider
    git_provider: GitProvider
    git_protocol: GitProtocol
    cloud_region: str
    domain_name: str
    subdomain_name: str
    git_owner: str
    git_host: str
    status: ClusterStatus
    in_progress: bool
    last_condition: str
    checkpoints: dict[str, StepStatus] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> ClusterResponse:
        return cls(
            cluster_name=cluster.cluster_name,
            cluster_id=cluster.cluster_id,
            cluster_type=cluster.cluster_type,
            cloud_provider=cluster.cloud_provider,
            git_provider=cluster.git_provider,
            git_protocol=cluster.git_protocol,
            cloud_region=cluster.cloud_region,
            domain_name=cluster.domain_name,
            subdomain_name=cluster.subdomain_name,
            git_owner=cluster.git_auth.owner,
            git_host=cluster.git_host,
            status=cluster.status,
            in_progress=cluster.in_progress,
            last_condition=cluster.last_condition,
            checkpoints=dict(cluster.checkpoints),
            created_at=cluster.created_at,
            updated_at=cluster.updated_at,
        )


class ClusterListResponse(BaseModel):
    items: list[ClusterResponse]
    total: int


class AcceptedResponse(BaseModel):
    cluster_name: str
    operation: str
    status: ClusterStatus
