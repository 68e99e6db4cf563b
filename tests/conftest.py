"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest
from fakes import (
    FakeArgoCDClient,
    FakeDnsResolver,
    FakeGitopsWorkspace,
    FakeGitProviderClient,
    FakeKeyManagementClient,
    FakeKeyPairGenerator,
    FakeKubernetesClient,
    FakeStateStoreProvisioner,
    FakeTerraformExecutor,
    FakeVaultClient,
    no_sleep,
)

from provisioner.config import Environment, Settings
from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import (
    CivoAuth,
    Cluster,
    ClusterDefinition,
    GitAuth,
)
from provisioner.domain.models.pipeline import PipelineOptions
from provisioner.domain.services.cluster_controller import ClusterController
from provisioner.domain.services.deletion_service import DeletionService
from provisioner.domain.services.terraform_service import TerraformService
from provisioner.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from provisioner.infrastructure.persistence.repositories.in_memory import InMemoryCheckpointStore
from provisioner.infrastructure.providers.registry import adapter_resolver


@pytest.fixture(autouse=True)
def clear_stores() -> None:
    """Clear in-memory stores before each test."""
    InMemoryCheckpointStore.clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(environment=Environment.TESTING, debug=True)


@pytest.fixture
def store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def event_publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def terraform_executor() -> FakeTerraformExecutor:
    return FakeTerraformExecutor()


@pytest.fixture
def kube() -> FakeKubernetesClient:
    return FakeKubernetesClient()


@pytest.fixture
def git_client() -> FakeGitProviderClient:
    return FakeGitProviderClient()


@pytest.fixture
def workspace() -> FakeGitopsWorkspace:
    return FakeGitopsWorkspace()


@pytest.fixture
def key_generator() -> FakeKeyPairGenerator:
    return FakeKeyPairGenerator()


@pytest.fixture
def argocd() -> FakeArgoCDClient:
    return FakeArgoCDClient()


@pytest.fixture
def vault() -> FakeVaultClient:
    return FakeVaultClient()


@pytest.fixture
def dns_resolver() -> FakeDnsResolver:
    return FakeDnsResolver()


@pytest.fixture
def state_store() -> FakeStateStoreProvisioner:
    return FakeStateStoreProvisioner()


@pytest.fixture
def kms() -> FakeKeyManagementClient:
    return FakeKeyManagementClient()


@pytest.fixture
def pipeline_options(tmp_path: Any) -> PipelineOptions:
    return PipelineOptions(
        base_dir=str(tmp_path / "k1"),
        template_url="https://github.com/kubefirst/gitops-template.git",
        template_branch="main",
        argocd_manifest_url="github.com/kubefirst/manifests/argocd/cloud?ref=main",
        vault_handler_manifest_url="github.com/kubefirst/manifests/vault-handler?ref=main",
    )


@pytest.fixture
def terraform_service(terraform_executor: FakeTerraformExecutor) -> TerraformService:
    return TerraformService(terraform_executor, backoff_seconds=10.0, sleep=no_sleep)


@pytest.fixture
def controller(
    store: InMemoryCheckpointStore,
    event_publisher: InMemoryEventPublisher,
    terraform_service: TerraformService,
    git_client: FakeGitProviderClient,
    workspace: FakeGitopsWorkspace,
    key_generator: FakeKeyPairGenerator,
    kube: FakeKubernetesClient,
    argocd: FakeArgoCDClient,
    vault: FakeVaultClient,
    dns_resolver: FakeDnsResolver,
    state_store: FakeStateStoreProvisioner,
    kms: FakeKeyManagementClient,
    pipeline_options: PipelineOptions,
) -> ClusterController:
    return ClusterController(
        store=store,
        event_publisher=event_publisher,
        terraform=terraform_service,
        resolve_adapter=adapter_resolver(),
        git_clients=lambda _provider, _token: git_client,
        workspace=workspace,
        key_generator=key_generator,
        kube_clients=lambda _kubeconfig: kube,
        argocd_clients=lambda _url: argocd,
        vault_clients=lambda _url: vault,
        dns_resolver=dns_resolver,
        state_stores=lambda _cloud: state_store,
        kms_clients=lambda _cluster: kms,
        options=pipeline_options,
    )


@pytest.fixture
def deletion_service(
    store: InMemoryCheckpointStore,
    event_publisher: InMemoryEventPublisher,
    terraform_service: TerraformService,
    git_client: FakeGitProviderClient,
    kube: FakeKubernetesClient,
    argocd: FakeArgoCDClient,
    pipeline_options: PipelineOptions,
) -> DeletionService:
    return DeletionService(
        store=store,
        event_publisher=event_publisher,
        terraform=terraform_service,
        resolve_adapter=adapter_resolver(),
        git_clients=lambda _provider, _token: git_client,
        kube_clients=lambda _kubeconfig: kube,
        argocd_clients=lambda _url: argocd,
        options=pipeline_options,
    )


@pytest.fixture
def civo_definition() -> ClusterDefinition:
    return ClusterDefinition(
        cluster_name="kubefirst-mgmt",
        cloud_provider=CloudProvider.CIVO,
        git_provider=GitProvider.GITHUB,
        cloud_region="nyc1",
        domain_name="example.com",
        alerts_email="ops@example.com",
        git_auth=GitAuth(owner="acme", token="ghp_token"),
        civo_auth=CivoAuth(token="civo-token"),
    )


@pytest.fixture
def gitlab_definition(civo_definition: ClusterDefinition) -> ClusterDefinition:
    return civo_definition.model_copy(
        update={
            "git_provider": GitProvider.GITLAB,
            "git_auth": GitAuth(owner="acme-group", token="glpat-token"),
        }
    )


@pytest.fixture
def sample_cluster(civo_definition: ClusterDefinition) -> Cluster:
    return Cluster.from_definition(civo_definition)
