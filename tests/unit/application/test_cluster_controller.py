"""Unit tests for the cluster creation pipeline."""

from __future__ import annotations

import json

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
)

from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import (
    AwsAuth,
    CivoAuth,
    Cluster,
    ClusterDefinition,
    ClusterStatus,
    ConfigurationError,
    GitAuth,
)
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.models.pipeline import PipelineOptions
from provisioner.domain.models.steps import checkpoint_path, CREATION_STEPS, Step, StepStatus
from provisioner.domain.ports.services import DomainLivenessError, SshKey, StateStoreError
from provisioner.domain.services.cluster_controller import ClusterController, KBOT_KEY_TITLE
from provisioner.domain.services.step_executor import StepFailedError
from provisioner.domain.services.terraform_service import TerraformService
from provisioner.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from provisioner.infrastructure.persistence.repositories.in_memory import InMemoryCheckpointStore
from provisioner.infrastructure.providers.clouds import AwsAdapter
from provisioner.infrastructure.providers.git_env import GIT_ENVS


VAULT_HANDLER_SECRET = ("vault", "vault-unseal-secret", {"root-token": "hvs.from-handler"})


class LocalAwsAdapter(AwsAdapter):
    """AWS adapter that skips the aws CLI kubeconfig export."""

    async def get_kubeconfig(self, paths: ClusterPaths, cluster: Cluster) -> str:
        return paths.kubeconfig


@pytest.fixture(autouse=True)
def vault_handler(kube: FakeKubernetesClient) -> None:
    kube.job_outputs["vault-handler"] = VAULT_HANDLER_SECRET


class TestCreate:
    @pytest.mark.asyncio
    async def test_full_run_provisions_cluster(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        store: InMemoryCheckpointStore,
        event_publisher: InMemoryEventPublisher,
    ) -> None:
        cluster = await controller.create(civo_definition)

        assert cluster.status == ClusterStatus.PROVISIONED
        assert cluster.in_progress is False
        for step in CREATION_STEPS:
            assert cluster.is_done(step), step
        stored = await store.get_cluster("kubefirst-mgmt")
        assert stored.status == ClusterStatus.PROVISIONED

        events = [event for event, _ in event_publisher.published_events]
        assert events[0] == "cluster.create.started"
        assert events[-1] == "cluster.create.succeeded"
        assert events.count("cluster.step.completed") == len(CREATION_STEPS)

    @pytest.mark.asyncio
    async def test_generated_values_assigned_at_init(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        store: InMemoryCheckpointStore,
    ) -> None:
        ctx = await controller.initialize(civo_definition)
        cluster = await store.get_cluster(ctx.cluster_name)

        assert cluster.in_progress is True
        assert cluster.git_host == "github.com"
        assert cluster.container_registry_host == "ghcr.io"
        assert cluster.atlantis_webhook_url == "https://atlantis.example.com/events"
        assert len(cluster.atlantis_webhook_secret) == 20
        assert len(cluster.kubefirst_api_token) == 40
        assert cluster.state_store_bucket == f"k1-state-store-kubefirst-mgmt-{cluster.cluster_id}"
        assert cluster.gitops_template_url == "https://github.com/kubefirst/gitops-template.git"

    @pytest.mark.asyncio
    async def test_step_side_effects(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        terraform_executor: FakeTerraformExecutor,
        workspace: FakeGitopsWorkspace,
        kube: FakeKubernetesClient,
        argocd: FakeArgoCDClient,
        vault: FakeVaultClient,
        git_client: FakeGitProviderClient,
        pipeline_options: PipelineOptions,
    ) -> None:
        cluster = await controller.create(civo_definition)

        assert cluster.git_auth.user == "kbot-user"
        assert cluster.git_auth.public_key.startswith("ssh-ed25519 ")
        assert workspace.prepared == ["kubefirst-mgmt"]
        assert workspace.pushed == ["kubefirst-mgmt"]
        assert [d.rsplit("/", 1)[-1] for d in terraform_executor.dirs("apply")] == [
            "github",
            "civo",
            "vault",
            "users",
        ]
        assert git_client.closed >= 1

        assert "argocd" in kube.namespaces
        assert ("kubefirst", "kubefirst-initial-secrets") in kube.secrets
        docker = json.loads(kube.secrets[("argo", "docker-config")]["config.json"])
        assert "ghcr.io" in docker["auths"]
        assert pipeline_options.argocd_manifest_url in kube.kustomizations

        assert argocd.logins == [("admin", "argo-admin-pass")]
        assert cluster.argocd_password == "argo-admin-pass"
        assert cluster.argocd_auth_token == "argocd-session-token"
        registry = kube.custom_objects[0]
        assert registry["spec"]["source"]["path"] == "registry/clusters/kubefirst-mgmt"
        assert registry["spec"]["source"]["repoURL"] == "https://github.com/acme/gitops.git"

        # Civo has no KMS, so the vault-handler job initializes Vault.
        assert pipeline_options.vault_handler_manifest_url in kube.kustomizations
        assert vault.initialized == 0
        assert cluster.vault_auth.root_token == "hvs.from-handler"
        assert vault.writes["external-dns"] == {"token": "civo-token"}
        assert "cloudflare" in vault.writes

        exported = json.loads(kube.secrets[("kubefirst", "kubefirst-initial-state")]["cluster.json"])
        assert exported["status"] == "provisioned"

    @pytest.mark.asyncio
    async def test_vault_terraform_receives_root_token(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        terraform_executor: FakeTerraformExecutor,
    ) -> None:
        await controller.create(civo_definition)
        vault_env = next(env for a, d, env in terraform_executor.calls if d.endswith("vault"))
        assert vault_env["VAULT_TOKEN"] == "hvs.from-handler"
        assert vault_env["VAULT_ADDR"] == "http://127.0.0.1:8200"
        assert vault_env["KUBECONFIG"].endswith("kubeconfig")


class TestResume:
    @pytest.mark.asyncio
    async def test_failure_then_resume_skips_completed_steps(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        terraform_executor: FakeTerraformExecutor,
        workspace: FakeGitopsWorkspace,
        key_generator: FakeKeyPairGenerator,
        store: InMemoryCheckpointStore,
    ) -> None:
        terraform_executor.apply_results = [
            (True, "git applied"),
            (False, "Error: civo api 500"),
            (False, "Error: civo api 500"),
        ]
        with pytest.raises(StepFailedError) as exc_info:
            await controller.create(civo_definition)
        assert exc_info.value.step == "cloud_terraform_apply"

        failed = await store.get_cluster("kubefirst-mgmt")
        assert failed.status == ClusterStatus.ERROR
        assert failed.in_progress is False
        assert failed.step_status(Step.CLOUD_TERRAFORM_APPLY) == StepStatus.FAILED
        assert failed.is_done(Step.GIT_TERRAFORM_APPLY)
        assert "civo api 500" in failed.last_condition

        cluster = await controller.create(civo_definition)

        assert cluster.status == ClusterStatus.PROVISIONED
        assert cluster.cluster_id == failed.cluster_id
        assert workspace.prepared == ["kubefirst-mgmt"]
        assert key_generator.generated == 1
        applied = [d.rsplit("/", 1)[-1] for d in terraform_executor.dirs("apply")]
        assert applied.count("github") == 1
        assert applied.count("civo") == 3

    @pytest.mark.asyncio
    async def test_resume_refreshes_credentials_only(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        workspace: FakeGitopsWorkspace,
        store: InMemoryCheckpointStore,
    ) -> None:
        workspace.fail_prepare = RuntimeError("clone failed")
        with pytest.raises(StepFailedError):
            await controller.create(civo_definition)
        first = await store.get_cluster("kubefirst-mgmt")

        workspace.fail_prepare = None
        rotated = civo_definition.model_copy(
            update={
                "git_auth": GitAuth(owner="acme", token="ghp_rotated"),
                "civo_auth": CivoAuth(token="civo-rotated"),
            }
        )
        cluster = await controller.create(rotated)

        assert cluster.git_auth.token == "ghp_rotated"
        assert cluster.civo_auth.token == "civo-rotated"
        assert cluster.atlantis_webhook_secret == first.atlantis_webhook_secret
        assert cluster.kubefirst_api_token == first.kubefirst_api_token

    @pytest.mark.asyncio
    async def test_resume_by_name_uses_stored_credentials(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        workspace: FakeGitopsWorkspace,
    ) -> None:
        workspace.fail_prepare = RuntimeError("clone failed")
        with pytest.raises(StepFailedError):
            await controller.create(civo_definition)

        workspace.fail_prepare = None
        cluster = await controller.resume("kubefirst-mgmt")
        assert cluster.status == ClusterStatus.PROVISIONED

    @pytest.mark.asyncio
    async def test_deleted_record_is_replaced(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        store: InMemoryCheckpointStore,
    ) -> None:
        old = await controller.create(civo_definition)
        await store.update_cluster(old.cluster_name, {"status": ClusterStatus.DELETED})

        ctx = await controller.initialize(civo_definition)
        fresh = await store.get_cluster(ctx.cluster_name)
        assert fresh.id != old.id
        assert fresh.checkpoints == {}
        assert fresh.status == ClusterStatus.PROVISIONING


class TestPreflight:
    @pytest.mark.asyncio
    async def test_missing_credentials_rejected_before_write(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        store: InMemoryCheckpointStore,
    ) -> None:
        definition = civo_definition.model_copy(update={"civo_auth": CivoAuth()})
        with pytest.raises(ConfigurationError, match="civo token"):
            await controller.initialize(definition)
        assert await store.list_clusters() == []

    @pytest.mark.asyncio
    async def test_provider_change_rejected(
        self, controller: ClusterController, civo_definition: ClusterDefinition
    ) -> None:
        await controller.initialize(civo_definition)
        other = civo_definition.model_copy(update={"git_provider": GitProvider.GITLAB})
        with pytest.raises(ConfigurationError, match="was created for civo/github"):
            await controller.initialize(other)

    @pytest.mark.asyncio
    async def test_existing_repository_fails_git_init(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        git_client: FakeGitProviderClient,
        store: InMemoryCheckpointStore,
    ) -> None:
        git_client.repositories.add("gitops")
        with pytest.raises(StepFailedError) as exc_info:
            await controller.create(civo_definition)

        assert exc_info.value.step == "git_init"
        assert isinstance(exc_info.value.cause, ConfigurationError)
        cluster = await store.get_cluster("kubefirst-mgmt")
        assert cluster.step_status(Step.GIT_INIT) == StepStatus.FAILED
        assert git_client.closed == 1

    @pytest.mark.asyncio
    async def test_existing_team_fails_git_init(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        git_client: FakeGitProviderClient,
    ) -> None:
        git_client.teams.add("admins")
        with pytest.raises(StepFailedError, match="Team acme/admins already exists"):
            await controller.create(civo_definition)


class TestGitlab:
    @pytest.mark.asyncio
    async def test_owner_group_and_kbot_key(
        self,
        controller: ClusterController,
        gitlab_definition: ClusterDefinition,
        git_client: FakeGitProviderClient,
    ) -> None:
        git_client.ssh_keys = [SshKey(id=7, title=KBOT_KEY_TITLE, key="ssh-ed25519 stale kbot")]

        cluster = await controller.create(gitlab_definition)

        assert cluster.gitlab_owner_group_id == 4242
        assert cluster.container_registry_host == "registry.gitlab.com"
        assert git_client.deleted_keys == [7]
        assert [k.key for k in git_client.ssh_keys] == [cluster.git_auth.public_key]

    @pytest.mark.asyncio
    async def test_matching_kbot_key_kept(
        self,
        controller: ClusterController,
        gitlab_definition: ClusterDefinition,
        git_client: FakeGitProviderClient,
        key_generator: FakeKeyPairGenerator,
    ) -> None:
        expected = key_generator.generate().public_key
        key_generator.generated = 0
        git_client.ssh_keys = [SshKey(id=9, title=KBOT_KEY_TITLE, key=expected)]

        await controller.create(gitlab_definition)

        assert git_client.deleted_keys == []
        assert len(git_client.ssh_keys) == 1


class TestAutoUnseal:
    @pytest.mark.asyncio
    async def test_aws_initializes_vault_through_api(
        self,
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
        civo_definition: ClusterDefinition,
    ) -> None:
        controller = ClusterController(
            store=store,
            event_publisher=event_publisher,
            terraform=terraform_service,
            resolve_adapter=lambda _cloud, git: LocalAwsAdapter(GIT_ENVS[git]),
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
        definition = civo_definition.model_copy(
            update={
                "cloud_provider": CloudProvider.AWS,
                "cloud_region": "us-east-1",
                "aws_auth": AwsAuth(access_key_id="AKIA", secret_access_key="secret"),
            }
        )

        cluster = await controller.create(definition)

        assert vault.initialized == 1
        assert cluster.vault_auth.root_token == "hvs.root"
        unseal = kube.secrets[("vault", "vault-unseal-secret")]
        assert unseal["root-token"] == "hvs.root"
        assert unseal["root-unseal-key-1"] == "rk-1"
        assert ("vault", "vault", 8200, 8200) in kube.forwards

        assert kms.aliases == ["alias/vault_kubefirst-mgmt"]
        assert workspace.kms_keys == [("kubefirst-mgmt", "kms-key-1")]
        assert cluster.aws_kms_key_id == "kms-key-1"

    @pytest.mark.asyncio
    async def test_existing_root_token_reused(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        kube: FakeKubernetesClient,
        pipeline_options: PipelineOptions,
    ) -> None:
        kube.secrets[("vault", "vault-unseal-secret")] = {"root-token": "hvs.existing"}
        cluster = await controller.create(civo_definition)
        assert cluster.vault_auth.root_token == "hvs.existing"
        assert pipeline_options.vault_handler_manifest_url not in kube.kustomizations


class TestDomainLiveness:
    @pytest.fixture
    def pipeline_options(self, pipeline_options: PipelineOptions) -> PipelineOptions:
        return pipeline_options.model_copy(
            update={"domain_liveness_timeout": 0, "domain_liveness_interval": 0.0}
        )

    @pytest.mark.asyncio
    async def test_unresolvable_domain_stops_before_anything_is_created(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        dns_resolver: FakeDnsResolver,
        state_store: FakeStateStoreProvisioner,
        store: InMemoryCheckpointStore,
    ) -> None:
        dns_resolver.name_servers_found = []

        with pytest.raises(StepFailedError) as exc_info:
            await controller.create(civo_definition)

        assert exc_info.value.step == "domain_liveness"
        assert isinstance(exc_info.value.cause, DomainLivenessError)
        assert "example.com" in str(exc_info.value.cause)
        assert state_store.created == []
        cluster = await store.get_cluster("kubefirst-mgmt")
        assert cluster.step_status(Step.DOMAIN_LIVENESS) == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_verified_domain_is_not_looked_up_again(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        dns_resolver: FakeDnsResolver,
        workspace: FakeGitopsWorkspace,
    ) -> None:
        workspace.fail_prepare = RuntimeError("clone failed")
        with pytest.raises(StepFailedError):
            await controller.create(civo_definition)

        workspace.fail_prepare = None
        await controller.create(civo_definition)

        assert dns_resolver.lookups == ["example.com"]


class TestDomainLivenessRetry:
    @pytest.fixture
    def pipeline_options(self, pipeline_options: PipelineOptions) -> PipelineOptions:
        return pipeline_options.model_copy(
            update={"domain_liveness_timeout": 30, "domain_liveness_interval": 0.0}
        )

    @pytest.mark.asyncio
    async def test_lookup_errors_are_retried(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        dns_resolver: FakeDnsResolver,
    ) -> None:
        dns_resolver.errors = ["SERVFAIL", "SERVFAIL"]

        cluster = await controller.create(civo_definition)

        assert cluster.is_done(Step.DOMAIN_LIVENESS)
        assert len(dns_resolver.lookups) == 3


class TestStateStore:
    @pytest.mark.asyncio
    async def test_outputs_persisted_on_the_record(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        state_store: FakeStateStoreProvisioner,
        store: InMemoryCheckpointStore,
        terraform_executor: FakeTerraformExecutor,
    ) -> None:
        await controller.create(civo_definition)

        cluster = await store.get_cluster("kubefirst-mgmt")
        assert state_store.created == [cluster.state_store_bucket]
        assert cluster.state_store_credentials.access_key_id == "state-key"
        assert cluster.state_store_credentials.secret_access_key == "state-secret"
        assert cluster.state_store_details.hostname == "objectstore.example.com"
        civo_env = next(env for a, d, env in terraform_executor.calls if d.endswith("civo"))
        assert civo_env["AWS_ACCESS_KEY_ID"] == "state-key"

    @pytest.mark.asyncio
    async def test_failure_blocks_git_init(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        state_store: FakeStateStoreProvisioner,
        store: InMemoryCheckpointStore,
    ) -> None:
        state_store.fail = StateStoreError("bucket quota exceeded")

        with pytest.raises(StepFailedError) as exc_info:
            await controller.create(civo_definition)

        assert exc_info.value.step == "state_store_created"
        cluster = await store.get_cluster("kubefirst-mgmt")
        assert cluster.is_done(Step.DOMAIN_LIVENESS)
        assert cluster.step_status(Step.GIT_INIT) == StepStatus.PENDING
        assert "bucket quota exceeded" in cluster.last_condition


class TestClusterReady:
    @pytest.mark.asyncio
    async def test_waits_for_coredns_after_cloud_terraform(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        kube: FakeKubernetesClient,
        kms: FakeKeyManagementClient,
        workspace: FakeGitopsWorkspace,
    ) -> None:
        cluster = await controller.create(civo_definition)

        assert kube.waits[0] == ("deployment", "kube-system", "coredns", 120)
        # Civo has no KMS alias to resolve.
        assert kms.aliases == []
        assert workspace.kms_keys == []
        assert cluster.is_done(Step.KMS_KEY_DETOKENIZED)
        assert cluster.aws_kms_key_id == ""


class TestRegistryCheckpoint:
    @pytest.mark.asyncio
    async def test_creating_registry_rearms_its_deletion(
        self,
        controller: ClusterController,
        civo_definition: ClusterDefinition,
        store: InMemoryCheckpointStore,
    ) -> None:
        await controller.initialize(civo_definition)
        await store.update_cluster(
            "kubefirst-mgmt", {checkpoint_path(Step.ARGOCD_DELETE_REGISTRY): StepStatus.DONE}
        )

        cluster = await controller.resume("kubefirst-mgmt")

        assert cluster.is_done(Step.ARGOCD_CREATE_REGISTRY)
        assert cluster.step_status(Step.ARGOCD_DELETE_REGISTRY) == StepStatus.PENDING
