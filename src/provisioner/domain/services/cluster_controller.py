"""Management cluster creation pipeline."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import structlog

from provisioner.domain.models.base import random_string
from provisioner.domain.models.cloud_provider import GitProvider
from provisioner.domain.models.cluster import (
    Cluster,
    ClusterDefinition,
    ClusterStatus,
    ConfigurationError,
)
from provisioner.domain.models.pipeline import PipelineContext, PipelineOptions, StepResult
from provisioner.domain.models.steps import checkpoint_path, Step, StepStatus
from provisioner.domain.ports.providers import AdapterResolver, TerraformModule
from provisioner.domain.ports.repositories import CheckpointStore, ClusterNotFoundError
from provisioner.domain.ports.services import (
    ArgoCDClientFactory,
    ArgoCDError,
    DnsLookupError,
    DnsResolver,
    DomainLivenessError,
    EventPublisher,
    GitopsWorkspace,
    GitProviderClientFactory,
    KeyManagementClientFactory,
    KeyPairGenerator,
    KubernetesClient,
    KubernetesClientFactory,
    StateStoreProvisionerFactory,
    VaultClientFactory,
    VaultError,
)
from provisioner.domain.services.step_executor import StepExecutor, StepFailedError, StepFunction
from provisioner.domain.services.terraform_service import EnvFactory, TerraformService


logger = structlog.get_logger(__name__)

KBOT_KEY_TITLE = "kbot-ssh-key"
PLATFORM_REPOSITORIES = ("gitops", "metaphor")
GITHUB_TEAMS = ("admins", "developers")

ARGOCD_NAMESPACE = "argocd"
ARGOCD_SERVER = "argocd-server"
VAULT_NAMESPACE = "vault"
VAULT_UNSEAL_SECRET = "vault-unseal-secret"
KUBE_SYSTEM_NAMESPACE = "kube-system"
COREDNS = "coredns"


# ----------------------------------------------------------------------
# Helpers shared with the deletion pipeline
# ----------------------------------------------------------------------


def terraform_env_factory(
    store: CheckpointStore, ctx: PipelineContext, module: TerraformModule
) -> EnvFactory:
    """Build a factory that derives a module's environment from the stored record."""

    async def build() -> Mapping[str, str]:
        cluster = await store.get_cluster(ctx.cluster_name)
        return ctx.adapter.build_terraform_env(
            module, cluster, {"KUBECONFIG": ctx.paths.kubeconfig}
        )

    return build


async def connect_cluster(
    ctx: PipelineContext, cluster: Cluster, factory: KubernetesClientFactory
) -> KubernetesClient:
    kubeconfig = await ctx.adapter.get_kubeconfig(ctx.paths, cluster)
    return factory(kubeconfig)


def registry_application(ctx: PipelineContext) -> dict[str, Any]:
    """ArgoCD Application that syncs the cluster's registry directory."""
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": "registry",
            "namespace": ARGOCD_NAMESPACE,
            "annotations": {"argocd.argoproj.io/sync-wave": "1"},
        },
        "spec": {
            "project": "default",
            "source": {
                "repoURL": ctx.gitops_repo_url,
                "path": f"registry/clusters/{ctx.cluster_name}",
                "targetRevision": "HEAD",
            },
            "destination": {
                "server": "https://kubernetes.default.svc",
                "namespace": ARGOCD_NAMESPACE,
            },
            "syncPolicy": {
                "automated": {"prune": True, "selfHeal": True},
                "syncOptions": ["CreateNamespace=true"],
            },
        },
    }


def docker_config(cluster: Cluster) -> str:
    """Registry auth document mounted by Argo Workflows for image pushes."""
    return json.dumps(
        {"auths": {cluster.container_registry_host: {"auth": cluster.docker_auth}}}
    )


class ClusterController:
    """Drives a cluster through the creation pipeline.

    Steps run strictly in :data:`CREATION_STEPS` order through the
    :class:`StepExecutor`, so a run that stopped part way resumes at the
    first step that is not done.
    """

    def __init__(
        self,
        store: CheckpointStore,
        event_publisher: EventPublisher,
        terraform: TerraformService,
        resolve_adapter: AdapterResolver,
        git_clients: GitProviderClientFactory,
        workspace: GitopsWorkspace,
        key_generator: KeyPairGenerator,
        kube_clients: KubernetesClientFactory,
        argocd_clients: ArgoCDClientFactory,
        vault_clients: VaultClientFactory,
        dns_resolver: DnsResolver,
        state_stores: StateStoreProvisionerFactory,
        kms_clients: KeyManagementClientFactory,
        options: PipelineOptions,
    ) -> None:
        self._store = store
        self._events = event_publisher
        self._terraform = terraform
        self._resolve_adapter = resolve_adapter
        self._git_clients = git_clients
        self._workspace = workspace
        self._key_generator = key_generator
        self._kube_clients = kube_clients
        self._argocd_clients = argocd_clients
        self._vault_clients = vault_clients
        self._dns = dns_resolver
        self._state_stores = state_stores
        self._kms_clients = kms_clients
        self._options = options
        self._executor = StepExecutor(store, event_publisher)

    @property
    def pipeline(self) -> list[tuple[Step, StepFunction]]:
        return [
            (Step.DOMAIN_LIVENESS, self.verify_domain),
            (Step.STATE_STORE_CREATED, self.create_state_store),
            (Step.GIT_INIT, self.git_init),
            (Step.KBOT_SETUP, self.kbot_setup),
            (Step.GITOPS_READY, self.prepare_gitops),
            (Step.GIT_TERRAFORM_APPLY, self.apply_git_terraform),
            (Step.GITOPS_PUSHED, self.push_gitops),
            (Step.CLOUD_TERRAFORM_APPLY, self.apply_cloud_terraform),
            (Step.KMS_KEY_DETOKENIZED, self.detokenize_kms_key),
            (Step.CLUSTER_READY, self.wait_for_cluster),
            (Step.CLUSTER_SECRETS_CREATED, self.create_cluster_secrets),
            (Step.ARGOCD_INSTALL, self.install_argocd),
            (Step.ARGOCD_INITIALIZE, self.initialize_argocd),
            (Step.ARGOCD_CREATE_REGISTRY, self.create_registry),
            (Step.VAULT_INITIALIZED, self.initialize_vault),
            (Step.VAULT_TERRAFORM_APPLY, self.apply_vault_terraform),
            (Step.VAULT_SECRETS, self.write_vault_secrets),
            (Step.USERS_TERRAFORM_APPLY, self.apply_users_terraform),
            (Step.FINAL_CHECK, self.final_check),
        ]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def initialize(self, definition: ClusterDefinition) -> PipelineContext:
        """Create or refresh the cluster record and build the run context.

        Raises ConfigurationError for unsupported providers or missing
        credentials before any record is written.
        """
        adapter = self._resolve_adapter(definition.cloud_provider, definition.git_provider)

        existing = await self._find(definition.cluster_name)
        if existing is not None and existing.status is ClusterStatus.DELETED:
            logger.info("deleted_cluster_record_replaced", cluster_name=definition.cluster_name)
            await self._store.delete_cluster(definition.cluster_name)
            existing = None

        if existing is None:
            cluster = self._new_cluster(definition)
            adapter.validate_credentials(cluster)
            cluster = await self._store.insert_cluster(cluster)
            logger.info(
                "cluster_record_created",
                cluster_name=cluster.cluster_name,
                cluster_id=cluster.cluster_id,
            )
        else:
            if (existing.cloud_provider, existing.git_provider) != (
                definition.cloud_provider,
                definition.git_provider,
            ):
                raise ConfigurationError(
                    f"Cluster {existing.cluster_name} was created for "
                    f"{existing.cloud_provider.value}/{existing.git_provider.value}"
                )
            updates = self._refresh_updates(existing, definition)
            adapter.validate_credentials(existing.apply_updates(updates))
            cluster = await self._store.update_cluster(existing.cluster_name, updates)
            logger.info("cluster_record_resumed", cluster_name=cluster.cluster_name)

        return PipelineContext.from_cluster(cluster, adapter, self._options.base_dir)

    async def create(self, definition: ClusterDefinition) -> Cluster:
        ctx = await self.initialize(definition)
        return await self.run(ctx)

    async def resume(self, cluster_name: str) -> Cluster:
        """Re-run the pipeline for an existing record using its stored credentials."""
        cluster = await self._store.get_cluster(cluster_name)
        adapter = self._resolve_adapter(cluster.cloud_provider, cluster.git_provider)
        adapter.validate_credentials(cluster)
        await self._store.update_cluster(
            cluster_name,
            {"status": ClusterStatus.PROVISIONING, "in_progress": True, "last_condition": ""},
        )
        return await self.run(PipelineContext.from_cluster(cluster, adapter, self._options.base_dir))

    async def handle_error(self, cluster_name: str, error: Exception) -> None:
        """Record a failed run on the cluster record."""
        await self._store.update_cluster(
            cluster_name,
            {"status": ClusterStatus.ERROR, "in_progress": False, "last_condition": str(error)},
        )

    async def run(self, ctx: PipelineContext) -> Cluster:
        """Run every creation step in order against an initialized record."""
        payload = {"cluster_name": ctx.cluster_name, "cloud_provider": ctx.cloud_provider.value}
        with structlog.contextvars.bound_contextvars(cluster_name=ctx.cluster_name):
            await self._events.publish("cluster.create.started", payload)
            try:
                for step, fn in self.pipeline:
                    await self._executor.run(ctx, step, fn)
            except StepFailedError as e:
                logger.error("cluster_create_failed", step=e.step, error=str(e.cause))
                await self.handle_error(ctx.cluster_name, e)
                await self._events.publish("cluster.create.failed", {**payload, "step": e.step})
                raise

            cluster = await self._store.update_cluster(
                ctx.cluster_name, {"status": ClusterStatus.PROVISIONED, "in_progress": False}
            )
            await self._events.publish("cluster.create.succeeded", payload)
            logger.info("cluster_create_succeeded")
        return cluster

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def verify_domain(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        domain = cluster.domain_name
        timeout = self._options.domain_liveness_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                name_servers = await self._dns.name_servers(domain)
            except DnsLookupError as e:
                logger.warning("domain_lookup_failed", domain=domain, error=str(e))
                name_servers = []
            if name_servers:
                logger.info("domain_verified", domain=domain, name_servers=name_servers)
                return
            if loop.time() >= deadline:
                raise DomainLivenessError(domain, timeout)
            await asyncio.sleep(self._options.domain_liveness_interval)

    async def create_state_store(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        provisioned = await self._state_stores(cluster.cloud_provider).create(cluster)
        result.set("state_store_credentials", provisioned.credentials)
        result.set("state_store_details", provisioned.details)
        logger.info(
            "state_store_created",
            bucket=cluster.state_store_bucket,
            hostname=provisioned.details.hostname,
        )

    async def git_init(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        owner = cluster.git_auth.owner
        client = self._git_clients(cluster.git_provider, cluster.git_auth.token)
        try:
            user = await client.get_authenticated_user()
            if not cluster.git_auth.user:
                result.set("git_auth.user", user)

            if cluster.git_provider is GitProvider.GITLAB:
                result.set("gitlab_owner_group_id", await client.get_owner_id(owner))

            for repo in PLATFORM_REPOSITORIES:
                if await client.repository_exists(owner, repo):
                    raise ConfigurationError(
                        f"Repository {owner}/{repo} already exists; remove it before continuing"
                    )

            if cluster.git_provider is GitProvider.GITHUB:
                for team in GITHUB_TEAMS:
                    if await client.team_exists(owner, team):
                        raise ConfigurationError(
                            f"Team {owner}/{team} already exists; remove it before continuing"
                        )
        finally:
            await client.close()

    async def kbot_setup(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        if cluster.git_auth.public_key:
            logger.info("kbot_keypair_reused")
            return
        keypair = self._key_generator.generate()
        result.set("git_auth.public_key", keypair.public_key)
        result.set("git_auth.private_key", keypair.private_key)

    async def prepare_gitops(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        await self._workspace.prepare(ctx.paths, cluster)

    async def apply_git_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        await self._apply(ctx, TerraformModule.GIT, cluster.git_provider.value)

    async def push_gitops(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        if cluster.git_provider is GitProvider.GITLAB:
            await self._ensure_kbot_key(cluster)
        await self._workspace.push(ctx.paths, cluster)

    async def apply_cloud_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        await self._apply(ctx, TerraformModule.CLOUD, cluster.cloud_provider.value)

    async def detokenize_kms_key(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        alias = ctx.adapter.kms_key_alias(cluster)
        if not alias:
            return
        key_id = await self._kms_clients(cluster).key_id(alias)
        await self._workspace.publish_kms_key(ctx.paths, cluster, key_id)
        result.set("aws_kms_key_id", key_id)

    async def wait_for_cluster(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await kube.wait_for_deployment_ready(
            KUBE_SYSTEM_NAMESPACE, COREDNS, self._options.cluster_ready_timeout
        )

    async def create_cluster_secrets(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await ctx.adapter.bootstrap(kube, cluster)
        await kube.create_secret_if_absent(
            "kubefirst",
            "kubefirst-initial-secrets",
            {"K1_ACCESS_TOKEN": cluster.kubefirst_api_token},
        )
        await kube.create_secret_if_absent("argo", "docker-config", {"config.json": docker_config(cluster)})

    async def install_argocd(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await kube.apply_kustomize(self._options.argocd_manifest_url)
        await kube.wait_for_deployment_ready(
            ARGOCD_NAMESPACE, ARGOCD_SERVER, self._options.argocd_ready_timeout
        )

    async def initialize_argocd(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        secret = await kube.read_secret(ARGOCD_NAMESPACE, "argocd-initial-admin-secret")
        password = (secret or {}).get("password", "")
        if not password:
            raise ArgoCDError("argocd-initial-admin-secret has no password")

        port = self._options.argocd_local_port
        async with kube.port_forward(ARGOCD_NAMESPACE, ARGOCD_SERVER, port, 80):
            token = await self._argocd_clients(f"http://localhost:{port}").get_token("admin", password)

        result.set("argocd_password", password)
        result.set("argocd_auth_token", token)

    async def create_registry(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await kube.create_custom_object(
            "argoproj.io", "v1alpha1", ARGOCD_NAMESPACE, "applications", registry_application(ctx)
        )
        # A later deletion must remove this Application again.
        result.set(checkpoint_path(Step.ARGOCD_DELETE_REGISTRY), StepStatus.PENDING)

    async def initialize_vault(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await kube.wait_for_statefulset_ready(
            VAULT_NAMESPACE, "app.kubernetes.io/instance=vault", self._options.vault_ready_timeout
        )

        root_token = await self._stored_root_token(kube)
        if root_token:
            logger.info("vault_already_initialized")
        elif ctx.adapter.auto_unseal:
            port = self._options.vault_local_port
            async with kube.port_forward(VAULT_NAMESPACE, "vault", port, 8200):
                init = await self._vault_clients(f"http://localhost:{port}").initialize()
            data = {"root-token": init.root_token}
            for i, key in enumerate(init.unseal_keys, start=1):
                data[f"root-unseal-key-{i}"] = key
            await kube.upsert_secret(VAULT_NAMESPACE, VAULT_UNSEAL_SECRET, data)
            root_token = init.root_token
        else:
            await kube.apply_kustomize(self._options.vault_handler_manifest_url)
            await kube.wait_for_job_complete(
                VAULT_NAMESPACE, "vault-handler", self._options.vault_handler_timeout
            )
            root_token = await self._stored_root_token(kube)

        if not root_token:
            raise VaultError(f"{VAULT_UNSEAL_SECRET} has no root-token")
        result.set("vault_auth.root_token", root_token)

    async def apply_vault_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        port = self._options.vault_local_port
        async with kube.port_forward(VAULT_NAMESPACE, "vault", port, 8200):
            await self._apply(ctx, TerraformModule.VAULT, "vault")

    async def write_vault_secrets(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        token = cluster.vault_auth.root_token
        port = self._options.vault_local_port
        async with kube.port_forward(VAULT_NAMESPACE, "vault", port, 8200):
            vault = self._vault_clients(f"http://localhost:{port}")
            await vault.write_kv(token, "external-dns", {"token": ctx.adapter.external_dns_token(cluster)})
            await vault.write_kv(
                token, "cloudflare", {"origin-ca-api-key": cluster.cloudflare_auth.origin_ca_issuer_key}
            )

    async def apply_users_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        port = self._options.vault_local_port
        async with kube.port_forward(VAULT_NAMESPACE, "vault", port, 8200):
            await self._apply(ctx, TerraformModule.USERS, "users")

    async def final_check(self, ctx: PipelineContext, cluster: Cluster, result: StepResult) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await kube.wait_for_deployment_ready(
            ARGOCD_NAMESPACE, ARGOCD_SERVER, self._options.final_check_timeout
        )
        result.set("status", ClusterStatus.PROVISIONED)
        result.set("in_progress", False)

        exported = cluster.apply_updates(result.updates)
        await kube.upsert_secret(
            "kubefirst", "kubefirst-initial-state", {"cluster.json": exported.model_dump_json()}
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _find(self, cluster_name: str) -> Cluster | None:
        try:
            return await self._store.get_cluster(cluster_name)
        except ClusterNotFoundError:
            return None

    def _new_cluster(self, definition: ClusterDefinition) -> Cluster:
        cluster = Cluster.from_definition(definition)
        host = cluster.git_host_details
        return cluster.model_copy(
            update={
                "atlantis_webhook_secret": random_string(20),
                "atlantis_webhook_url": f"https://atlantis.{cluster.full_domain_name}/events",
                "state_store_bucket": f"k1-state-store-{cluster.cluster_name}-{cluster.cluster_id}",
                "artifacts_bucket": f"k1-artifacts-{cluster.cluster_name}-{cluster.cluster_id}",
                "git_host": host.host,
                "container_registry_host": host.registry_host,
                "kubefirst_api_token": random_string(40),
                "gitops_template_url": self._options.template_url,
                "gitops_template_branch": self._options.template_branch,
                "status": ClusterStatus.PROVISIONING,
                "in_progress": True,
            }
        )

    @staticmethod
    def _refresh_updates(existing: Cluster, definition: ClusterDefinition) -> dict[str, Any]:
        """Credential refresh for a resumed run. Generated values are never replaced."""
        updates: dict[str, Any] = {
            "status": ClusterStatus.PROVISIONING,
            "in_progress": True,
            "last_condition": "",
        }
        if definition.git_auth.token:
            updates["git_auth.token"] = definition.git_auth.token
        for bundle in (
            "aws_auth",
            "azure_auth",
            "google_auth",
            "civo_auth",
            "digitalocean_auth",
            "vultr_auth",
            "cloudflare_auth",
        ):
            value = getattr(definition, bundle)
            if value != getattr(existing, bundle) and value != type(value)():
                updates[bundle] = value
        return updates

    async def _apply(self, ctx: PipelineContext, module: TerraformModule, module_dir: str) -> None:
        await self._terraform.apply(
            ctx.paths.terraform_dir(module_dir),
            terraform_env_factory(self._store, ctx, module),
        )

    async def _ensure_kbot_key(self, cluster: Cluster) -> None:
        public_key = cluster.git_auth.public_key.strip()
        client = self._git_clients(cluster.git_provider, cluster.git_auth.token)
        try:
            for key in await client.list_ssh_keys():
                if key.title != KBOT_KEY_TITLE:
                    continue
                if key.key.strip() == public_key:
                    return
                logger.info("kbot_ssh_key_replaced", key_id=key.id)
                await client.delete_ssh_key(key.id)
            await client.add_ssh_key(KBOT_KEY_TITLE, public_key)
        finally:
            await client.close()

    @staticmethod
    async def _stored_root_token(kube: KubernetesClient) -> str:
        secret = await kube.read_secret(VAULT_NAMESPACE, VAULT_UNSEAL_SECRET)
        return (secret or {}).get("root-token", "")
