"""Cluster deletion pipeline, the mirror of the creation pipeline."""

from __future__ import annotations

import structlog

from provisioner.domain.models.cloud_provider import GitProvider
from provisioner.domain.models.cluster import Cluster, ClusterStatus
from provisioner.domain.models.pipeline import PipelineContext, PipelineOptions, StepResult
from provisioner.domain.models.steps import Step, StepStatus
from provisioner.domain.ports.providers import AdapterResolver, TerraformModule
from provisioner.domain.ports.repositories import CheckpointStore
from provisioner.domain.ports.services import (
    ArgoCDClientFactory,
    EventPublisher,
    GitProviderClientFactory,
    KubernetesClientFactory,
)
from provisioner.domain.services.cluster_controller import (
    ARGOCD_NAMESPACE,
    ARGOCD_SERVER,
    connect_cluster,
    KBOT_KEY_TITLE,
    PLATFORM_REPOSITORIES,
    terraform_env_factory,
)
from provisioner.domain.services.step_executor import StepExecutor, StepFailedError
from provisioner.domain.services.terraform_service import TerraformService


logger = structlog.get_logger(__name__)


class DeletionService:
    """Tears a cluster down in reverse dependency order.

    Each teardown step is gated on the creation checkpoint of the resource
    it removes and resets that checkpoint once the resource is gone, so an
    interrupted deletion resumes where it stopped.
    """

    def __init__(
        self,
        store: CheckpointStore,
        event_publisher: EventPublisher,
        terraform: TerraformService,
        resolve_adapter: AdapterResolver,
        git_clients: GitProviderClientFactory,
        kube_clients: KubernetesClientFactory,
        argocd_clients: ArgoCDClientFactory,
        options: PipelineOptions,
    ) -> None:
        self._store = store
        self._events = event_publisher
        self._terraform = terraform
        self._resolve_adapter = resolve_adapter
        self._git_clients = git_clients
        self._kube_clients = kube_clients
        self._argocd_clients = argocd_clients
        self._options = options
        self._executor = StepExecutor(store, event_publisher)

    async def delete(self, cluster_name: str) -> Cluster:
        cluster = await self._store.get_cluster(cluster_name)
        adapter = self._resolve_adapter(cluster.cloud_provider, cluster.git_provider)
        ctx = PipelineContext.from_cluster(cluster, adapter, self._options.base_dir)
        payload = {"cluster_name": cluster_name, "cloud_provider": cluster.cloud_provider.value}

        with structlog.contextvars.bound_contextvars(cluster_name=cluster_name):
            await self._store.update_cluster(
                cluster_name,
                {"status": ClusterStatus.DELETING, "in_progress": True, "last_condition": ""},
            )
            await self._events.publish("cluster.delete.started", payload)
            try:
                await self._teardown(ctx)
            except StepFailedError as e:
                logger.error("cluster_delete_failed", step=e.step, error=str(e.cause))
                await self._store.update_cluster(
                    cluster_name,
                    {
                        "status": ClusterStatus.ERROR,
                        "in_progress": False,
                        "last_condition": str(e),
                    },
                )
                await self._events.publish("cluster.delete.failed", {**payload, "step": e.step})
                raise

            cluster = await self._store.update_cluster(
                cluster_name, {"status": ClusterStatus.DELETED, "in_progress": False}
            )
            await self._events.publish("cluster.delete.succeeded", payload)
            logger.info("cluster_delete_succeeded")
        return cluster

    async def _teardown(self, ctx: PipelineContext) -> None:
        run = self._executor.run_teardown
        await run(
            ctx,
            "delete_registry_application",
            Step.CLOUD_TERRAFORM_APPLY,
            self.delete_registry_application,
            clears=Step.ARGOCD_CREATE_REGISTRY,
            marks=Step.ARGOCD_DELETE_REGISTRY,
        )
        await run(ctx, "delete_block_storage", Step.CLOUD_TERRAFORM_APPLY, self.delete_block_storage)
        await run(
            ctx,
            "git_terraform_destroy",
            Step.GIT_TERRAFORM_APPLY,
            self.destroy_git_terraform,
            clears=Step.GIT_TERRAFORM_APPLY,
        )
        await run(
            ctx,
            "cloud_terraform_destroy",
            Step.CLOUD_TERRAFORM_APPLY,
            self.destroy_cloud_terraform,
            allowed=(StepStatus.DONE, StepStatus.FAILED),
            clears=Step.CLOUD_TERRAFORM_APPLY,
        )
        if ctx.git_provider is GitProvider.GITLAB:
            await run(
                ctx,
                "delete_kbot_ssh_key",
                Step.GITOPS_PUSHED,
                self.delete_kbot_ssh_key,
                clears=Step.GITOPS_PUSHED,
            )

    # ------------------------------------------------------------------
    # Teardown steps
    # ------------------------------------------------------------------

    async def delete_registry_application(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        if not cluster.is_done(Step.ARGOCD_CREATE_REGISTRY):
            logger.info("registry_application_never_created")
            return

        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        port = self._options.argocd_local_port
        async with kube.port_forward(ARGOCD_NAMESPACE, ARGOCD_SERVER, port, 80):
            argocd = self._argocd_clients(f"http://localhost:{port}")
            token = await argocd.get_token("admin", cluster.argocd_password)
            await argocd.delete_application(token, "registry", cascade=True)
        logger.info("registry_application_deleted")

    async def delete_block_storage(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        kube = await connect_cluster(ctx, cluster, self._kube_clients)
        await ctx.adapter.delete_block_storage(kube, cluster, self._options.volume_cleanup_timeout)

    async def destroy_git_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        if cluster.git_provider is GitProvider.GITLAB:
            client = self._git_clients(cluster.git_provider, cluster.git_auth.token)
            try:
                for repo in PLATFORM_REPOSITORIES:
                    removed = await client.delete_container_registries(cluster.git_auth.owner, repo)
                    logger.info("container_registries_deleted", repository=repo, count=removed)
            finally:
                await client.close()

        await self._terraform.destroy(
            ctx.paths.terraform_dir(cluster.git_provider.value),
            terraform_env_factory(self._store, ctx, TerraformModule.GIT),
        )

    async def destroy_cloud_terraform(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        await self._terraform.destroy(
            ctx.paths.terraform_dir(cluster.cloud_provider.value),
            terraform_env_factory(self._store, ctx, TerraformModule.CLOUD),
        )

    async def delete_kbot_ssh_key(
        self, ctx: PipelineContext, cluster: Cluster, result: StepResult
    ) -> None:
        client = self._git_clients(cluster.git_provider, cluster.git_auth.token)
        try:
            for key in await client.list_ssh_keys():
                if key.title == KBOT_KEY_TITLE:
                    await client.delete_ssh_key(key.id)
                    logger.info("kbot_ssh_key_deleted", key_id=key.id)
        finally:
            await client.close()
