"""Service dependencies for FastAPI dependency injection."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from provisioner.config import get_settings, Settings
from provisioner.domain.models.pipeline import PipelineOptions
from provisioner.domain.ports.repositories import CheckpointStore
from provisioner.domain.ports.services import EventPublisher
from provisioner.domain.services.cluster_controller import ClusterController
from provisioner.domain.services.deletion_service import DeletionService
from provisioner.domain.services.terraform_service import TerraformService
from provisioner.infrastructure.argocd.client import argocd_client_factory
from provisioner.infrastructure.crypto.ssh import Ed25519KeyPairGenerator
from provisioner.infrastructure.dns.resolver import DnsOverHttpsResolver
from provisioner.infrastructure.git.providers import git_provider_client_factory
from provisioner.infrastructure.git.repository import GitCliRepository
from provisioner.infrastructure.gitops.detokenize import LiteralTokenRenderer
from provisioner.infrastructure.gitops.workspace import FilesystemGitopsWorkspace
from provisioner.infrastructure.kms.client import kms_client_factory
from provisioner.infrastructure.kubernetes.client import kubernetes_client_factory
from provisioner.infrastructure.messaging.event_publisher import (
    InMemoryEventPublisher,
    MetricsEventPublisher,
)
from provisioner.infrastructure.persistence.database import DatabaseManager
from provisioner.infrastructure.persistence.factory import create_checkpoint_store
from provisioner.infrastructure.providers.registry import adapter_resolver
from provisioner.infrastructure.statestore.provisioners import state_store_provisioner_factory
from provisioner.infrastructure.terraform.executor import TerraformCliExecutor
from provisioner.infrastructure.vault.client import vault_client_factory


logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Simple dependency injection container.

    Implements the Composition Root pattern for assembling
    dependencies and managing their lifecycle. Pipelines started from
    the API run as background tasks owned by the container, at most one
    per cluster name.
    """

    _instance: ServiceContainer | None = None

    def __init__(
        self,
        settings: Settings | None = None,
        store: CheckpointStore | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._events = InMemoryEventPublisher()
        self._event_publisher: EventPublisher = (
            MetricsEventPublisher(self._events)
            if self._settings.observability.metrics_enabled
            else self._events
        )
        self._store = store
        self._db: DatabaseManager | None = None
        self._running: dict[str, asyncio.Task[Any]] = {}

    @classmethod
    def get_instance(cls) -> ServiceContainer:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    async def initialize(self) -> None:
        if self._store is None:
            self._store, self._db = await create_checkpoint_store(self._settings)

    async def close(self) -> None:
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._db is not None:
            await self._db.close()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> CheckpointStore:
        if self._store is None:
            raise RuntimeError("Service container not initialized. Call initialize() first.")
        return self._store

    @property
    def event_publisher(self) -> EventPublisher:
        return self._event_publisher

    @property
    def events(self) -> InMemoryEventPublisher:
        return self._events

    def pipeline_options(self) -> PipelineOptions:
        gitops = self._settings.gitops
        kube = self._settings.kubernetes
        return PipelineOptions(
            base_dir=gitops.base_dir,
            template_url=gitops.template_url,
            template_branch=gitops.template_branch,
            argocd_manifest_url=gitops.argocd_manifest_url,
            vault_handler_manifest_url=gitops.vault_handler_manifest_url,
            argocd_ready_timeout=kube.argocd_ready_timeout,
            vault_ready_timeout=kube.vault_ready_timeout,
            vault_handler_timeout=kube.vault_handler_timeout,
            final_check_timeout=kube.final_check_timeout,
            volume_cleanup_timeout=kube.volume_cleanup_timeout,
            cluster_ready_timeout=kube.cluster_ready_timeout,
            domain_liveness_timeout=self._settings.dns.liveness_timeout,
            domain_liveness_interval=self._settings.dns.liveness_interval_seconds,
            argocd_local_port=kube.argocd_local_port,
            vault_local_port=kube.vault_local_port,
        )

    def terraform_service(self) -> TerraformService:
        return TerraformService(
            TerraformCliExecutor(self._settings.terraform.binary),
            backoff_seconds=self._settings.terraform.retry_backoff_seconds,
        )

    def cluster_controller(self) -> ClusterController:
        return ClusterController(
            store=self.store,
            event_publisher=self._event_publisher,
            terraform=self.terraform_service(),
            resolve_adapter=adapter_resolver(self._vault_addr()),
            git_clients=git_provider_client_factory(),
            workspace=FilesystemGitopsWorkspace(
                GitCliRepository(author=self._settings.gitops.commit_author),
                LiteralTokenRenderer(),
            ),
            key_generator=Ed25519KeyPairGenerator(),
            kube_clients=kubernetes_client_factory(self._settings.kubernetes),
            argocd_clients=argocd_client_factory(),
            vault_clients=vault_client_factory(),
            dns_resolver=DnsOverHttpsResolver(self._settings.dns.resolver_url),
            state_stores=state_store_provisioner_factory(self._settings.state_store),
            kms_clients=kms_client_factory(),
            options=self.pipeline_options(),
        )

    def deletion_service(self) -> DeletionService:
        return DeletionService(
            store=self.store,
            event_publisher=self._event_publisher,
            terraform=self.terraform_service(),
            resolve_adapter=adapter_resolver(self._vault_addr()),
            git_clients=git_provider_client_factory(),
            kube_clients=kubernetes_client_factory(self._settings.kubernetes),
            argocd_clients=argocd_client_factory(),
            options=self.pipeline_options(),
        )

    # ------------------------------------------------------------------
    # Background pipelines
    # ------------------------------------------------------------------

    def is_running(self, cluster_name: str) -> bool:
        task = self._running.get(cluster_name)
        return task is not None and not task.done()

    def run_in_background(
        self, cluster_name: str, operation: str, coro: Coroutine[Any, Any, Any]
    ) -> asyncio.Task[Any]:
        if self.is_running(cluster_name):
            coro.close()
            raise PipelineAlreadyRunningError(cluster_name)

        task = asyncio.create_task(coro, name=f"{operation}:{cluster_name}")
        self._running[cluster_name] = task

        def _finished(done: asyncio.Task[Any]) -> None:
            if self._running.get(cluster_name) is done:
                del self._running[cluster_name]
            if done.cancelled():
                logger.warning("pipeline_cancelled", cluster_name=cluster_name, operation=operation)
            elif done.exception() is not None:
                logger.error(
                    "pipeline_failed",
                    cluster_name=cluster_name,
                    operation=operation,
                    error=str(done.exception()),
                )

        task.add_done_callback(_finished)
        return task

    def _vault_addr(self) -> str:
        return f"http://127.0.0.1:{self._settings.kubernetes.vault_local_port}"


def get_service_container() -> ServiceContainer:
    return ServiceContainer.get_instance()


class PipelineAlreadyRunningError(Exception):
    """Raised when a pipeline for the cluster is already running in this process."""

    def __init__(self, cluster_name: str) -> None:
        self.cluster_name = cluster_name
        super().__init__(f"A pipeline for cluster {cluster_name} is already running")
