"""Unit tests for the service container."""

from __future__ import annotations

import asyncio

import pytest

from provisioner.api.dependencies.services import PipelineAlreadyRunningError, ServiceContainer
from provisioner.config import Settings
from provisioner.domain.services.cluster_controller import ClusterController
from provisioner.domain.services.deletion_service import DeletionService
from provisioner.infrastructure.messaging.event_publisher import MetricsEventPublisher
from provisioner.infrastructure.persistence.repositories.in_memory import InMemoryCheckpointStore


@pytest.fixture
def container(settings: Settings, store: InMemoryCheckpointStore) -> ServiceContainer:
    return ServiceContainer(settings=settings, store=store)


class TestServiceContainer:
    def test_uninitialized_store(self, settings: Settings) -> None:
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = ServiceContainer(settings=settings).store

    @pytest.mark.asyncio
    async def test_initialize_builds_configured_store(self, settings: Settings) -> None:
        container = ServiceContainer(settings=settings)
        await container.initialize()
        assert isinstance(container.store, InMemoryCheckpointStore)
        await container.close()

    def test_metrics_publisher_wraps_event_log(self, container: ServiceContainer) -> None:
        assert isinstance(container.event_publisher, MetricsEventPublisher)

    def test_pipeline_options_follow_settings(self, settings: Settings) -> None:
        settings.kubernetes.vault_local_port = 18200
        settings.dns.liveness_timeout = 45
        options = ServiceContainer(settings=settings).pipeline_options()
        assert options.vault_local_port == 18200
        assert options.domain_liveness_timeout == 45
        assert options.cluster_ready_timeout == settings.kubernetes.cluster_ready_timeout
        assert options.template_url == settings.gitops.template_url

    def test_builds_services(self, container: ServiceContainer) -> None:
        assert isinstance(container.cluster_controller(), ClusterController)
        assert isinstance(container.deletion_service(), DeletionService)

    def test_singleton(self) -> None:
        ServiceContainer.reset()
        try:
            assert ServiceContainer.get_instance() is ServiceContainer.get_instance()
        finally:
            ServiceContainer.reset()


class TestRunInBackground:
    @pytest.mark.asyncio
    async def test_one_run_per_cluster(self, container: ServiceContainer) -> None:
        release = asyncio.Event()

        async def pipeline() -> str:
            await release.wait()
            return "done"

        task = container.run_in_background("kubefirst-mgmt", "create", pipeline())
        assert container.is_running("kubefirst-mgmt")

        second = pipeline()
        with pytest.raises(PipelineAlreadyRunningError):
            container.run_in_background("kubefirst-mgmt", "delete", second)

        # Other clusters are independent.
        other = container.run_in_background("other", "create", pipeline())

        release.set()
        assert await task == "done"
        await other
        await asyncio.sleep(0)
        assert not container.is_running("kubefirst-mgmt")

    @pytest.mark.asyncio
    async def test_failed_run_releases_slot(self, container: ServiceContainer) -> None:
        async def pipeline() -> None:
            raise RuntimeError("terraform exploded")

        task = container.run_in_background("kubefirst-mgmt", "create", pipeline())
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)
        assert not container.is_running("kubefirst-mgmt")

    @pytest.mark.asyncio
    async def test_close_cancels_runs(self, container: ServiceContainer) -> None:
        task = container.run_in_background("kubefirst-mgmt", "create", asyncio.sleep(60))
        await container.close()
        assert task.done()
        assert task.cancelled()
        assert not container.is_running("kubefirst-mgmt")
