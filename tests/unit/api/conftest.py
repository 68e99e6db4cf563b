"""Fixtures for API tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fakes import RecordingContainer
from fastapi.testclient import TestClient

from provisioner.api.app import create_app
from provisioner.api.dependencies.services import ServiceContainer
from provisioner.config import Settings
from provisioner.domain.services.cluster_controller import ClusterController
from provisioner.domain.services.deletion_service import DeletionService
from provisioner.infrastructure.persistence.repositories.in_memory import InMemoryCheckpointStore


@pytest.fixture
def container(
    settings: Settings,
    store: InMemoryCheckpointStore,
    controller: ClusterController,
    deletion_service: DeletionService,
) -> Iterator[RecordingContainer]:
    recording = RecordingContainer(settings, store, controller, deletion_service)
    ServiceContainer._instance = recording
    yield recording
    ServiceContainer.reset()


@pytest.fixture
def client(settings: Settings, container: RecordingContainer) -> Iterator[TestClient]:
    with TestClient(create_app(settings)) as test_client:
        yield test_client
