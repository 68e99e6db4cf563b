"""Checkpoint store selection from settings."""

from __future__ import annotations

import structlog

from provisioner.config import CheckpointBackend, Settings
from provisioner.domain.ports.repositories import CheckpointStore
from provisioner.infrastructure.kubernetes.client import KubernetesApiClient
from provisioner.infrastructure.persistence.database import DatabaseManager
from provisioner.infrastructure.persistence.repositories import (
    InMemoryCheckpointStore,
    KubernetesSecretCheckpointStore,
    SqlCheckpointStore,
)


logger = structlog.get_logger(__name__)


async def create_checkpoint_store(
    settings: Settings,
) -> tuple[CheckpointStore, DatabaseManager | None]:
    """Build the configured store. The database manager, if any, must be closed by the caller."""
    backend = settings.checkpoint.backend
    logger.info("checkpoint_store_selected", backend=backend.value)

    if backend is CheckpointBackend.POSTGRES:
        db = DatabaseManager(settings.database)
        await db.initialize()
        await db.create_schema()
        return SqlCheckpointStore(db), db

    if backend is CheckpointBackend.KUBERNETES:
        kube = KubernetesApiClient(
            kubeconfig=settings.checkpoint.kubeconfig,
            kubectl_binary=settings.kubernetes.kubectl_binary,
            poll_interval=settings.kubernetes.poll_interval_seconds,
        )
        return KubernetesSecretCheckpointStore(kube, settings.checkpoint.namespace), None

    return InMemoryCheckpointStore(), None
