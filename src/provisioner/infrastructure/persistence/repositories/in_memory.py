"""In-memory checkpoint store for development and testing."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from provisioner.domain.models.cluster import Cluster
from provisioner.domain.ports.repositories import (
    CheckpointStore,
    CheckpointStoreError,
    ClusterNotFoundError,
)


# Module-level shared store enables cross-instance access in the API
# while keeping a single clear point for test isolation.
_cluster_store: dict[str, Cluster] = {}


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory checkpoint store. Records are copied in and out."""

    def __init__(self) -> None:
        self._store = _cluster_store

    async def get_cluster(self, cluster_name: str) -> Cluster:
        cluster = self._store.get(cluster_name)
        if cluster is None:
            raise ClusterNotFoundError(cluster_name)
        return cluster.model_copy(deep=True)

    async def insert_cluster(self, cluster: Cluster) -> Cluster:
        if cluster.cluster_name in self._store:
            raise CheckpointStoreError(f"Cluster {cluster.cluster_name} already exists")
        self._store[cluster.cluster_name] = cluster.model_copy(deep=True)
        return cluster

    async def update_cluster(self, cluster_name: str, updates: Mapping[str, Any]) -> Cluster:
        current = await self.get_cluster(cluster_name)
        updated = current.apply_updates(updates)
        self._store[cluster_name] = updated
        return updated.model_copy(deep=True)

    async def delete_cluster(self, cluster_name: str) -> None:
        if self._store.pop(cluster_name, None) is None:
            raise ClusterNotFoundError(cluster_name)

    async def list_clusters(self) -> list[Cluster]:
        items = [c.model_copy(deep=True) for c in self._store.values()]
        return sorted(items, key=lambda c: c.created_at)

    @classmethod
    def clear(cls) -> None:
        """Clear the shared store. Used by test fixtures for isolation."""
        _cluster_store.clear()
