"""Repository port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from provisioner.domain.models.cluster import Cluster


class CheckpointStore(ABC):
    """Port for durable cluster record persistence.

    The record is the only state that survives a crash. Implementations
    must make ``update_cluster`` durable before returning.
    """

    @abstractmethod
    async def get_cluster(self, cluster_name: str) -> Cluster:
        """Load a cluster record. Raises ClusterNotFoundError when absent."""

    @abstractmethod
    async def insert_cluster(self, cluster: Cluster) -> Cluster:
        """Create a new cluster record."""

    @abstractmethod
    async def update_cluster(self, cluster_name: str, updates: Mapping[str, Any]) -> Cluster:
        """Apply dotted-path field updates and persist the result."""

    @abstractmethod
    async def delete_cluster(self, cluster_name: str) -> None:
        """Remove a cluster record."""

    @abstractmethod
    async def list_clusters(self) -> list[Cluster]:
        """List all cluster records."""


class ClusterNotFoundError(Exception):
    """Raised when a cluster record does not exist."""

    def __init__(self, cluster_name: str) -> None:
        self.cluster_name = cluster_name
        super().__init__(f"Cluster {cluster_name} not found")


class CheckpointStoreError(Exception):
    """Raised when the checkpoint store cannot read or write a record."""
