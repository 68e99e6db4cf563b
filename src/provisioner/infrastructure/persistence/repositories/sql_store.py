"""SQLAlchemy checkpoint store."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from provisioner.domain.models.cluster import Cluster
from provisioner.domain.ports.repositories import (
    CheckpointStore,
    CheckpointStoreError,
    ClusterNotFoundError,
)
from provisioner.infrastructure.persistence.database import DatabaseManager
from provisioner.infrastructure.persistence.models import ClusterORM


class SqlCheckpointStore(CheckpointStore):
    """Relational implementation of CheckpointStore.

    Each call runs in its own session, so an update is committed before
    the call returns.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_cluster(self, cluster_name: str) -> Cluster:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ClusterORM).where(ClusterORM.cluster_name == cluster_name)
                )
                orm = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise CheckpointStoreError(f"Failed to read cluster {cluster_name}: {e}") from e
        if orm is None:
            raise ClusterNotFoundError(cluster_name)
        return self._to_domain(orm)

    async def insert_cluster(self, cluster: Cluster) -> Cluster:
        try:
            async with self._db.session() as session:
                session.add(self._to_orm(cluster))
                await session.flush()
        except SQLAlchemyError as e:
            raise CheckpointStoreError(
                f"Failed to insert cluster {cluster.cluster_name}: {e}"
            ) from e
        return cluster

    async def update_cluster(self, cluster_name: str, updates: Mapping[str, Any]) -> Cluster:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ClusterORM)
                    .where(ClusterORM.cluster_name == cluster_name)
                    .with_for_update()
                )
                orm = result.scalar_one_or_none()
                if orm is None:
                    raise ClusterNotFoundError(cluster_name)

                updated = self._to_domain(orm).apply_updates(updates)
                await session.execute(
                    update(ClusterORM)
                    .where(ClusterORM.id == orm.id)
                    .values(**self._columns(updated))
                )
        except SQLAlchemyError as e:
            raise CheckpointStoreError(f"Failed to update cluster {cluster_name}: {e}") from e
        return updated

    async def delete_cluster(self, cluster_name: str) -> None:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ClusterORM).where(ClusterORM.cluster_name == cluster_name)
                )
        except SQLAlchemyError as e:
            raise CheckpointStoreError(f"Failed to delete cluster {cluster_name}: {e}") from e
        if result.rowcount == 0:
            raise ClusterNotFoundError(cluster_name)

    async def list_clusters(self) -> list[Cluster]:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ClusterORM).order_by(ClusterORM.created_at, ClusterORM.cluster_name)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise CheckpointStoreError(f"Failed to list clusters: {e}") from e
        return [self._to_domain(orm) for orm in rows]

    @staticmethod
    def _columns(cluster: Cluster) -> dict[str, Any]:
        return {
            "cluster_name": cluster.cluster_name,
            "cluster_id": cluster.cluster_id,
            "cloud_provider": cluster.cloud_provider.value,
            "git_provider": cluster.git_provider.value,
            "status": cluster.status.value,
            "in_progress": cluster.in_progress,
            "last_condition": cluster.last_condition,
            "document": cluster.model_dump(mode="json"),
            "version": cluster.version,
        }

    def _to_orm(self, cluster: Cluster) -> ClusterORM:
        return ClusterORM(id=cluster.id, **self._columns(cluster))

    @staticmethod
    def _to_domain(orm: ClusterORM) -> Cluster:
        return Cluster.model_validate(orm.document)
