"""Checkpoint store backed by Kubernetes secrets."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError

from provisioner.domain.models.cluster import Cluster
from provisioner.domain.ports.repositories import (
    CheckpointStore,
    CheckpointStoreError,
    ClusterNotFoundError,
)
from provisioner.infrastructure.kubernetes.client import KubernetesApiClient


RECORD_KEY = "cluster.json"
RECORD_LABEL = "provisioner.kubefirst.io/record"
RECORD_SELECTOR = f"{RECORD_LABEL}=cluster"


class KubernetesSecretCheckpointStore(CheckpointStore):
    """One secret per cluster, named after it, holding the JSON record.

    Replacing the secret is atomic on the API server, which makes every
    update durable once the call returns.
    """

    def __init__(self, kube: KubernetesApiClient, namespace: str = "kubefirst") -> None:
        self._kube = kube
        self._namespace = namespace
        self._namespace_ready = False

    async def get_cluster(self, cluster_name: str) -> Cluster:
        try:
            data = await self._kube.read_secret(self._namespace, cluster_name)
        except ApiException as e:
            raise CheckpointStoreError(f"Failed to read cluster {cluster_name}: {e.reason}") from e
        if data is None or RECORD_KEY not in data:
            raise ClusterNotFoundError(cluster_name)
        return self._decode(cluster_name, data[RECORD_KEY])

    async def insert_cluster(self, cluster: Cluster) -> Cluster:
        await self._ensure_namespace()
        try:
            created = await self._kube.create_secret_if_absent(
                self._namespace,
                cluster.cluster_name,
                {RECORD_KEY: cluster.model_dump_json()},
                labels={RECORD_LABEL: "cluster"},
            )
        except ApiException as e:
            raise CheckpointStoreError(
                f"Failed to insert cluster {cluster.cluster_name}: {e.reason}"
            ) from e
        if not created:
            raise CheckpointStoreError(f"Cluster {cluster.cluster_name} already exists")
        return cluster

    async def update_cluster(self, cluster_name: str, updates: Mapping[str, Any]) -> Cluster:
        updated = (await self.get_cluster(cluster_name)).apply_updates(updates)
        try:
            await self._kube.upsert_labeled_secret(
                self._namespace,
                cluster_name,
                {RECORD_KEY: updated.model_dump_json()},
                labels={RECORD_LABEL: "cluster"},
            )
        except ApiException as e:
            raise CheckpointStoreError(f"Failed to update cluster {cluster_name}: {e.reason}") from e
        return updated

    async def delete_cluster(self, cluster_name: str) -> None:
        await self.get_cluster(cluster_name)
        try:
            await self._kube.delete_secret(self._namespace, cluster_name)
        except ApiException as e:
            raise CheckpointStoreError(f"Failed to delete cluster {cluster_name}: {e.reason}") from e

    async def list_clusters(self) -> list[Cluster]:
        try:
            secrets = await self._kube.list_secrets(self._namespace, RECORD_SELECTOR)
        except ApiException as e:
            raise CheckpointStoreError(f"Failed to list clusters: {e.reason}") from e
        clusters = [
            self._decode("<listed>", data[RECORD_KEY]) for data in secrets if RECORD_KEY in data
        ]
        return sorted(clusters, key=lambda c: c.created_at)

    async def _ensure_namespace(self) -> None:
        if not self._namespace_ready:
            await self._kube.ensure_namespaces([self._namespace])
            self._namespace_ready = True

    @staticmethod
    def _decode(cluster_name: str, raw: str) -> Cluster:
        try:
            return Cluster.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise CheckpointStoreError(f"Corrupt record for cluster {cluster_name}: {e}") from e
