"""Unit tests for the checkpoint store backends."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select

from provisioner.config import DatabaseSettings
from provisioner.domain.models.cluster import (
    Cluster,
    ClusterDefinition,
    ClusterStatus,
    InvalidFieldPathError,
)
from provisioner.domain.models.steps import checkpoint_path, Step, StepStatus
from provisioner.domain.ports.repositories import (
    CheckpointStore,
    CheckpointStoreError,
    ClusterNotFoundError,
)
from provisioner.infrastructure.persistence.database import DatabaseManager
from provisioner.infrastructure.persistence.models import ClusterORM
from provisioner.infrastructure.persistence.repositories import (
    InMemoryCheckpointStore,
    KubernetesSecretCheckpointStore,
    SqlCheckpointStore,
)
from provisioner.infrastructure.persistence.repositories.kubernetes_store import (
    RECORD_KEY,
    RECORD_LABEL,
)


class SecretApi:
    """The slice of the Kubernetes client the secret-backed store calls."""

    def __init__(self) -> None:
        self.namespaces: list[str] = []
        self.secrets: dict[tuple[str, str], dict[str, str]] = {}
        self.labels: dict[tuple[str, str], dict[str, str]] = {}

    async def ensure_namespaces(self, names: list[str]) -> None:
        self.namespaces.extend(names)

    async def read_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None

    async def create_secret_if_absent(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, str],
        labels: Mapping[str, str] | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> bool:
        if (namespace, name) in self.secrets:
            return False
        self.secrets[(namespace, name)] = dict(data)
        self.labels[(namespace, name)] = dict(labels or {})
        return True

    async def upsert_labeled_secret(
        self, namespace: str, name: str, data: Mapping[str, str], labels: Mapping[str, str]
    ) -> None:
        self.secrets[(namespace, name)] = dict(data)
        self.labels[(namespace, name)] = dict(labels)

    async def delete_secret(self, namespace: str, name: str) -> None:
        self.secrets.pop((namespace, name), None)

    async def list_secrets(self, namespace: str, label_selector: str) -> list[dict[str, str]]:
        key, _, value = label_selector.partition("=")
        return [
            dict(data)
            for (ns, name), data in self.secrets.items()
            if ns == namespace and self.labels.get((ns, name), {}).get(key) == value
        ]


@pytest_asyncio.fixture(params=["memory", "sql", "kubernetes"])
async def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[CheckpointStore]:
    if request.param == "memory":
        yield InMemoryCheckpointStore()
    elif request.param == "sql":
        db = DatabaseManager(DatabaseSettings(), url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
        await db.initialize()
        await db.create_schema()
        yield SqlCheckpointStore(db)
        await db.close()
    else:
        yield KubernetesSecretCheckpointStore(SecretApi())  # type: ignore[arg-type]


class TestCheckpointStoreContract:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, any_store: CheckpointStore, sample_cluster: Cluster) -> None:
        await any_store.insert_cluster(sample_cluster)
        loaded = await any_store.get_cluster("kubefirst-mgmt")
        assert loaded.cluster_id == sample_cluster.cluster_id
        assert loaded.civo_auth.token == "civo-token"
        assert loaded.status == ClusterStatus.PROVISIONING

    @pytest.mark.asyncio
    async def test_duplicate_insert_rejected(
        self, any_store: CheckpointStore, sample_cluster: Cluster
    ) -> None:
        await any_store.insert_cluster(sample_cluster)
        with pytest.raises(CheckpointStoreError):
            await any_store.insert_cluster(sample_cluster)

    @pytest.mark.asyncio
    async def test_get_missing(self, any_store: CheckpointStore) -> None:
        with pytest.raises(ClusterNotFoundError):
            await any_store.get_cluster("missing")

    @pytest.mark.asyncio
    async def test_update_is_visible_to_next_read(
        self, any_store: CheckpointStore, sample_cluster: Cluster
    ) -> None:
        await any_store.insert_cluster(sample_cluster)
        path = checkpoint_path(Step.GIT_TERRAFORM_APPLY)

        updated = await any_store.update_cluster(
            "kubefirst-mgmt",
            {path: StepStatus.DONE, "in_progress": True, "git_auth.user": "kbot-user"},
        )
        loaded = await any_store.get_cluster("kubefirst-mgmt")

        assert updated.version == sample_cluster.version + 1
        assert loaded.is_done(Step.GIT_TERRAFORM_APPLY)
        assert loaded.in_progress is True
        assert loaded.git_auth.user == "kbot-user"
        assert loaded.git_auth.owner == "acme"
        assert loaded.version == updated.version

    @pytest.mark.asyncio
    async def test_update_unknown_path(self, any_store: CheckpointStore, sample_cluster: Cluster) -> None:
        await any_store.insert_cluster(sample_cluster)
        with pytest.raises(InvalidFieldPathError):
            await any_store.update_cluster("kubefirst-mgmt", {"no_such_field": 1})
        loaded = await any_store.get_cluster("kubefirst-mgmt")
        assert loaded.version == sample_cluster.version

    @pytest.mark.asyncio
    async def test_update_missing(self, any_store: CheckpointStore) -> None:
        with pytest.raises(ClusterNotFoundError):
            await any_store.update_cluster("missing", {"in_progress": True})

    @pytest.mark.asyncio
    async def test_delete(self, any_store: CheckpointStore, sample_cluster: Cluster) -> None:
        await any_store.insert_cluster(sample_cluster)
        await any_store.delete_cluster("kubefirst-mgmt")
        with pytest.raises(ClusterNotFoundError):
            await any_store.get_cluster("kubefirst-mgmt")
        with pytest.raises(ClusterNotFoundError):
            await any_store.delete_cluster("kubefirst-mgmt")

    @pytest.mark.asyncio
    async def test_list(self, any_store: CheckpointStore, civo_definition: ClusterDefinition) -> None:
        first = Cluster.from_definition(civo_definition)
        second = Cluster.from_definition(civo_definition.model_copy(update={"cluster_name": "second"}))
        await any_store.insert_cluster(first)
        await any_store.insert_cluster(second)

        names = [c.cluster_name for c in await any_store.list_clusters()]

        assert names == ["kubefirst-mgmt", "second"]


class TestInMemoryCheckpointStore:
    @pytest.mark.asyncio
    async def test_records_are_copies(self, sample_cluster: Cluster) -> None:
        store = InMemoryCheckpointStore()
        await store.insert_cluster(sample_cluster)
        loaded = await store.get_cluster("kubefirst-mgmt")
        loaded.in_progress = True
        assert (await store.get_cluster("kubefirst-mgmt")).in_progress is False

    @pytest.mark.asyncio
    async def test_instances_share_records(self, sample_cluster: Cluster) -> None:
        await InMemoryCheckpointStore().insert_cluster(sample_cluster)
        assert len(await InMemoryCheckpointStore().list_clusters()) == 1


class TestKubernetesSecretCheckpointStore:
    @pytest.mark.asyncio
    async def test_record_layout(self, sample_cluster: Cluster) -> None:
        api = SecretApi()
        store = KubernetesSecretCheckpointStore(api, namespace="kubefirst")  # type: ignore[arg-type]

        await store.insert_cluster(sample_cluster)

        assert api.namespaces == ["kubefirst"]
        secret = api.secrets[("kubefirst", "kubefirst-mgmt")]
        assert json.loads(secret[RECORD_KEY])["cluster_name"] == "kubefirst-mgmt"
        assert api.labels[("kubefirst", "kubefirst-mgmt")] == {RECORD_LABEL: "cluster"}

    @pytest.mark.asyncio
    async def test_corrupt_record(self) -> None:
        api = SecretApi()
        api.secrets[("kubefirst", "broken")] = {RECORD_KEY: "{not json"}
        store = KubernetesSecretCheckpointStore(api)  # type: ignore[arg-type]
        with pytest.raises(CheckpointStoreError, match="Corrupt"):
            await store.get_cluster("broken")

    @pytest.mark.asyncio
    async def test_unrelated_secrets_not_listed(self, sample_cluster: Cluster) -> None:
        api = SecretApi()
        api.secrets[("kubefirst", "other")] = {"token": "x"}
        store = KubernetesSecretCheckpointStore(api)  # type: ignore[arg-type]
        await store.insert_cluster(sample_cluster)
        assert [c.cluster_name for c in await store.list_clusters()] == ["kubefirst-mgmt"]


class TestSqlCheckpointStore:
    @pytest.mark.asyncio
    async def test_uninitialized_database(self, sample_cluster: Cluster) -> None:
        store = SqlCheckpointStore(DatabaseManager(DatabaseSettings(), url="sqlite+aiosqlite://"))
        with pytest.raises(RuntimeError, match="not initialized"):
            await store.get_cluster("kubefirst-mgmt")

    @pytest.mark.asyncio
    async def test_denormalized_columns_follow_record(
        self, tmp_path: Path, sample_cluster: Cluster
    ) -> None:
        db = DatabaseManager(DatabaseSettings(), url=f"sqlite+aiosqlite:///{tmp_path / 'cols.db'}")
        await db.initialize()
        await db.create_schema()
        store = SqlCheckpointStore(db)
        await store.insert_cluster(sample_cluster)
        await store.update_cluster(
            "kubefirst-mgmt", {"status": ClusterStatus.ERROR, "last_condition": "boom"}
        )

        async with db.session() as session:
            orm = (await session.execute(select(ClusterORM))).scalar_one()
        await db.close()

        assert orm.status == "error"
        assert orm.last_condition == "boom"
        assert orm.document["status"] == "error"
