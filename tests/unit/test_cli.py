"""Unit tests for the command line entrypoint."""

from __future__ import annotations

import pytest
from fakes import FakeKubernetesClient, FakeTerraformExecutor, RecordingContainer

from provisioner.cli import (
    build_parser,
    definition_from_env,
    describe,
    EXIT_FAILED,
    EXIT_OK,
    run_command,
)
from provisioner.config import Settings
from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import Cluster, ClusterStatus
from provisioner.domain.services.cluster_controller import ClusterController
from provisioner.domain.services.deletion_service import DeletionService
from provisioner.infrastructure.persistence.repositories.in_memory import InMemoryCheckpointStore


CREATE_ARGS = [
    "create",
    "--cluster-name",
    "kubefirst-mgmt",
    "--cloud-provider",
    "civo",
    "--git-provider",
    "github",
    "--git-owner",
    "acme",
    "--domain-name",
    "example.com",
    "--cloud-region",
    "nyc1",
]

CIVO_ENV = {
    "GITHUB_TOKEN": "ghp_token",
    "CIVO_TOKEN": "civo-token",
}


@pytest.fixture
def container(
    settings: Settings,
    store: InMemoryCheckpointStore,
    controller: ClusterController,
    deletion_service: DeletionService,
    kube: FakeKubernetesClient,
) -> RecordingContainer:
    kube.job_outputs["vault-handler"] = ("vault", "vault-unseal-secret", {"root-token": "hvs.cli"})
    return RecordingContainer(settings, store, controller, deletion_service)


class TestDefinitionFromEnv:
    def test_credentials_come_from_environment(self) -> None:
        args = build_parser().parse_args(CREATE_ARGS)
        definition = definition_from_env(args, {**CIVO_ENV, "GIT_USER": "kbot"})

        assert definition.cloud_provider == CloudProvider.CIVO
        assert definition.git_provider == GitProvider.GITHUB
        assert definition.git_auth.owner == "acme"
        assert definition.git_auth.user == "kbot"
        assert definition.git_auth.token == "ghp_token"
        assert definition.civo_auth.token == "civo-token"

    def test_gitlab_token_variable(self) -> None:
        argv = [a if a != "github" else "gitlab" for a in CREATE_ARGS]
        args = build_parser().parse_args(argv)
        definition = definition_from_env(args, {"GITHUB_TOKEN": "wrong", "GITLAB_TOKEN": "glpat"})
        assert definition.git_auth.token == "glpat"

    def test_unknown_cloud_rejected_by_parser(self) -> None:
        argv = [a if a != "civo" else "k3d" for a in CREATE_ARGS]
        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_create(
        self,
        container: RecordingContainer,
        store: InMemoryCheckpointStore,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        for key, value in CIVO_ENV.items():
            monkeypatch.setenv(key, value)

        code = await run_command(build_parser().parse_args(CREATE_ARGS), container)

        assert code == EXIT_OK
        assert "cluster kubefirst-mgmt provisioned" in capsys.readouterr().out
        assert (await store.get_cluster("kubefirst-mgmt")).status == ClusterStatus.PROVISIONED

    @pytest.mark.asyncio
    async def test_create_missing_credentials(
        self,
        container: RecordingContainer,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        for key in CIVO_ENV:
            monkeypatch.delenv(key, raising=False)

        code = await run_command(build_parser().parse_args(CREATE_ARGS), container)

        assert code == EXIT_FAILED
        assert "civo token" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_destroy_failure_exit_code(
        self,
        container: RecordingContainer,
        store: InMemoryCheckpointStore,
        sample_cluster: Cluster,
        terraform_executor: FakeTerraformExecutor,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await store.insert_cluster(sample_cluster)
        await store.update_cluster(
            "kubefirst-mgmt", {"checkpoints.cloud_terraform_apply": "done"}
        )
        terraform_executor.destroy_results = [(False, "Error: volume in use")]

        code = await run_command(
            build_parser().parse_args(["destroy", "--cluster-name", "kubefirst-mgmt"]), container
        )

        assert code == EXIT_FAILED
        assert "volume in use" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_status_hides_credentials(
        self,
        container: RecordingContainer,
        store: InMemoryCheckpointStore,
        sample_cluster: Cluster,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await store.insert_cluster(sample_cluster)

        code = await run_command(
            build_parser().parse_args(["status", "--cluster-name", "kubefirst-mgmt"]), container
        )

        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert '"cluster_name": "kubefirst-mgmt"' in out
        assert "civo-token" not in out

    @pytest.mark.asyncio
    async def test_status_unknown_cluster(
        self, container: RecordingContainer, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = await run_command(
            build_parser().parse_args(["status", "--cluster-name", "missing"]), container
        )
        assert code == EXIT_FAILED
        assert "not found" in capsys.readouterr().err


class TestDescribe:
    def test_includes_cause_chain(self) -> None:
        try:
            try:
                raise OSError("disk full")
            except OSError as e:
                raise RuntimeError("write failed") from e
        except RuntimeError as error:
            assert describe(error) == "write failed <- OSError: disk full"
