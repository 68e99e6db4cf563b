"""Command line entrypoint: ``provisioner create|resume|destroy|status``.

Credentials are read from the standard environment variables of each
provider rather than flags, so they never land in shell history.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from collections.abc import Mapping, Sequence

import structlog

from provisioner.api.dependencies.services import ServiceContainer
from provisioner.api.schemas.cluster_schemas import ClusterResponse
from provisioner.config import CheckpointBackend, get_settings
from provisioner.domain.models.cloud_provider import (
    CloudProvider,
    ClusterType,
    GitProtocol,
    GitProvider,
)
from provisioner.domain.models.cluster import (
    AwsAuth,
    AzureAuth,
    CivoAuth,
    CloudflareAuth,
    ClusterDefinition,
    ConfigurationError,
    DigitaloceanAuth,
    GitAuth,
    GoogleAuth,
    VultrAuth,
)
from provisioner.domain.ports.repositories import CheckpointStoreError, ClusterNotFoundError
from provisioner.domain.services.step_executor import StepFailedError
from provisioner.infrastructure.observability.logging import setup_logging


logger = structlog.get_logger(__name__)

GIT_TOKEN_VARS = {
    GitProvider.GITHUB: "GITHUB_TOKEN",
    GitProvider.GITLAB: "GITLAB_TOKEN",
}

EXIT_OK = 0
EXIT_FAILED = 1


def definition_from_env(args: argparse.Namespace, env: Mapping[str, str]) -> ClusterDefinition:
    """Combine command line selectors with credentials from the environment."""
    git_provider = GitProvider(args.git_provider)
    return ClusterDefinition(
        cluster_name=args.cluster_name,
        cluster_type=ClusterType(args.cluster_type),
        cloud_provider=CloudProvider(args.cloud_provider),
        git_provider=git_provider,
        git_protocol=GitProtocol(args.git_protocol),
        cloud_region=args.cloud_region,
        domain_name=args.domain_name,
        subdomain_name=args.subdomain_name,
        dns_provider=args.dns_provider,
        alerts_email=args.alerts_email,
        git_auth=GitAuth(
            owner=args.git_owner,
            user=env.get("GIT_USER", ""),
            token=env.get(GIT_TOKEN_VARS[git_provider], ""),
        ),
        aws_auth=AwsAuth(
            access_key_id=env.get("AWS_ACCESS_KEY_ID", ""),
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY", ""),
            session_token=env.get("AWS_SESSION_TOKEN", ""),
            account_id=env.get("AWS_ACCOUNT_ID", ""),
            use_ecr=args.ecr,
        ),
        azure_auth=AzureAuth(
            client_id=env.get("ARM_CLIENT_ID", ""),
            client_secret=env.get("ARM_CLIENT_SECRET", ""),
            tenant_id=env.get("ARM_TENANT_ID", ""),
            subscription_id=env.get("ARM_SUBSCRIPTION_ID", ""),
        ),
        google_auth=GoogleAuth(
            key_file=env.get("GOOGLE_APPLICATION_CREDENTIALS", ""),
            project_id=args.google_project or env.get("GOOGLE_CLOUD_PROJECT", ""),
        ),
        civo_auth=CivoAuth(token=env.get("CIVO_TOKEN", "")),
        digitalocean_auth=DigitaloceanAuth(
            token=env.get("DO_TOKEN", ""),
            spaces_key=env.get("DO_SPACES_KEY", ""),
            spaces_secret=env.get("DO_SPACES_SECRET", ""),
        ),
        vultr_auth=VultrAuth(token=env.get("VULTR_API_KEY", "")),
        cloudflare_auth=CloudflareAuth(
            api_token=env.get("CF_API_TOKEN", ""),
            origin_ca_issuer_key=env.get("CF_ORIGIN_CA_ISSUER_API_TOKEN", ""),
        ),    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioner", description="Provision Kubernetes management clusters"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create a cluster, resuming from its checkpoints")
    create.add_argument("--cluster-name", required=True)
    create.add_argument(
        "--cloud-provider", required=True, choices=[c.value for c in CloudProvider]
    )
    create.add_argument("--git-provider", required=True, choices=[g.value for g in GitProvider])
    create.add_argument("--git-owner", required=True, help="github organization or gitlab group")
    create.add_argument("--domain-name", required=True)
    create.add_argument("--cloud-region", default="")
    create.add_argument("--subdomain-name", default="")
    create.add_argument(
        "--git-protocol", default=GitProtocol.HTTPS.value, choices=[p.value for p in GitProtocol]
    )
    create.add_argument(
        "--cluster-type", default=ClusterType.MGMT.value, choices=[t.value for t in ClusterType]
    )
    create.add_argument("--dns-provider", default="", help="cloudflare or empty for the cloud's DNS")
    create.add_argument("--alerts-email", default="")
    create.add_argument("--google-project", default="")
    create.add_argument("--ecr", action="store_true", help="use ECR instead of the git registry (aws)")

    for name, help_text in (
        ("resume", "re-run a cluster pipeline with its stored credentials"),
        ("destroy", "tear down a cluster"),
        ("status", "print a cluster record without credentials"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--cluster-name", required=True)

    sub.add_parser("list", help="list cluster records")
    return parser


async def run_command(args: argparse.Namespace, container: ServiceContainer) -> int:
    await container.initialize()
    try:
        if args.command == "create":
            definition = definition_from_env(args, os.environ)
            cluster = await container.cluster_controller().create(definition)
            print(f"cluster {cluster.cluster_name} provisioned ({cluster.cluster_id})")
        elif args.command == "resume":
            cluster = await container.cluster_controller().resume(args.cluster_name)
            print(f"cluster {cluster.cluster_name} provisioned ({cluster.cluster_id})")
        elif args.command == "destroy":
            cluster = await container.deletion_service().delete(args.cluster_name)
            print(f"cluster {cluster.cluster_name} deleted")
        elif args.command == "status":
            cluster = await container.store.get_cluster(args.cluster_name)
            print(ClusterResponse.from_cluster(cluster).model_dump_json(indent=2))
        elif args.command == "list":
            for cluster in await container.store.list_clusters():
                print(f"{cluster.cluster_name}\t{cluster.cloud_provider.value}\t{cluster.status.value}")
    except (
        StepFailedError,
        ConfigurationError,
        ClusterNotFoundError,
        CheckpointStoreError,
        ValueError,
    ) as e:
        print(f"error: {describe(e)}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        await container.close()
    return EXIT_OK


def describe(error: BaseException) -> str:
    """Render an exception and its causes as one line."""
    parts = [str(error)]
    cause = error.__cause__
    while cause is not None:
        parts.append(f"{type(cause).__name__}: {cause}")
        cause = cause.__cause__
    return " <- ".join(parts)


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.observability.log_level, json_output=False)
    if settings.checkpoint.backend is CheckpointBackend.MEMORY and args.command != "create":
        logger.warning("memory_checkpoint_backend", hint="records do not survive the process")

    sys.exit(asyncio.run(run_command(args, ServiceContainer(settings))))


if __name__ == "__main__":
    main()
