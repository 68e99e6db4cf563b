"""Terraform state store creation, one provisioner per cloud.

S3-compatible stores (AWS, DigitalOcean Spaces, Vultr) are created with
boto3. Civo and Vultr object storage accounts are created through their
REST APIs, Azure and Google through their CLIs. Every provisioner
tolerates a bucket that already exists so a failed run can be resumed.
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import boto3
import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.config import StateStoreSettings
from provisioner.domain.models.cloud_provider import CloudProvider
from provisioner.domain.models.cluster import (
    Cluster,
    ConfigurationError,
    StateStoreCredentials,
    StateStoreDetails,
)
from provisioner.domain.ports.services import (
    ProvisionedStateStore,
    StateStoreError,
    StateStoreProvisioner,
    StateStoreProvisionerFactory,
)
from provisioner.infrastructure.shell import CommandError, run_command


logger = structlog.get_logger(__name__)

AWS_S3_HOSTNAME = "s3.amazonaws.com"
AWS_DEFAULT_REGION = "us-east-1"
AZURE_CONTAINER = "terraform"
CIVO_BUCKET_SIZE_GB = 500

Sleep = Callable[[float], Awaitable[None]]
S3ClientFactory = Callable[[StateStoreCredentials, str, str | None], Any]
CommandRunner = Callable[..., Awaitable[str]]


# ----------------------------------------------------------------------
# S3-compatible buckets
# ----------------------------------------------------------------------


def boto_s3_client(
    credentials: StateStoreCredentials, region: str, endpoint_url: str | None = None
) -> Any:
    session = boto3.session.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token or None,
        region_name=region,
    )
    return session.client("s3", endpoint_url=endpoint_url)


async def ensure_bucket(client: Any, bucket: str, region: str = AWS_DEFAULT_REGION) -> None:
    """Create a bucket unless this account already owns it."""
    kwargs: dict[str, Any] = {"Bucket": bucket}
    if region != AWS_DEFAULT_REGION:
        kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
    try:
        await asyncio.to_thread(client.create_bucket, **kwargs)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "BucketAlreadyOwnedByYou":
            logger.info("bucket_exists", bucket=bucket)
            return
        raise StateStoreError(f"create bucket {bucket} failed: {e}") from e
    except BotoCoreError as e:
        raise StateStoreError(f"create bucket {bucket} failed: {e}") from e
    logger.info("bucket_created", bucket=bucket, region=region)


class AwsStateStore(StateStoreProvisioner):
    """State and artifacts buckets in S3, reached with the operator's own keys."""

    def __init__(self, s3_clients: S3ClientFactory = boto_s3_client) -> None:
        self._s3_clients = s3_clients

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        auth = cluster.aws_auth
        credentials = StateStoreCredentials(
            access_key_id=auth.access_key_id,
            secret_access_key=auth.secret_access_key,
            session_token=auth.session_token,
            name=cluster.state_store_bucket,
        )
        region = cluster.cloud_region or AWS_DEFAULT_REGION
        client = self._s3_clients(credentials, region, None)
        for bucket in (cluster.state_store_bucket, cluster.artifacts_bucket):
            await ensure_bucket(client, bucket, region)
        return ProvisionedStateStore(
            credentials=credentials,
            details=StateStoreDetails(
                name=cluster.state_store_bucket,
                hostname=AWS_S3_HOSTNAME,
                aws_state_store_bucket=cluster.state_store_bucket,
                aws_artifacts_bucket=cluster.artifacts_bucket,
            ),
        )


class DigitaloceanStateStore(StateStoreProvisioner):
    """A Spaces bucket created with the operator's Spaces keys."""

    def __init__(self, region: str = "nyc3", s3_clients: S3ClientFactory = boto_s3_client) -> None:
        self._region = region
        self._s3_clients = s3_clients

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        auth = cluster.digitalocean_auth
        if not auth.spaces_key or not auth.spaces_secret:
            raise ConfigurationError("DigitalOcean state store needs a Spaces key and secret")

        hostname = f"{self._region}.digitaloceanspaces.com"
        credentials = StateStoreCredentials(
            access_key_id=auth.spaces_key,
            secret_access_key=auth.spaces_secret,
            name=cluster.state_store_bucket,
        )
        client = self._s3_clients(credentials, AWS_DEFAULT_REGION, f"https://{hostname}")
        await ensure_bucket(client, cluster.state_store_bucket)
        return ProvisionedStateStore(
            credentials=credentials,
            details=StateStoreDetails(name=cluster.state_store_bucket, hostname=hostname),
        )


# ----------------------------------------------------------------------
# REST-managed object storage
# ----------------------------------------------------------------------


class _ObjectStorageApi:
    """httpx wrapper mapping unexpected statuses to StateStoreError."""

    def __init__(
        self,
        base_url: str,
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._headers = {"Authorization": f"Bearer {token}"}
        self._transport = transport

    async def request(
        self, method: str, path: str, expected: tuple[int, ...] = (200,), **kwargs: Any
    ) -> Any:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=30.0,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise StateStoreError(f"{method} {path} failed: {e}") from e
        if response.status_code not in expected:
            raise StateStoreError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        return response.json() if response.content else {}


class CivoStateStore(StateStoreProvisioner):
    """Civo object store credentials looked up by name or created, then the bucket.

    Fresh credentials take a while to be issued, so they are polled until
    both keys are filled in.
    """

    def __init__(
        self,
        api_url: str = "https://api.civo.com/v2",
        poll_interval: float = 10.0,
        poll_attempts: int = 12,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api_url = api_url
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._transport = transport
        self._sleep = sleep

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        api = _ObjectStorageApi(self._api_url, cluster.civo_auth.token, self._transport)
        region = cluster.cloud_region
        name = cluster.state_store_bucket

        credential = await self._credential(api, name, region)
        store = await self._find(api, "/objectstores", name, region)
        if store is None:
            store = await api.request(
                "POST",
                "/objectstores",
                json={
                    "name": name,
                    "region": region,
                    "access_key_id": credential["access_key_id"],
                    "max_size_gb": CIVO_BUCKET_SIZE_GB,
                },
            )
            logger.info("civo_object_store_created", name=name, region=region)

        return ProvisionedStateStore(
            credentials=StateStoreCredentials(
                access_key_id=credential["access_key_id"],
                secret_access_key=credential["secret_access_key_id"],
                name=credential["name"],
                id=credential["id"],
            ),
            details=StateStoreDetails(
                name=store.get("name", name),
                id=store.get("id", ""),
                hostname=store.get("bucket_url", ""),
            ),
        )

    async def _credential(self, api: _ObjectStorageApi, name: str, region: str) -> dict[str, Any]:
        credential = await self._find(api, "/objectstore/credentials", name, region)
        if credential is None:
            credential = await api.request(
                "POST", "/objectstore/credentials", json={"name": name, "region": region}
            )
            logger.info("civo_credential_created", name=name)

        attempts = 0
        while not (credential.get("access_key_id") and credential.get("secret_access_key_id")):
            attempts += 1
            if attempts > self._poll_attempts:
                raise StateStoreError(
                    f"Civo object store credential {name} was not issued; run again to retry"
                )
            logger.warning("civo_credential_pending", name=name, attempt=attempts)
            await self._sleep(self._poll_interval)
            credential = await api.request(
                "GET", f"/objectstore/credentials/{credential['id']}", params={"region": region}
            )
        logger.info("civo_credential_ready", name=name)
        return credential

    @staticmethod
    async def _find(
        api: _ObjectStorageApi, path: str, name: str, region: str
    ) -> dict[str, Any] | None:
        listing = await api.request("GET", path, params={"region": region})
        for item in listing.get("items", []):
            if item.get("name") == name:
                return item
        return None


class VultrStateStore(StateStoreProvisioner):
    """A Vultr object storage subscription with the state bucket inside it."""

    def __init__(
        self,
        api_url: str = "https://api.vultr.com/v2",
        region: str = "ewr",
        poll_interval: float = 10.0,
        poll_attempts: int = 12,
        transport: httpx.AsyncBaseTransport | None = None,
        s3_clients: S3ClientFactory = boto_s3_client,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api_url = api_url
        self._region = region
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._transport = transport
        self._s3_clients = s3_clients
        self._sleep = sleep

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        api = _ObjectStorageApi(self._api_url, cluster.vultr_auth.token, self._transport)
        label = cluster.state_store_bucket

        storage = await self._find(api, label)
        if storage is None:
            created = await api.request(
                "POST",
                "/object-storage",
                expected=(201, 202),
                json={"cluster_id": await self._cluster_id(api), "label": label},
            )
            storage = created["object_storage"]
            logger.info("vultr_object_storage_created", label=label)
        storage = await self._wait_active(api, storage)

        credentials = StateStoreCredentials(
            access_key_id=storage["s3_access_key"],
            secret_access_key=storage["s3_secret_key"],
            name=storage["label"],
            id=storage["id"],
        )
        hostname = storage["s3_hostname"]
        client = self._s3_clients(credentials, AWS_DEFAULT_REGION, f"https://{hostname}")
        await ensure_bucket(client, label)
        return ProvisionedStateStore(
            credentials=credentials,
            details=StateStoreDetails(name=storage["label"], id=storage["id"], hostname=hostname),
        )

    async def _cluster_id(self, api: _ObjectStorageApi) -> int:
        listing = await api.request("GET", "/object-storage/clusters")
        for storage_cluster in listing.get("clusters", []):
            if storage_cluster.get("region") == self._region:
                return int(storage_cluster["id"])
        raise StateStoreError(f"Vultr has no object storage cluster in region {self._region}")

    @staticmethod
    async def _find(api: _ObjectStorageApi, label: str) -> dict[str, Any] | None:
        listing = await api.request("GET", "/object-storage")
        for storage in listing.get("object_storages", []):
            if storage.get("label") == label:
                return storage
        return None

    async def _wait_active(self, api: _ObjectStorageApi, storage: dict[str, Any]) -> dict[str, Any]:
        attempts = 0
        while storage.get("status") != "active":
            attempts += 1
            if attempts > self._poll_attempts:
                raise StateStoreError(f"Vultr object storage {storage.get('label')} is not active")
            logger.warning("vultr_object_storage_pending", label=storage.get("label"), attempt=attempts)
            await self._sleep(self._poll_interval)
            body = await api.request("GET", f"/object-storage/{storage['id']}")
            storage = body["object_storage"]
        return storage


# ----------------------------------------------------------------------
# CLI-managed storage
# ----------------------------------------------------------------------


def azure_storage_account_name(cluster: Cluster) -> str:
    """Storage account names are 3 to 24 lowercase letters and digits, globally unique."""
    sanitized = re.sub(r"[^a-z0-9]", "", cluster.cluster_name.lower())
    return f"k1{cluster.cluster_id}{sanitized}"[:24]


class AzureStateStore(StateStoreProvisioner):
    """Resource group, storage account and blob container created with the az CLI.

    The account key is carried in ``secret_access_key`` and ends up as
    ``ARM_ACCESS_KEY`` for the azurerm backend.
    """

    def __init__(self, binary: str = "az", runner: CommandRunner = run_command) -> None:
        self._az = binary
        self._run = runner

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        auth = cluster.azure_auth
        group = f"{cluster.cluster_name}-state"
        account = azure_storage_account_name(cluster)
        secrets = [auth.client_secret]

        with tempfile.TemporaryDirectory(prefix="az-") as config_dir:
            env = {**os.environ, "AZURE_CONFIG_DIR": config_dir}

            async def az(*args: str, extra_secrets: Sequence[str] = ()) -> str:
                return await self._run([self._az, *args], env=env, secrets=[*secrets, *extra_secrets])

            await az(
                "login",
                "--service-principal",
                "--username",
                auth.client_id,
                "--password",
                auth.client_secret,
                "--tenant",
                auth.tenant_id,
            )
            await az("account", "set", "--subscription", auth.subscription_id)
            await az("group", "create", "--name", group, "--location", cluster.cloud_region)
            await az(
                "storage",
                "account",
                "create",
                "--name",
                account,
                "--resource-group",
                group,
                "--location",
                cluster.cloud_region,
                "--sku",
                "Standard_LRS",
            )
            key = (
                await az(
                    "storage",
                    "account",
                    "keys",
                    "list",
                    "--account-name",
                    account,
                    "--resource-group",
                    group,
                    "--query",
                    "[0].value",
                    "--output",
                    "tsv",
                )
            ).strip()
            if not key:
                raise StateStoreError(f"Azure storage account {account} returned no access key")
            await az(
                "storage",
                "container",
                "create",
                "--name",
                AZURE_CONTAINER,
                "--account-name",
                account,
                "--account-key",
                key,
                extra_secrets=[key],
            )

        logger.info("azure_state_store_created", resource_group=group, account=account)
        return ProvisionedStateStore(
            credentials=StateStoreCredentials(secret_access_key=key, name=account),
            details=StateStoreDetails(name=account, hostname=f"{account}.blob.core.windows.net"),
        )


class GoogleStateStore(StateStoreProvisioner):
    """A GCS bucket created with gcloud. Terraform reads it with the service account key."""

    def __init__(self, binary: str = "gcloud", runner: CommandRunner = run_command) -> None:
        self._gcloud = binary
        self._run = runner

    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        bucket = cluster.state_store_bucket
        env = {
            **os.environ,
            "CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE": cluster.google_auth.key_file,
        }
        try:
            await self._run(
                [
                    self._gcloud,
                    "storage",
                    "buckets",
                    "create",
                    f"gs://{bucket}",
                    "--project",
                    cluster.google_auth.project_id,
                    "--location",
                    cluster.cloud_region,
                ],
                env=env,
            )
            logger.info("bucket_created", bucket=bucket, region=cluster.cloud_region)
        except CommandError as e:
            if "409" not in e.output:
                raise StateStoreError(f"create bucket {bucket} failed: {e}") from e
            logger.info("bucket_exists", bucket=bucket)

        return ProvisionedStateStore(
            credentials=StateStoreCredentials(name=bucket),
            details=StateStoreDetails(name=bucket, hostname="storage.googleapis.com"),
        )


def state_store_provisioner_factory(
    settings: StateStoreSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StateStoreProvisionerFactory:
    builders: Mapping[CloudProvider, Callable[[], StateStoreProvisioner]] = {
        CloudProvider.AWS: AwsStateStore,
        CloudProvider.AZURE: lambda: AzureStateStore(settings.azure_binary),
        CloudProvider.CIVO: lambda: CivoStateStore(
            settings.civo_api_url,
            settings.poll_interval_seconds,
            settings.poll_attempts,
            transport,
        ),
        CloudProvider.DIGITALOCEAN: lambda: DigitaloceanStateStore(
            settings.digitalocean_spaces_region
        ),
        CloudProvider.GOOGLE: lambda: GoogleStateStore(settings.gcloud_binary),
        CloudProvider.VULTR: lambda: VultrStateStore(
            settings.vultr_api_url,
            settings.vultr_region,
            settings.poll_interval_seconds,
            settings.poll_attempts,
            transport,
        ),
    }

    def build(cloud: CloudProvider) -> StateStoreProvisioner:
        return builders[cloud]()

    return build
