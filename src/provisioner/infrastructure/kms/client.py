"""AWS KMS lookups with boto3."""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.domain.models.cluster import Cluster
from provisioner.domain.ports.services import (
    KeyManagementClient,
    KeyManagementClientFactory,
    KeyManagementError,
)


logger = structlog.get_logger(__name__)


class AwsKmsClient(KeyManagementClient):
    def __init__(self, client: Any) -> None:
        self._client = client

    async def key_id(self, alias: str) -> str:
        try:
            response = await asyncio.to_thread(self._client.describe_key, KeyId=alias)
        except (BotoCoreError, ClientError) as e:
            raise KeyManagementError(f"describe key {alias} failed: {e}") from e
        key_id = str(response["KeyMetadata"]["KeyId"])
        logger.info("kms_key_resolved", alias=alias, key_id=key_id)
        return key_id


def kms_client_factory() -> KeyManagementClientFactory:
    def build(cluster: Cluster) -> KeyManagementClient:
        auth = cluster.aws_auth
        session = boto3.session.Session(
            aws_access_key_id=auth.access_key_id,
            aws_secret_access_key=auth.secret_access_key,
            aws_session_token=auth.session_token or None,
            region_name=cluster.cloud_region,
        )
        return AwsKmsClient(session.client("kms"))

    return build
