"""Vault HTTP API client."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from provisioner.domain.ports.services import (
    VaultClient,
    VaultClientFactory,
    VaultError,
    VaultInitResult,
)


logger = structlog.get_logger(__name__)

KV_MOUNT = "secret"


class VaultHttpClient(VaultClient):
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def initialize(self, secret_shares: int = 5, secret_threshold: int = 3) -> VaultInitResult:
        response = await self._request(
            "PUT",
            "/v1/sys/init",
            json={"secret_shares": secret_shares, "secret_threshold": secret_threshold},
        )
        body = response.json()
        # Auto-unseal returns recovery keys in place of unseal keys.
        keys = body.get("keys") or body.get("recovery_keys") or []
        logger.info("vault_initialized", key_count=len(keys))
        return VaultInitResult(root_token=body["root_token"], unseal_keys=list(keys))

    async def write_kv(self, token: str, path: str, data: Mapping[str, str]) -> None:
        await self._request(
            "POST",
            f"/v1/{KV_MOUNT}/data/{path}",
            json={"data": dict(data)},
            headers={"X-Vault-Token": token},
            allowed=(200, 204),
        )
        logger.info("vault_secret_written", path=f"{KV_MOUNT}/{path}", keys=sorted(data))

    async def _request(
        self, method: str, path: str, allowed: tuple[int, ...] = (200,), **kwargs: Any
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise VaultError(f"{method} {path} failed: {e}") from e
        if response.status_code not in allowed:
            raise VaultError(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        return response


def vault_client_factory(transport: httpx.AsyncBaseTransport | None = None) -> VaultClientFactory:
    def build(base_url: str) -> VaultClient:
        return VaultHttpClient(base_url, transport=transport)

    return build
