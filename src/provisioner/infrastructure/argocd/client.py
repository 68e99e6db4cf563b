"""ArgoCD REST client."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from provisioner.domain.ports.services import ArgoCDClient, ArgoCDClientFactory, ArgoCDError


logger = structlog.get_logger(__name__)


class ArgoCDRestClient(ArgoCDClient):
    """Talks to argocd-server through a local port-forward.

    The server presents a self-signed certificate, so verification is off.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def get_token(self, username: str, password: str) -> str:
        response = await self._request(
            "POST", "/api/v1/session", json={"username": username, "password": password}
        )
        token = response.json().get("token", "")
        if not token:
            raise ArgoCDError("ArgoCD session response carried no token")
        logger.info("argocd_token_created", username=username)
        return str(token)

    async def delete_application(self, token: str, name: str, cascade: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/applications/{name}",
            params={"cascade": str(cascade).lower()},
            headers={"Authorization": f"Bearer {token}"},
            allowed=(200, 404),
        )
        logger.info("argocd_application_deleted", application=name, cascade=cascade)

    async def _request(
        self, method: str, path: str, allowed: tuple[int, ...] = (200,), **kwargs: Any
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            verify=False,  # noqa: S501
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise ArgoCDError(f"{method} {path} failed: {e}") from e
        if response.status_code not in allowed:
            raise ArgoCDError(f"{method} {path} returned {response.status_code}")
        return response


def argocd_client_factory(transport: httpx.AsyncBaseTransport | None = None) -> ArgoCDClientFactory:
    def build(base_url: str) -> ArgoCDClient:
        return ArgoCDRestClient(base_url, transport=transport)

    return build
