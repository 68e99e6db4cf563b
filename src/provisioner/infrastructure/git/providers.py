"""GitHub and GitLab REST API clients."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import structlog

from provisioner.domain.models.cloud_provider import GitProvider
from provisioner.domain.ports.services import (
    GitProviderClient,
    GitProviderClientFactory,
    GitProviderError,
    SshKey,
)


logger = structlog.get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITLAB_API_URL = "https://gitlab.com/api/v4"


class _RestClient:
    """Thin httpx wrapper mapping unexpected statuses to GitProviderError."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=30.0, transport=transport
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def _request(
        self, method: str, path: str, expected: tuple[int, ...] = (200,), **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitProviderError(f"{method} {path} failed: {e}") from e
        if response.status_code not in expected:
            raise GitProviderError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        return response

    async def _exists(self, path: str) -> bool:
        response = await self._request("GET", path, expected=(200, 404))
        return response.status_code == 200


class GitHubClient(_RestClient, GitProviderClient):
    def __init__(self, token: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(
            GITHUB_API_URL,
            {
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github+json",
            },
            transport,
        )

    async def get_authenticated_user(self) -> str:
        response = await self._request("GET", "/user")
        return str(response.json()["login"])

    async def get_owner_id(self, owner: str) -> int:
        response = await self._request("GET", f"/orgs/{owner}", expected=(200, 404))
        if response.status_code == 404:
            response = await self._request("GET", f"/users/{owner}")
        return int(response.json()["id"])

    async def repository_exists(self, owner: str, repo: str) -> bool:
        return await self._exists(f"/repos/{owner}/{repo}")

    async def team_exists(self, owner: str, team: str) -> bool:
        return await self._exists(f"/orgs/{owner}/teams/{team}")

    async def list_ssh_keys(self) -> list[SshKey]:
        response = await self._request("GET", "/user/keys")
        return [SshKey(id=k["id"], title=k.get("title", ""), key=k["key"]) for k in response.json()]

    async def add_ssh_key(self, title: str, key: str) -> None:
        await self._request("POST", "/user/keys", expected=(201,), json={"title": title, "key": key})
        logger.info("ssh_key_added", provider="github", title=title)

    async def delete_ssh_key(self, key_id: int) -> None:
        await self._request("DELETE", f"/user/keys/{key_id}", expected=(204, 404))

    async def delete_container_registries(self, owner: str, repo: str) -> int:
        # Packages published to ghcr.io outlive the repository and are kept.
        return 0


class GitLabClient(_RestClient, GitProviderClient):
    def __init__(self, token: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(GITLAB_API_URL, {"PRIVATE-TOKEN": token}, transport)

    async def get_authenticated_user(self) -> str:
        response = await self._request("GET", "/user")
        return str(response.json()["username"])

    async def get_owner_id(self, owner: str) -> int:
        response = await self._request("GET", f"/groups/{quote(owner, safe='')}")
        return int(response.json()["id"])

    async def repository_exists(self, owner: str, repo: str) -> bool:
        return await self._exists(f"/projects/{quote(f'{owner}/{repo}', safe='')}")

    async def team_exists(self, owner: str, team: str) -> bool:
        return await self._exists(f"/groups/{quote(f'{owner}/{team}', safe='')}")

    async def list_ssh_keys(self) -> list[SshKey]:
        response = await self._request("GET", "/user/keys")
        return [SshKey(id=k["id"], title=k.get("title", ""), key=k["key"]) for k in response.json()]

    async def add_ssh_key(self, title: str, key: str) -> None:
        await self._request("POST", "/user/keys", expected=(201,), json={"title": title, "key": key})
        logger.info("ssh_key_added", provider="gitlab", title=title)

    async def delete_ssh_key(self, key_id: int) -> None:
        await self._request("DELETE", f"/user/keys/{key_id}", expected=(204, 404))

    async def delete_container_registries(self, owner: str, repo: str) -> int:
        project = quote(f"{owner}/{repo}", safe="")
        response = await self._request(
            "GET", f"/projects/{project}/registry/repositories", expected=(200, 404)
        )
        if response.status_code == 404:
            return 0

        registries = response.json()
        for registry in registries:
            await self._request(
                "DELETE",
                f"/projects/{project}/registry/repositories/{registry['id']}",
                expected=(202, 204, 404),
            )
        return len(registries)


def git_provider_client_factory(
    transport: httpx.AsyncBaseTransport | None = None,
) -> GitProviderClientFactory:
    def build(provider: GitProvider, token: str) -> GitProviderClient:
        if provider is GitProvider.GITHUB:
            return GitHubClient(token, transport)
        return GitLabClient(token, transport)

    return build
