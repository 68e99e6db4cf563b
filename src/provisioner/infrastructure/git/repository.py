"""Local git working copies driven through the git CLI."""

from __future__ import annotations

import os
import re
import tempfile
from urllib.parse import quote, urlsplit, urlunsplit

import structlog

from provisioner.domain.ports.services import GitRepository
from provisioner.infrastructure.shell import run_command


logger = structlog.get_logger(__name__)

_AUTHOR = re.compile(r"^\s*(?P<name>[^<]+?)\s*<(?P<email>[^>]+)>\s*$")


def with_credentials(url: str, username: str, token: str) -> str:
    """Embed basic-auth credentials into an https remote URL."""
    parts = urlsplit(url)
    netloc = f"{quote(username, safe='')}:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class GitCliRepository(GitRepository):
    def __init__(self, binary: str = "git", author: str = "kbot <kbot@kubefirst.io>") -> None:
        self._git = binary
        match = _AUTHOR.match(author)
        self._author_name = match.group("name") if match else author
        self._author_email = match.group("email") if match else ""

    async def clone(self, url: str, branch: str, dest: str) -> None:
        await run_command([self._git, "clone", "--single-branch", "--branch", branch, url, dest])
        logger.info("repository_cloned", url=url, branch=branch, dest=dest)

    async def init(self, path: str, branch: str = "main") -> None:
        os.makedirs(path, exist_ok=True)
        await run_command([self._git, "init", "--initial-branch", branch], cwd=path)

    async def commit_all(self, path: str, message: str) -> None:
        await run_command([self._git, "add", "--all"], cwd=path)
        status = await run_command([self._git, "status", "--porcelain"], cwd=path)
        if not status.strip():
            logger.info("repository_clean", path=path)
            return
        await run_command(
            [
                self._git,
                "-c",
                f"user.name={self._author_name}",
                "-c",
                f"user.email={self._author_email}",
                "commit",
                "--message",
                message,
            ],
            cwd=path,
        )
        logger.info("repository_committed", path=path)

    async def add_remote(self, path: str, name: str, url: str) -> None:
        remotes = (await run_command([self._git, "remote"], cwd=path)).split()
        if name in remotes:
            await run_command([self._git, "remote", "set-url", name, url], cwd=path)
        else:
            await run_command([self._git, "remote", "add", name, url], cwd=path)

    async def push(
        self,
        path: str,
        remote: str,
        branch: str,
        *,
        username: str = "",
        token: str = "",
        ssh_private_key: str = "",
    ) -> None:
        url = (await run_command([self._git, "remote", "get-url", remote], cwd=path)).strip()
        refspec = f"HEAD:refs/heads/{branch}"

        if url.startswith("https://"):
            target = with_credentials(url, username or "kbot", token) if token else url
            await run_command([self._git, "push", target, refspec], cwd=path, secrets=[token])
        else:
            await self._push_over_ssh(path, remote, refspec, ssh_private_key)
        logger.info("repository_pushed", path=path, remote=remote, branch=branch)

    async def _push_over_ssh(self, path: str, remote: str, refspec: str, private_key: str) -> None:
        fd, key_path = tempfile.mkstemp(prefix="kbot-", suffix=".key")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(private_key if private_key.endswith("\n") else private_key + "\n")
            os.chmod(key_path, 0o600)
            env = {
                **os.environ,
                "GIT_SSH_COMMAND": (
                    f"ssh -i {key_path} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
                ),
            }
            await run_command([self._git, "push", remote, refspec], cwd=path, env=env)
        finally:
            os.remove(key_path)
