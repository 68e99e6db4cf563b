"""Terraform apply/destroy with the pipeline's retry policy."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping

import structlog

from provisioner.domain.ports.services import TerraformExecutor


logger = structlog.get_logger(__name__)

EnvFactory = Callable[[], Awaitable[Mapping[str, str]]]
Sleeper = Callable[[float], Awaitable[None]]


class TerraformService:
    """Applies a Terraform entrypoint with a single retry.

    The environment is rebuilt from ``env_factory`` before every attempt so
    that credentials refreshed between attempts are picked up.
    """

    MAX_ATTEMPTS = 2

    def __init__(
        self,
        executor: TerraformExecutor,
        backoff_seconds: float = 10.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._backoff = backoff_seconds
        self._sleep = sleep

    async def apply(self, entrypoint: str, env_factory: EnvFactory) -> str:
        last_output = ""
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            success, output = await self._executor.apply(entrypoint, await env_factory())
            if success:
                logger.info("terraform_apply_succeeded", entrypoint=entrypoint, attempt=attempt)
                return output

            last_output = output
            logger.warning(
                "terraform_apply_failed",
                entrypoint=entrypoint,
                attempt=attempt,
                max_attempts=self.MAX_ATTEMPTS,
            )
            if attempt < self.MAX_ATTEMPTS:
                await self._sleep(self._backoff)

        raise TerraformExecutionError("apply", entrypoint, last_output)

    async def destroy(self, entrypoint: str, env_factory: EnvFactory) -> str:
        success, output = await self._executor.destroy(entrypoint, await env_factory())
        if not success:
            logger.error("terraform_destroy_failed", entrypoint=entrypoint)
            raise TerraformExecutionError("destroy", entrypoint, output)
        logger.info("terraform_destroy_succeeded", entrypoint=entrypoint)
        return output


class TerraformExecutionError(Exception):
    """Raised when Terraform execution fails."""

    def __init__(self, action: str, entrypoint: str, output: str) -> None:
        self.action = action
        self.entrypoint = entrypoint
        self.output = output
        tail = output.strip().splitlines()[-1] if output.strip() else "no output"
        super().__init__(f"terraform {action} failed in {entrypoint}: {tail}")
