"""Terraform executor implementation."""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping

import structlog

from provisioner.domain.ports.services import TerraformExecutor
from provisioner.infrastructure.observability.metrics import TERRAFORM_RUNS_TOTAL
from provisioner.infrastructure.shell import CommandError, run_command


logger = structlog.get_logger(__name__)

# Files terraform init leaves behind that must not leak between runs.
_INIT_ARTIFACTS = (".terraform", ".terraform.lock.hcl")


class TerraformCliExecutor(TerraformExecutor):
    """Runs the terraform binary against a module directory.

    Every run performs ``init -force-copy`` followed by the requested
    action with ``-auto-approve``. Environment values are handed to the
    process but only their names are logged.
    """

    def __init__(self, binary: str = "terraform") -> None:
        self._binary = binary

    async def apply(self, working_dir: str, env: Mapping[str, str]) -> tuple[bool, str]:
        return await self._run("apply", working_dir, env)

    async def destroy(self, working_dir: str, env: Mapping[str, str]) -> tuple[bool, str]:
        return await self._run("destroy", working_dir, env)

    async def _run(self, action: str, working_dir: str, env: Mapping[str, str]) -> tuple[bool, str]:
        if not os.path.isdir(working_dir):
            TERRAFORM_RUNS_TOTAL.labels(action=action, result="failure").inc()
            return False, f"Terraform entrypoint not found: {working_dir}"

        process_env = {**os.environ, **env}
        secrets = [value for value in env.values() if len(value) >= 6]
        logger.info(
            "terraform_started",
            action=action,
            working_dir=working_dir,
            env_keys=sorted(env),
        )

        outputs: list[str] = []
        try:
            outputs.append(
                await run_command(
                    [self._binary, "init", "-force-copy"],
                    cwd=working_dir,
                    env=process_env,
                    secrets=secrets,
                )
            )
            outputs.append(
                await run_command(
                    [self._binary, action, "-auto-approve"],
                    cwd=working_dir,
                    env=process_env,
                    secrets=secrets,
                )
            )
        except CommandError as e:
            logger.warning("terraform_command_failed", action=action, returncode=e.returncode)
            TERRAFORM_RUNS_TOTAL.labels(action=action, result="failure").inc()
            return False, e.output
        except OSError as e:
            logger.warning("terraform_not_runnable", action=action, binary=self._binary, error=str(e))
            TERRAFORM_RUNS_TOTAL.labels(action=action, result="failure").inc()
            return False, str(e)
        finally:
            self._remove_init_artifacts(working_dir)

        TERRAFORM_RUNS_TOTAL.labels(action=action, result="success").inc()
        return True, "".join(outputs)

    @staticmethod
    def _remove_init_artifacts(working_dir: str) -> None:
        for name in _INIT_ARTIFACTS:
            path = os.path.join(working_dir, name)
            if os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
            elif os.path.exists(path):
                os.remove(path)
