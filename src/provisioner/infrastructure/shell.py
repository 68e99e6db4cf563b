"""Subprocess helpers for the CLIs the pipeline drives."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence

import structlog

from provisioner.infrastructure.observability.logging import MASK, mask_url_credentials


logger = structlog.get_logger(__name__)


def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return mask_url_credentials(text)


async def run_command(
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    secrets: Sequence[str] = (),
) -> str:
    """Run a command to completion and return its combined output.

    Raises CommandError on a non-zero exit. ``secrets`` are masked in the
    logged command line and in the error.
    """
    display = redact(" ".join(args), secrets)
    logger.debug("command_started", command=display, cwd=cwd)

    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await proc.communicate()
    output = stdout.decode(errors="replace") if stdout else ""

    if proc.returncode != 0:
        raise CommandError(display, proc.returncode or -1, redact(output, secrets))
    return output


class CommandError(Exception):
    """Raised when an external command exits non-zero."""

    def __init__(self, command: str, returncode: int, output: str) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"{command} exited with {returncode}: {output.strip()[-500:]}")
