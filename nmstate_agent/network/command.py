"""Subprocess execution for host networking tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nmstate_agent.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one tool invocation."""

    command: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    timeout: float | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def check(self) -> str:
        """Return stdout, or raise CommandError if the command failed."""
        if self.ok:
            return self.stdout
        reason = f"timed out after {self.timeout}s" if self.timed_out else ""
        raise CommandError(
            self.command,
            self.returncode,
            stdout=self.stdout,
            stderr=self.stderr,
            reason=reason,
        )


async def run_cmd(
    cmd: list[str],
    input: bytes | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command asynchronously.

    When ``input`` is given it is written to the process stdin while stdout
    and stderr are drained, so neither side can block on a full pipe.

    Args:
        cmd: Command and arguments as list
        input: Bytes to feed on stdin (None closes stdin)
        timeout: Seconds before the process is killed

    Returns:
        CommandResult, never raises for a failing command
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        logger.error(f"Command failed to start: {' '.join(cmd)}: {e}")
        return CommandResult(cmd, 127, stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(input=input), timeout)
    except asyncio.TimeoutError:
        logger.error(f"Command timed out: {' '.join(cmd)}")
        process.kill()
        await process.wait()
        return CommandResult(cmd, process.returncode, timed_out=True, timeout=timeout)

    return CommandResult(
        cmd,
        process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
