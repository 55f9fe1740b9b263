"""Wrapper around the nmstatectl command line tool.

nmstatectl owns the live host network configuration. The agent only uses
its manual transaction control: ``set --no-commit`` creates a checkpoint
that nmstatectl reverts by itself once its timeout expires, and ``commit``
or ``rollback`` resolve it explicitly.
"""

from __future__ import annotations

import logging

from nmstate_agent.network.command import run_cmd
from nmstate_agent.state import NetworkState

logger = logging.getLogger(__name__)


class Nmstatectl:
    """Runs show/set/commit/rollback against the live host state.

    Every operation raises CommandError on a non-zero exit or timeout.
    """

    def __init__(self, command: str = "nmstatectl", timeout: float | None = None):
        self.command = command
        self.timeout = timeout

    async def _run(self, args: list[str], input: bytes | None = None) -> str:
        result = await run_cmd([self.command, *args], input=input, timeout=self.timeout)
        return result.check()

    async def show(self) -> NetworkState:
        """Return the current live state."""
        return NetworkState.from_text(await self._run(["show"]))

    async def set(self, desired: NetworkState, checkpoint_timeout: int) -> str:
        """Stage ``desired`` as a checkpoint without committing it."""
        logger.info(f"Staging desired state (checkpoint timeout {checkpoint_timeout}s)")
        return await self._run(
            ["set", "--no-commit", "--timeout", str(checkpoint_timeout)],
            input=desired.raw,
        )

    async def commit(self) -> str:
        logger.info("Committing checkpoint")
        return await self._run(["commit"])

    async def rollback(self) -> str:
        logger.warning("Rolling back checkpoint")
        return await self._run(["rollback"])
