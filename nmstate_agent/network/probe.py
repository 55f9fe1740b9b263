"""Reachability probes run after staging a new network configuration.

Both probes poll: the first attempt is immediate, later attempts follow a
fixed interval, and the probe succeeds on the first positive answer. A
probe that runs out of time returns False; turning that into a failure is
up to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from pathlib import Path
from time import monotonic
from typing import Awaitable, Callable

import httpx

from nmstate_agent.config import Settings
from nmstate_agent.network.command import run_cmd

logger = logging.getLogger(__name__)


async def poll_immediate(
    condition: Callable[[], Awaitable[bool]],
    interval: float,
    timeout: float,
) -> bool:
    """Poll ``condition`` until it returns True or ``timeout`` elapses.

    Exceptions raised by ``condition`` abort polling and propagate.

    Returns:
        True if the condition was met, False on timeout
    """
    deadline = monotonic() + timeout
    while True:
        if await condition():
            return True
        remaining = deadline - monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


class ConnectivityProbe:
    """Checks default gateway and control plane reachability.

    Usage:
        probe = ConnectivityProbe(settings)
        if not await probe.probe_gateway("192.0.2.1", timeout=120):
            ...
        if not await probe.probe_control_plane(timeout=120):
            ...
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._transport = transport
        self.last_ping_output = ""
        self.last_control_plane_error = ""

    async def _ping_once(self, address: str) -> bool:
        result = await run_cmd(
            [self.settings.ping_command, "-c", "1", "-W", "1", address],
            timeout=self.settings.command_timeout,
        )
        self.last_ping_output = f"cmd output: '{result.stdout}{result.stderr}'"
        return result.ok

    async def probe_gateway(self, address: str, timeout: float) -> bool:
        """Ping ``address`` until it answers or ``timeout`` elapses."""
        logger.info(f"Probing default gateway {address} (timeout {timeout}s)")
        reachable = await poll_immediate(
            lambda: self._ping_once(address),
            self.settings.probe_interval,
            timeout,
        )
        if not reachable:
            logger.warning(f"Default gateway {address} unreachable: {self.last_ping_output}")
        return reachable

    def _auth_headers(self) -> dict[str, str]:
        token_file = self.settings.control_plane_token_file
        if not token_file:
            return {}
        try:
            token = Path(token_file).read_text().strip()
        except OSError as e:
            logger.debug(f"No control plane token at {token_file}: {e}")
            return {}
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _verify(self) -> ssl.SSLContext | bool:
        if self.settings.control_plane_ca_file:
            return ssl.create_default_context(cafile=self.settings.control_plane_ca_file)
        return True

    async def _read_control_plane(self, timeout: float) -> bool:
        # A new client per attempt: a cached connection would hide the
        # network change we are verifying.
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.control_plane_url,
                timeout=timeout,
                verify=self._verify(),
                transport=self._transport,
            ) as client:
                response = await client.get(
                    self.settings.control_plane_probe_path,
                    headers=self._auth_headers(),
                )
        except (httpx.HTTPError, OSError) as e:
            self.last_control_plane_error = str(e) or type(e).__name__
            logger.error(f"Failed reaching the control plane: {self.last_control_plane_error}")
            return False

        if response.is_success:
            return True

        self.last_control_plane_error = f"HTTP {response.status_code}"
        logger.error(f"Control plane answered HTTP {response.status_code}")
        return False

    async def probe_control_plane(self, timeout: float) -> bool:
        """Read a cheap resource from the control plane until it answers."""
        logger.info(f"Probing control plane {self.settings.control_plane_url} (timeout {timeout}s)")
        return await poll_immediate(
            lambda: self._read_control_plane(timeout),
            self.settings.probe_interval,
            timeout,
        )
