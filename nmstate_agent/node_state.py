"""Periodic reporting of the node's observed network state.

Every refresh interval the agent runs ``nmstatectl show``, drops the
interfaces matching the configured filter (container veths by default)
and publishes the result for the controller.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable

import redis.asyncio as redis
from pydantic import BaseModel

from nmstate_agent.config import Settings
from nmstate_agent.network.filter import filter_out
from nmstate_agent.network.nmstatectl import Nmstatectl

logger = logging.getLogger(__name__)


class NodeNetworkState(BaseModel):
    """Observed network state of one node, as last reported."""
    node: str
    current_state: str = ""
    last_successful_update_time: datetime | None = None


class NodeNetworkStateStore(ABC):
    """Where observed node state is published."""

    @abstractmethod
    async def get(self, node: str) -> NodeNetworkState | None:
        ...

    @abstractmethod
    async def put(self, state: NodeNetworkState) -> None:
        ...


class MemoryNodeNetworkStateStore(NodeNetworkStateStore):
    """In-process store for standalone agents."""

    def __init__(self):
        self._states: dict[str, NodeNetworkState] = {}

    async def get(self, node: str) -> NodeNetworkState | None:
        return self._states.get(node)

    async def put(self, state: NodeNetworkState) -> None:
        self._states[state.node] = state


class RedisNodeNetworkStateStore(NodeNetworkStateStore):
    """Node states stored as JSON under ``nodenetworkstate:<node>``."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    def _key(self, node: str) -> str:
        return f"nodenetworkstate:{node}"

    async def get(self, node: str) -> NodeNetworkState | None:
        raw = await self.redis.get(self._key(node))
        if raw is None:
            return None
        return NodeNetworkState.model_validate_json(raw)

    async def put(self, state: NodeNetworkState) -> None:
        await self.redis.set(self._key(state.node), state.model_dump_json())


class NodeNetworkStateReporter:
    """Refreshes and publishes this node's filtered network state."""

    def __init__(
        self,
        store: NodeNetworkStateStore,
        settings_provider: Callable[[], Settings],
        nmstatectl: Nmstatectl | None = None,
    ):
        self.store = store
        # Read on every refresh so a new snapshot takes effect without restart
        self.settings_provider = settings_provider
        if nmstatectl is None:
            settings = settings_provider()
            nmstatectl = Nmstatectl(settings.nmstatectl_command, timeout=settings.command_timeout)
        self.nmstatectl = nmstatectl

    async def refresh(self) -> NodeNetworkState:
        """Publish the current filtered state.

        Raises:
            CommandError: ``nmstatectl show`` failed, nothing was published
        """
        settings = self.settings_provider()
        observed = await self.nmstatectl.show()
        filtered = filter_out(observed, settings.interfaces_filter)

        state = NodeNetworkState(
            node=settings.node_name,
            current_state=filtered.text,
            last_successful_update_time=datetime.now(timezone.utc),
        )
        await self.store.put(state)
        logger.debug(f"Published network state for node {settings.node_name}")
        return state

    async def run_refresh_loop(self) -> None:
        """Refresh forever, sleeping the configured interval between runs."""
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error refreshing node network state: {e}")
            await asyncio.sleep(self.settings_provider().node_network_state_refresh_interval)
