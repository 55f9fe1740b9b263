"""VLAN filtering enforcement for bridges.

NetworkManager does not configure vlan filtering on linux bridges yet, so
after staging a desired state the agent runs a helper for every bridge
that is up. The helper turns on vlan_filtering and opens the full VLAN id
range on the bridge and its ports:

    vlan-filtering <bridge> <port>...
"""

from __future__ import annotations

import logging

from nmstate_agent.errors import CommandError, VlanEnforcementFailure
from nmstate_agent.network.command import run_cmd
from nmstate_agent.state import NetworkState

logger = logging.getLogger(__name__)


class VlanFilterEnforcer:
    """Applies vlan filtering to every up bridge of a desired state."""

    def __init__(self, command: str = "vlan-filtering", timeout: float | None = None):
        self.command = command
        self.timeout = timeout

    async def apply_vlan_filtering(self, bridge: str, ports: list[str]) -> str:
        """Run the helper for one bridge, raising CommandError on failure."""
        result = await run_cmd([self.command, bridge, *ports], timeout=self.timeout)
        return result.check()

    async def enforce(self, desired: NetworkState) -> str:
        """Enforce vlan filtering for each bridge in state "up".

        Bridges are handled in document order; the first failing bridge
        stops processing and the remaining ones are not attempted.

        Returns:
            Aggregated helper output, one line per bridge

        Raises:
            VlanEnforcementFailure: the document could not be read or the
                helper failed for a bridge
        """
        try:
            bridges = desired.view().bridges_up_with_ports()
        except ValueError as e:
            raise VlanEnforcementFailure(
                f"error retrieving up bridges from desired state: {e}", bridge=""
            ) from e

        output = ""
        for bridge, ports in bridges.items():
            logger.info(f"Enforcing vlan filtering on bridge {bridge} ports {ports}")
            try:
                bridge_output = await self.apply_vlan_filtering(bridge, ports)
            except CommandError as e:
                output += (
                    f"bridge {bridge} ports {ports} applyVlanFiltering command output: "
                    f"{e.stdout}\n"
                )
                logger.error(f"Vlan filtering failed on bridge {bridge}: {e}")
                raise VlanEnforcementFailure(str(e), bridge=bridge, output=output) from e
            output += (
                f"bridge {bridge} ports {ports} applyVlanFiltering command output: "
                f"{bridge_output}\n"
            )
        return output
