"""Host networking for network state transactions.

This module wraps the host tools the agent drives:
- nmstatectl for show/set/commit/rollback of the live configuration
- The vlan-filtering helper for linux bridges
- Reachability probes for the default gateway and the control plane
- Interface filtering for the reported observed state
"""

from nmstate_agent.network.command import CommandResult, run_cmd
from nmstate_agent.network.filter import filter_out
from nmstate_agent.network.nmstatectl import Nmstatectl
from nmstate_agent.network.probe import ConnectivityProbe, poll_immediate
from nmstate_agent.network.vlan_filtering import VlanFilterEnforcer

__all__ = [
    # Subprocess execution
    "CommandResult",
    "run_cmd",
    # nmstatectl
    "Nmstatectl",
    # Vlan filtering
    "VlanFilterEnforcer",
    # Probes
    "ConnectivityProbe",
    "poll_immediate",
    # Observed state filtering
    "filter_out",
]
