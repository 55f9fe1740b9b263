"""Network state documents and the narrow view the agent needs of them.

Desired and observed states are opaque nmstate documents (YAML or JSON).
The agent never validates the full schema; it only pulls out interface
names, types, states, bridge ports and the default route next hop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml

BRIDGE_TYPES = ("linux-bridge", "bridge")
DEFAULT_ROUTE_DESTINATIONS = ("0.0.0.0/0", "::/0")


class StateParseError(ValueError):
    """A document could not be parsed into the expected shape."""


@dataclass(frozen=True)
class NetworkState:
    """An nmstate document, kept as the raw bytes it arrived as."""

    raw: bytes = b""

    @classmethod
    def from_text(cls, text: str) -> NetworkState:
        return cls(raw=text.encode())

    @property
    def text(self) -> str:
        return self.raw.decode(errors="replace")

    def is_empty(self) -> bool:
        return not self.raw.strip()

    def parse(self) -> dict[str, Any]:
        """Parse the document into a generic mapping."""
        try:
            tree = yaml.safe_load(self.raw)
        except yaml.YAMLError as e:
            raise StateParseError(f"invalid network state document: {e}") from e
        if tree is None:
            return {}
        if not isinstance(tree, dict):
            raise StateParseError(
                f"network state must be a mapping, got {type(tree).__name__}"
            )
        return tree

    def view(self) -> StateView:
        return StateView(self.parse())


@dataclass
class InterfaceView:
    """The fields of one interface entry the agent cares about."""

    name: str
    type: str = ""
    state: str = ""
    ports: list[str] = field(default_factory=list)

    @property
    def is_bridge(self) -> bool:
        return self.type in BRIDGE_TYPES

    @property
    def is_up(self) -> bool:
        return self.state == "up"


def _port_names(entry: dict[str, Any]) -> list[str]:
    """Collect attached ports from bridge ports, aggregation members or slaves."""
    ports: list[str] = []

    bridge = entry.get("bridge")
    if isinstance(bridge, dict):
        for port in bridge.get("port") or []:
            if isinstance(port, dict) and port.get("name"):
                ports.append(str(port["name"]))
            elif isinstance(port, str):
                ports.append(port)

    aggregation = entry.get("link-aggregation")
    if isinstance(aggregation, dict):
        ports.extend(str(p) for p in aggregation.get("slaves") or [])

    ports.extend(str(p) for p in entry.get("slaves") or [])

    # Keep first occurrence order, drop duplicates
    return list(dict.fromkeys(ports))


class StateView:
    """Read-only typed extraction over a parsed nmstate document."""

    def __init__(self, tree: dict[str, Any]):
        self.tree = tree

    @property
    def interfaces(self) -> list[InterfaceView]:
        raw_interfaces = self.tree.get("interfaces") or []
        if not isinstance(raw_interfaces, list):
            raise StateParseError("'interfaces' must be a list")

        interfaces = []
        for entry in raw_interfaces:
            if not isinstance(entry, dict) or not entry.get("name"):
                raise StateParseError(f"interface entry without a name: {entry!r}")
            interfaces.append(InterfaceView(
                name=str(entry["name"]),
                type=str(entry.get("type") or ""),
                state=str(entry.get("state") or ""),
                ports=_port_names(entry),
            ))
        return interfaces

    def bridges_up_with_ports(self) -> dict[str, list[str]]:
        """Map each bridge in state "up" to its attached ports."""
        return {
            iface.name: iface.ports
            for iface in self.interfaces
            if iface.is_bridge and iface.is_up
        }

    def default_gateway(self) -> str:
        """Next hop of the running default route, or "" if there is none."""
        routes = self.tree.get("routes") or {}
        running = routes.get("running") if isinstance(routes, dict) else None
        if not isinstance(running, list):
            return ""

        for destination in DEFAULT_ROUTE_DESTINATIONS:
            for route in running:
                if not isinstance(route, dict):
                    continue
                if route.get("destination") == destination and route.get("next-hop-address"):
                    return str(route["next-hop-address"])
        return ""
