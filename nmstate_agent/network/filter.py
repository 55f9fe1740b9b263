"""Interface filtering for reported network state."""

from __future__ import annotations

import logging
from fnmatch import fnmatchcase

import yaml

from nmstate_agent.state import NetworkState

logger = logging.getLogger(__name__)


def filter_out(observed: NetworkState, pattern: str) -> NetworkState:
    """Drop interfaces whose name matches the glob ``pattern``.

    A pattern that matches the empty string means no filter is configured
    and the document comes back untouched. If the document cannot be parsed
    or re-serialized the original is returned unfiltered.
    """
    if fnmatchcase("", pattern):
        return observed

    try:
        return _filter_interfaces(observed, pattern)
    except Exception as e:
        logger.warning(
            f"Failed filtering out interfaces from node network state, "
            f"keeping original content, please fix the glob {pattern!r}: {e}"
        )
        return observed


def _filter_interfaces(observed: NetworkState, pattern: str) -> NetworkState:
    state = observed.parse()

    interfaces = state.get("interfaces") or []
    if not isinstance(interfaces, list):
        raise ValueError("'interfaces' must be a list")

    kept = []
    for iface in interfaces:
        name = iface["name"]
        if not isinstance(name, str):
            raise ValueError(f"interface name must be a string, got {name!r}")
        if not fnmatchcase(name, pattern):
            kept.append(iface)

    state["interfaces"] = kept
    return NetworkState.from_text(yaml.safe_dump(state, sort_keys=False))
