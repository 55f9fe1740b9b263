"""Agent configuration.

Settings are an immutable snapshot. The hot-reloadable keys
(``interfaces_filter`` and ``node_network_state_refresh_interval``) can be
overlaid from a YAML file; whoever watches that file builds a new snapshot
with :func:`load_settings` and hands it to the components that need it.
"""

from __future__ import annotations

import logging
import os
import socket
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Keys that may be changed at runtime through the config file
RELOADABLE_KEYS = ("interfaces_filter", "node_network_state_refresh_interval")

CONFIG_PATH_ENV = "NMSTATE_AGENT_CONFIG_PATH"


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Agent identity
    node_name: str = Field(default_factory=socket.gethostname)
    agent_host: str = "0.0.0.0"
    agent_port: int = 8002

    # Host tools
    nmstatectl_command: str = "nmstatectl"
    vlan_filtering_command: str = "vlan-filtering"
    ping_command: str = "ping"
    command_timeout: float = 300.0  # hard bound for any single tool invocation

    # Observed state reporting
    interfaces_filter: str = "veth*"
    node_network_state_refresh_interval: float = 5.0  # seconds

    # Transaction verification timeouts (seconds)
    gateway_retrieve_timeout: float = 120.0
    gateway_probe_timeout: float = 120.0
    api_server_probe_timeout: float = 120.0
    probe_interval: float = 1.0

    # Control plane reachability probe
    control_plane_url: str = "https://kubernetes.default.svc"
    control_plane_probe_path: str = "/api/v1/namespaces/default"
    control_plane_token_file: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    control_plane_ca_file: str = ""  # Empty: use system trust store

    # Enactment / node state storage
    status_backend: str = "redis"  # "redis" or "memory"
    redis_url: str = "redis://redis:6379/0"
    status_update_max_attempts: int = 5
    status_update_backoff: float = 0.01  # seconds between conflicting attempts

    # Logging configuration
    log_format: str = "json"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "NMSTATE_AGENT_"
        frozen = True

    @property
    def stage_timeout(self) -> int:
        """Checkpoint lifetime handed to ``nmstatectl set``.

        Double the gateway probe timeout so the checkpoint outlives the
        longest verification step.
        """
        return int(self.gateway_probe_timeout) * 2


def read_config_file(path: str | Path) -> dict:
    """Read reloadable keys from a YAML config file.

    A missing or unreadable file yields no overrides, the defaults stay.
    """
    path = Path(path)
    if not path.parent.is_dir():
        raise ValueError(f"folder {path.parent} doesn't exist, can't read configuration")
    if path.suffix not in (".yaml", ".yml"):
        raise ValueError(f"file extension {path.suffix} is not supported")

    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.info(f"Not able to read configuration {path}, using default values: {e}")
        return {}

    if not isinstance(raw, dict):
        logger.warning(f"Ignoring configuration {path}: expected a mapping")
        return {}

    overrides = {key: raw[key] for key in RELOADABLE_KEYS if raw.get(key) is not None}
    if "node_network_state_refresh_interval" in overrides:
        # The config map carries it as a string, e.g. "5"
        overrides["node_network_state_refresh_interval"] = float(
            overrides["node_network_state_refresh_interval"]
        )
    return overrides


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Build a settings snapshot from the environment plus the config file."""
    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV)
    overrides = read_config_file(config_path) if config_path else {}
    if overrides:
        logger.info(f"Updating configs: {overrides}")
    return Settings(**overrides)


@lru_cache
def get_settings() -> Settings:
    """Process-wide snapshot used by the HTTP service."""
    return load_settings()
