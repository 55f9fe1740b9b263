"""Shared pytest fixtures for agent tests."""
from __future__ import annotations

import asyncio

import pytest

from nmstate_agent.config import Settings
from nmstate_agent.errors import CommandError
from nmstate_agent.network.command import CommandResult
from nmstate_agent.state import NetworkState


CURRENT_STATE_YAML = """\
interfaces:
- name: eth0
  type: ethernet
  state: up
- name: eth1
  type: ethernet
  state: up
routes:
  running:
  - destination: 0.0.0.0/0
    next-hop-address: 192.168.66.2
    next-hop-interface: eth0
  - destination: 192.168.66.0/24
    next-hop-address: ''
    next-hop-interface: eth0
"""

BRIDGE_DESIRED_YAML = """\
interfaces:
- name: br1
  type: linux-bridge
  state: up
  bridge:
    options:
      stp:
        enabled: false
    port:
    - name: eth1
"""


@pytest.fixture
def settings() -> Settings:
    """Settings snapshot with short timeouts and no external services."""
    return Settings(
        node_name="node01",
        gateway_retrieve_timeout=2.0,
        gateway_probe_timeout=5.0,
        api_server_probe_timeout=2.0,
        probe_interval=1.0,
        control_plane_url="https://control-plane.test",
        control_plane_token_file="",
        status_backend="memory",
        status_update_backoff=0.0,
        log_format="text",
    )


class FakeClock:
    """Monotonic clock advanced by the patched asyncio.sleep."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now


@pytest.fixture
def fake_clock(monkeypatch) -> FakeClock:
    """Make probe polling run instantly while keeping its timing semantics."""
    clock = FakeClock()
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, result=None):
        clock.sleeps.append(delay)
        clock.now += delay
        await real_sleep(0)
        return result

    monkeypatch.setattr("nmstate_agent.network.probe.monotonic", clock.monotonic)
    monkeypatch.setattr("nmstate_agent.network.probe.asyncio.sleep", fake_sleep)
    return clock


class FakeNmstatectl:
    """Records nmstatectl calls into a shared call log."""

    def __init__(
        self,
        calls: list | None = None,
        current_state: str = CURRENT_STATE_YAML,
        set_error: CommandError | None = None,
        commit_error: CommandError | None = None,
        rollback_error: CommandError | None = None,
    ):
        self.calls = calls if calls is not None else []
        self.current_state = current_state
        self.set_error = set_error
        self.commit_error = commit_error
        self.rollback_error = rollback_error
        self.staged: list[NetworkState] = []

    async def show(self) -> NetworkState:
        self.calls.append("show")
        return NetworkState.from_text(self.current_state)

    async def set(self, desired: NetworkState, checkpoint_timeout: int) -> str:
        self.calls.append("set")
        self.staged.append(desired)
        self.checkpoint_timeout = checkpoint_timeout
        if self.set_error:
            raise self.set_error
        return "Desired state applied"

    async def commit(self) -> str:
        self.calls.append("commit")
        if self.commit_error:
            raise self.commit_error
        return "Checkpoint committed"

    async def rollback(self) -> str:
        self.calls.append("rollback")
        if self.rollback_error:
            raise self.rollback_error
        return "Checkpoint rolled back"


class FakeProbe:
    """Connectivity probe with canned answers."""

    def __init__(self, gateway: bool = True, control_plane: bool = True):
        self.gateway = gateway
        self.control_plane = control_plane
        self.calls: list[tuple] = []
        self.last_ping_output = "cmd output: '1 packets transmitted, 1 received'"
        self.last_control_plane_error = ""

    async def probe_gateway(self, address: str, timeout: float) -> bool:
        self.calls.append(("gateway", address, timeout))
        return self.gateway

    async def probe_control_plane(self, timeout: float) -> bool:
        self.calls.append(("control_plane", timeout))
        if not self.control_plane:
            self.last_control_plane_error = "connection refused"
        return self.control_plane


def ok_result(cmd: list[str], stdout: str = "") -> CommandResult:
    return CommandResult(cmd, 0, stdout=stdout)


def failed_result(cmd: list[str], stdout: str = "", stderr: str = "boom") -> CommandResult:
    return CommandResult(cmd, 1, stdout=stdout, stderr=stderr)
