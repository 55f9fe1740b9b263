"""Tests for staged network configuration transactions.

These tests verify that:
1. A successful apply stages, enforces vlan filtering, verifies and commits
2. Any failure before commit rolls the checkpoint back
3. A failing rollback is reported next to the original cause
4. A failing commit is not rolled back
5. A transaction started before cancellation still finishes
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from nmstate_agent.errors import (
    CommandError,
    CommitFailure,
    ControlPlaneUnreachable,
    GatewayUnavailable,
    GatewayUnreachable,
    RollbackFailure,
    StagingFailure,
    VlanEnforcementFailure,
)
from nmstate_agent.network.probe import ConnectivityProbe
from nmstate_agent.network.vlan_filtering import VlanFilterEnforcer
from nmstate_agent.state import NetworkState
from nmstate_agent.transaction import EMPTY_STATE_MESSAGE, StateTransactionEngine

from conftest import (
    BRIDGE_DESIRED_YAML,
    FakeNmstatectl,
    FakeProbe,
    failed_result,
    ok_result,
)


ETHERNET_DESIRED_YAML = """\
interfaces:
- name: eth1
  type: ethernet
  state: up
"""


def _recording_run_cmd(calls: list, result=None):
    async def run(cmd, input=None, timeout=None):
        calls.append(("vlan-filtering", cmd[1], cmd[2:]))
        return result or ok_result(cmd, stdout="vlan filtering enabled")
    return run


def _engine(settings, nmstatectl, probe=None):
    return StateTransactionEngine(
        settings,
        nmstatectl=nmstatectl,
        vlan_enforcer=VlanFilterEnforcer(),
        probe=probe or FakeProbe(),
    )


# --- Successful apply ---

@pytest.mark.asyncio
async def test_apply_bridge_stages_enforces_and_commits(settings, fake_clock):
    """The happy path runs set, vlan filtering and commit in that order."""
    calls = []
    nmstatectl = FakeNmstatectl(calls)
    probe = FakeProbe()

    with patch("nmstate_agent.network.vlan_filtering.run_cmd", _recording_run_cmd(calls)):
        output = await _engine(settings, nmstatectl, probe).apply(
            NetworkState.from_text(BRIDGE_DESIRED_YAML)
        )

    mutating = [c for c in calls if c != "show"]
    assert mutating == ["set", ("vlan-filtering", "br1", ["eth1"]), "commit"]
    assert "rollback" not in calls
    assert nmstatectl.checkpoint_timeout == 10
    assert nmstatectl.staged[0].raw == BRIDGE_DESIRED_YAML.encode()

    assert probe.calls == [
        ("gateway", "192.168.66.2", settings.gateway_probe_timeout),
        ("control_plane", settings.api_server_probe_timeout),
    ]
    assert "applyVlanFiltering command output: vlan filtering enabled" in output
    assert "default gateway 192.168.66.2 reachable" in output
    assert "commitOutput: Checkpoint committed" in output
    assert output.endswith("setOutput: Desired state applied \n")


@pytest.mark.asyncio
async def test_apply_twice_is_idempotent(settings, fake_clock):
    """Re-applying an already applied state runs the same full transaction."""
    nmstatectl = FakeNmstatectl()
    engine = _engine(settings, nmstatectl)
    desired = NetworkState.from_text(ETHERNET_DESIRED_YAML)

    first = await engine.apply(desired)
    second = await engine.apply(desired)

    assert first == second
    assert nmstatectl.calls.count("commit") == 2
    assert "rollback" not in nmstatectl.calls


@pytest.mark.asyncio
@pytest.mark.parametrize("document", ["", "   \n"])
async def test_apply_empty_document(settings, document):
    nmstatectl = FakeNmstatectl()

    output = await _engine(settings, nmstatectl).apply(NetworkState.from_text(document))

    assert output == EMPTY_STATE_MESSAGE
    assert nmstatectl.calls == []


@pytest.mark.asyncio
async def test_gateway_discovery_retries_until_route_appears(settings, fake_clock):
    """The default route may show up a while after staging."""
    nmstatectl = FakeNmstatectl()
    states = iter([
        "routes:\n  running: []\n",
        "routes:\n  running: []\n",
    ])
    original_show = nmstatectl.show

    async def show():
        text = next(states, None)
        if text is None:
            return await original_show()
        nmstatectl.calls.append("show")
        return NetworkState.from_text(text)

    nmstatectl.show = show

    await _engine(settings, nmstatectl).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert nmstatectl.calls.count("show") == 3
    assert "commit" in nmstatectl.calls


# --- Failures before commit roll back ---

@pytest.mark.asyncio
async def test_unreachable_gateway_rolls_back(settings, fake_clock):
    """Default gateway never answers: rollback after the full probe timeout."""
    nmstatectl = FakeNmstatectl()
    ping = AsyncMock(return_value=failed_result([], stdout="From 192.168.66.2 icmp_seq=1 Destination Host Unreachable", stderr=""))
    start = fake_clock.now

    with patch("nmstate_agent.network.probe.run_cmd", ping):
        engine = StateTransactionEngine(
            settings,
            nmstatectl=nmstatectl,
            vlan_enforcer=VlanFilterEnforcer(),
            probe=ConnectivityProbe(settings),
        )
        with pytest.raises(RollbackFailure) as exc_info:
            await engine.apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert fake_clock.now - start >= settings.gateway_probe_timeout
    assert nmstatectl.calls[-1] == "rollback"
    assert "commit" not in nmstatectl.calls

    error = exc_info.value
    assert isinstance(error.cause, GatewayUnreachable)
    assert error.rolled_back
    message = str(error)
    assert "error pinging external address 192.168.66.2" in message
    assert "Destination Host Unreachable" in message
    assert "rollback output: Checkpoint rolled back" in message


@pytest.mark.asyncio
async def test_staging_failure_rolls_back(settings):
    nmstatectl = FakeNmstatectl(
        set_error=CommandError(["nmstatectl", "set"], 1, stdout="", stderr="invalid bond mode"),
    )

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert nmstatectl.calls == ["set", "rollback"]
    assert isinstance(exc_info.value.cause, StagingFailure)
    assert "invalid bond mode" in str(exc_info.value)


@pytest.mark.asyncio
async def test_vlan_failure_rolls_back(settings, fake_clock):
    calls = []
    nmstatectl = FakeNmstatectl(calls)
    failing = _recording_run_cmd(calls, failed_result(["vlan-filtering"], stdout="no such bridge"))

    with patch("nmstate_agent.network.vlan_filtering.run_cmd", failing):
        with pytest.raises(RollbackFailure) as exc_info:
            await _engine(settings, nmstatectl).apply(NetworkState.from_text(BRIDGE_DESIRED_YAML))

    assert calls == ["set", ("vlan-filtering", "br1", ["eth1"]), "rollback"]
    error = exc_info.value
    assert isinstance(error.cause, VlanEnforcementFailure)
    assert "no such bridge" in error.output


@pytest.mark.asyncio
async def test_missing_default_gateway_rolls_back(settings, fake_clock):
    nmstatectl = FakeNmstatectl(current_state="interfaces: []\nroutes:\n  running: []\n")
    probe = FakeProbe()

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl, probe).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert isinstance(exc_info.value.cause, GatewayUnavailable)
    assert "no default gateway found" in str(exc_info.value)
    assert nmstatectl.calls[-1] == "rollback"
    assert probe.calls == []


@pytest.mark.asyncio
async def test_unparsable_current_state_rolls_back(settings, fake_clock):
    nmstatectl = FakeNmstatectl(current_state="- not\n- a mapping\n")

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert isinstance(exc_info.value.cause, GatewayUnavailable)
    assert "failed to read current state" in str(exc_info.value)


@pytest.mark.asyncio
async def test_control_plane_unreachable_rolls_back(settings, fake_clock):
    nmstatectl = FakeNmstatectl()

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl, FakeProbe(control_plane=False)).apply(
            NetworkState.from_text(ETHERNET_DESIRED_YAML)
        )

    error = exc_info.value
    assert isinstance(error.cause, ControlPlaneUnreachable)
    assert "error checking api server connectivity" in str(error)
    assert "connection refused" in str(error)
    assert "default gateway 192.168.66.2 reachable" in error.output
    assert nmstatectl.calls[-1] == "rollback"


@pytest.mark.asyncio
async def test_failed_rollback_reported_with_cause(settings, fake_clock):
    """A rollback that fails itself is appended, the cause stays visible."""
    nmstatectl = FakeNmstatectl(
        rollback_error=CommandError(["nmstatectl", "rollback"], 1, stderr="checkpoint expired"),
    )

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl, FakeProbe(gateway=False)).apply(
            NetworkState.from_text(ETHERNET_DESIRED_YAML)
        )

    error = exc_info.value
    assert not error.rolled_back
    assert isinstance(error.cause, GatewayUnreachable)
    message = str(error)
    assert message.startswith("rollback cause: error pinging external address")
    assert "rollback error: failed to execute nmstatectl rollback" in message
    assert "checkpoint expired" in message
    assert error.__cause__ is error.cause


# --- Commit ---

@pytest.mark.asyncio
async def test_commit_failure_is_not_rolled_back(settings, fake_clock):
    """Assumption: nmstatectl's checkpoint timeout reverts a failed commit, so no rollback is attempted."""
    nmstatectl = FakeNmstatectl(
        commit_error=CommandError(["nmstatectl", "commit"], 1, stdout="", stderr="dbus timeout"),
    )

    with pytest.raises(CommitFailure) as exc_info:
        await _engine(settings, nmstatectl).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert "rollback" not in nmstatectl.calls
    assert "dbus timeout" in str(exc_info.value)
    assert "default gateway 192.168.66.2 reachable" in exc_info.value.output


# --- Cancellation ---

@pytest.mark.asyncio
async def test_cancelled_apply_still_finishes_transaction(settings):
    """Once staged, the transaction completes even if the caller goes away."""
    nmstatectl = FakeNmstatectl()
    probe_started = asyncio.Event()
    release_probe = asyncio.Event()

    class SlowProbe(FakeProbe):
        async def probe_control_plane(self, timeout):
            probe_started.set()
            await release_probe.wait()
            return True

    engine = _engine(settings, nmstatectl, SlowProbe())
    task = asyncio.create_task(engine.apply(NetworkState.from_text(ETHERNET_DESIRED_YAML)))

    await asyncio.wait_for(probe_started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    release_probe.set()
    for _ in range(100):
        if "commit" in nmstatectl.calls:
            break
        await asyncio.sleep(0)

    assert "commit" in nmstatectl.calls
    assert "rollback" not in nmstatectl.calls


# --- Unexpected errors after staging ---

@pytest.mark.asyncio
async def test_unexpected_probe_error_rolls_back(settings, fake_clock):
    """An error outside the known failures still ends in a rollback."""
    nmstatectl = FakeNmstatectl()

    class CrashingProbe(FakeProbe):
        async def probe_control_plane(self, timeout):
            raise RuntimeError("probe crashed")

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl, CrashingProbe()).apply(
            NetworkState.from_text(ETHERNET_DESIRED_YAML)
        )

    assert nmstatectl.calls[-1] == "rollback"
    assert "commit" not in nmstatectl.calls
    error = exc_info.value
    assert "unexpected error verifying network reconfiguration" in str(error)
    assert isinstance(error.cause.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_malformed_control_plane_url_rolls_back(settings, fake_clock):
    nmstatectl = FakeNmstatectl()
    settings = settings.model_copy(update={"control_plane_url": "https://[::1"})
    ping = AsyncMock(return_value=ok_result([], stdout="1 received"))

    with patch("nmstate_agent.network.probe.run_cmd", ping):
        engine = StateTransactionEngine(
            settings,
            nmstatectl=nmstatectl,
            vlan_enforcer=VlanFilterEnforcer(),
            probe=ConnectivityProbe(settings),
        )
        with pytest.raises(RollbackFailure):
            await engine.apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert nmstatectl.calls == ["set", "show", "rollback"]


@pytest.mark.asyncio
async def test_unexpected_staging_error_rolls_back(settings):
    nmstatectl = FakeNmstatectl(set_error=ValueError("embedded null byte"))

    with pytest.raises(RollbackFailure) as exc_info:
        await _engine(settings, nmstatectl).apply(NetworkState.from_text(ETHERNET_DESIRED_YAML))

    assert nmstatectl.calls == ["set", "rollback"]
    assert isinstance(exc_info.value.cause, StagingFailure)
    assert "embedded null byte" in str(exc_info.value)
