"""Staged network configuration transactions.

Applying a desired state must never leave the node unreachable. The engine
therefore works on an nmstatectl checkpoint:

1. Stage the desired state with ``set --no-commit``
2. Enforce vlan filtering on the up bridges of the desired state
3. Discover the default gateway from the live state
4. Ping the default gateway
5. Read from the control plane with a fresh client
6. Commit

A failure in steps 1-5 rolls the checkpoint back. A failed commit is
returned as is: the checkpoint already proved reachable, and nmstatectl
reverts an uncommitted checkpoint on its own once its timeout expires.

The checkpoint timeout is twice the gateway probe timeout; if this process
dies mid-transaction nmstatectl reverts the checkpoint itself.

Callers must not run two transactions on the same node at once; nmstatectl
supports a single outstanding checkpoint.
"""

from __future__ import annotations

import asyncio
import logging

from nmstate_agent.config import Settings
from nmstate_agent.errors import (
    CommandError,
    CommitFailure,
    ControlPlaneUnreachable,
    GatewayUnavailable,
    GatewayUnreachable,
    NetworkTransactionError,
    RollbackFailure,
    StagingFailure,
    VlanEnforcementFailure,
)
from nmstate_agent.network.nmstatectl import Nmstatectl
from nmstate_agent.network.probe import ConnectivityProbe, poll_immediate
from nmstate_agent.network.vlan_filtering import VlanFilterEnforcer
from nmstate_agent.state import NetworkState

logger = logging.getLogger(__name__)

EMPTY_STATE_MESSAGE = "Ignoring empty desired state"


def _log_detached_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.error("Detached transaction was cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Detached transaction failed: {error}")
    else:
        logger.info("Detached transaction committed")


class StateTransactionEngine:
    """Applies desired network states with verification and rollback.

    Usage:
        engine = StateTransactionEngine(settings)
        try:
            output = await engine.apply(NetworkState.from_text(desired_yaml))
        except NetworkTransactionError as e:
            report_failure(e)
    """

    def __init__(
        self,
        settings: Settings,
        nmstatectl: Nmstatectl | None = None,
        vlan_enforcer: VlanFilterEnforcer | None = None,
        probe: ConnectivityProbe | None = None,
    ):
        self.settings = settings
        self.nmstatectl = nmstatectl or Nmstatectl(
            settings.nmstatectl_command, timeout=settings.command_timeout
        )
        self.vlan_enforcer = vlan_enforcer or VlanFilterEnforcer(
            settings.vlan_filtering_command, timeout=settings.command_timeout
        )
        self.probe = probe or ConnectivityProbe(settings)

    async def apply(self, desired: NetworkState) -> str:
        """Apply ``desired`` to the node.

        Returns:
            Diagnostic output of every stage, ending with the staging output

        Raises:
            RollbackFailure: a step before commit failed and the checkpoint
                was rolled back (the cause is attached)
            CommitFailure: the commit itself failed, nothing was rolled back
        """
        if desired.is_empty():
            logger.info(EMPTY_STATE_MESSAGE)
            return EMPTY_STATE_MESSAGE

        try:
            set_output = await self.nmstatectl.set(desired, self.settings.stage_timeout)
        except CommandError as e:
            raise await self._rollback(StagingFailure(str(e), output=e.stdout), e.stdout)
        except Exception as e:
            cause = StagingFailure(f"failed staging desired state: {e!r}")
            cause.__cause__ = e
            raise await self._rollback(cause)

        # From here on the checkpoint exists; finish it even if our caller
        # goes away so it is never left dangling.
        task = asyncio.ensure_future(self._verify_and_commit(desired, set_output))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning("Apply cancelled after staging, finishing transaction detached")
                task.add_done_callback(_log_detached_outcome)
            raise

    async def _verify_and_commit(self, desired: NetworkState, set_output: str) -> str:
        try:
            output = await self._verify(desired)
        except RollbackFailure:
            raise
        except Exception as e:
            logger.exception("Unexpected error verifying staged state")
            cause = NetworkTransactionError(
                f"unexpected error verifying network reconfiguration: {e!r}"
            )
            cause.__cause__ = e
            raise await self._rollback(cause)

        # A failed commit is not rolled back
        try:
            commit_output = await self.nmstatectl.commit()
        except CommandError as e:
            raise CommitFailure(str(e), output=output + e.stdout) from e

        logger.info("Desired state committed")
        output += f"commitOutput: {commit_output}\n"
        output += f"setOutput: {set_output} \n"
        return output

    async def _verify(self, desired: NetworkState) -> str:
        """Run every check between staging and commit.

        Known failures are rolled back here and raised as RollbackFailure.
        """
        output = ""

        try:
            output += await self.vlan_enforcer.enforce(desired)
        except VlanEnforcementFailure as e:
            raise await self._rollback(e, e.output)

        try:
            gateway, current_state = await self._discover_default_gateway()
        except GatewayUnavailable as e:
            raise await self._rollback(e, output)

        probe_timeout = self.settings.gateway_probe_timeout
        if not await self.probe.probe_gateway(gateway, probe_timeout):
            cause = GatewayUnreachable(
                f"error pinging external address {gateway} after network reconfiguration "
                f"-> error: no answer within {probe_timeout}s, {self.probe.last_ping_output}, "
                f"currentState: {current_state.text}",
                output=self.probe.last_ping_output,
            )
            raise await self._rollback(cause, output + self.probe.last_ping_output)
        output += f"default gateway {gateway} reachable\n"

        api_timeout = self.settings.api_server_probe_timeout
        if not await self.probe.probe_control_plane(api_timeout):
            cause = ControlPlaneUnreachable(
                f"error checking api server connectivity after network reconfiguration "
                f"-> error: {self.probe.last_control_plane_error or 'timed out'} "
                f"within {api_timeout}s, currentState: {current_state.text}",
            )
            raise await self._rollback(cause, output)

        return output

    async def _discover_default_gateway(self) -> tuple[str, NetworkState]:
        """Poll the live state until it has a default route with a next hop.

        Returns:
            The gateway address and the live state it was found in
        """
        gateway = ""
        current_state = NetworkState()

        async def has_default_gateway() -> bool:
            nonlocal gateway, current_state
            try:
                current_state = await self.nmstatectl.show()
            except CommandError as e:
                logger.error(f"Failed retrieving current state: {e}")
                return False
            gateway = current_state.view().default_gateway()
            if not gateway:
                logger.info("Default gateway missing from current state")
                return False
            return True

        timeout = self.settings.gateway_retrieve_timeout
        try:
            ok = await poll_immediate(has_default_gateway, self.settings.probe_interval, timeout)
        except ValueError as e:
            raise GatewayUnavailable(f"failed to read current state: {e}") from e

        if not ok:
            raise GatewayUnavailable(
                f"no default gateway found within {timeout}s, "
                f"currentState: {current_state.text}"
            )
        return gateway, current_state

    async def _rollback(self, cause: NetworkTransactionError, output: str = "") -> RollbackFailure:
        """Roll the checkpoint back and build the error describing both."""
        logger.error(f"Transaction failed, rolling back: {cause}")
        rollback_output = ""
        rollback_error = None
        try:
            rollback_output = await self.nmstatectl.rollback()
        except CommandError as e:
            logger.error(f"Rollback failed: {e}")
            rollback_error = e

        error = RollbackFailure(cause, rollback_output, rollback_error, output=output)
        error.__cause__ = cause
        return error
