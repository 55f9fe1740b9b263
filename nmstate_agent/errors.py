"""Error types raised while applying network state.

Every transaction failure derives from :class:`NetworkTransactionError` and
carries the diagnostic text captured up to the point of failure in
``output``, so the caller can surface it in the enactment message.
"""
from __future__ import annotations


class NetworkTransactionError(Exception):
    """Base exception for network state transaction failures."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.message = message
        self.output = output


class CommandError(NetworkTransactionError):
    """A host tool exited non-zero or timed out."""

    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
        reason: str = "",
    ):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        status = reason or f"exit status {returncode}"
        message = (
            f"failed to execute {' '.join(command)}: "
            f"'{status}' '{stdout}' '{stderr}'"
        )
        super().__init__(message, output=stdout)


class StagingFailure(NetworkTransactionError):
    """``nmstatectl set --no-commit`` failed."""


class VlanEnforcementFailure(NetworkTransactionError):
    """The vlan-filtering helper failed for a bridge."""

    def __init__(self, message: str, bridge: str, output: str = ""):
        super().__init__(message, output)
        self.bridge = bridge


class GatewayUnavailable(NetworkTransactionError):
    """No default route with a next hop showed up within the timeout."""


class GatewayUnreachable(NetworkTransactionError):
    """The default gateway did not answer within the probe timeout."""


class ControlPlaneUnreachable(NetworkTransactionError):
    """The control plane did not answer within the probe timeout."""


class CommitFailure(NetworkTransactionError):
    """``nmstatectl commit`` failed. No rollback is attempted."""


class RollbackFailure(NetworkTransactionError):
    """A transaction was rolled back.

    Wraps the triggering cause together with the outcome of the rollback
    command itself. A failing rollback is appended to the message, it never
    replaces the cause.
    """

    def __init__(
        self,
        cause: Exception,
        rollback_output: str = "",
        rollback_error: Exception | None = None,
        output: str = "",
    ):
        self.cause = cause
        self.rollback_output = rollback_output
        self.rollback_error = rollback_error
        message = f"rollback cause: {cause}, rollback error: {rollback_error}"
        if rollback_output:
            message += f", rollback output: {rollback_output}"
        super().__init__(message, output=output)

    @property
    def rolled_back(self) -> bool:
        """True when the rollback command itself succeeded."""
        return self.rollback_error is None


class StatusUpdateFailure(Exception):
    """An enactment status write could not be completed.

    Only ever logged; a lost status race must not fail reconciliation.
    """

    def __init__(self, node: str, policy: str, reason: str):
        self.node = node
        self.policy = policy
        self.reason = reason
        super().__init__(f"failed to update enactment {node}.{policy}: {reason}")
