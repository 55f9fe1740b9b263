"""Enactment condition reporting for one (node, policy) pair.

Reporting never raises: a status write that loses a race or cannot reach
the store is logged and dropped, the next reconcile writes a newer status
anyway.
"""

from __future__ import annotations

import logging
from typing import Callable

from nmstate_agent.enactment.models import Enactment
from nmstate_agent.enactment.store import EnactmentStore, update_with_retry
from nmstate_agent.errors import StatusUpdateFailure

logger = logging.getLogger(__name__)

PROGRESSING_MESSAGE = "Applying desired state"
SUCCESS_MESSAGE = "successfully reconciled"


class EnactmentStatusReporter:
    """Moves an enactment between Progressing, Failing and Available."""

    def __init__(
        self,
        store: EnactmentStore,
        node: str,
        policy: str,
        max_attempts: int = 5,
        backoff: float = 0.01,
    ):
        self.store = store
        self.node = node
        self.policy = policy
        self.max_attempts = max_attempts
        self.backoff = backoff

    def _log_failure(self, what: str, error: Exception) -> None:
        failure = StatusUpdateFailure(self.node, self.policy, f"{what}: {error}")
        failure.__cause__ = error
        # The record carries the failure with the store error chained to it
        logger.error(str(failure), exc_info=failure)

    async def _update(self, mutate: Callable[[Enactment], None], what: str) -> Enactment | None:
        try:
            return await update_with_retry(
                self.store,
                self.node,
                self.policy,
                mutate,
                max_attempts=self.max_attempts,
                backoff=self.backoff,
            )
        except Exception as e:
            self._log_failure(what, e)
            return None

    async def notify_progressing(self) -> Enactment | None:
        return await self._update(
            lambda enactment: enactment.set_progressing(PROGRESSING_MESSAGE),
            "changing state to progressing",
        )

    async def notify_failed_to_configure(self, cause: Exception | str) -> Enactment | None:
        message = str(cause)
        return await self._update(
            lambda enactment: enactment.set_failed_to_configure(message),
            f"changing state to failing with error: {message}",
        )

    async def notify_success(self) -> Enactment | None:
        return await self._update(
            lambda enactment: enactment.set_success(SUCCESS_MESSAGE),
            "reporting success",
        )

    async def remove(self) -> bool:
        """Delete the enactment once the policy no longer applies to the node."""
        try:
            removed = await self.store.delete(self.node, self.policy)
        except Exception as e:
            self._log_failure("removing", e)
            return False
        if removed:
            logger.info(f"Removed enactment {self.node}.{self.policy}")
        return removed
