"""Enactment records: per (node, policy) outcome of applying a policy."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class ConditionType(str, Enum):
    """Mutually exclusive enactment conditions."""
    AVAILABLE = "Available"
    FAILING = "Failing"
    PROGRESSING = "Progressing"


class ConditionReason(str, Enum):
    """Reasons attached to enactment conditions."""
    FAILED_TO_CONFIGURE = "FailedToConfigure"
    SUCCESSFULLY_CONFIGURED = "SuccessfullyConfigured"
    CONFIGURATION_PROGRESSING = "ConfigurationProgressing"


class Condition(BaseModel):
    """One typed boolean status entry."""
    type: ConditionType
    status: bool = False
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Enactment(BaseModel):
    """Status of one policy on one node.

    ``resource_version`` is bumped by the store on every write and is what
    concurrent writers compare against.
    """
    node: str
    policy: str
    resource_version: int = 0
    conditions: list[Condition] = Field(default_factory=list)

    def find_condition(self, condition_type: ConditionType) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: ConditionType,
        status: bool,
        reason: ConditionReason,
        message: str,
        now: datetime | None = None,
    ) -> None:
        """Set a condition; its transition time moves only when status flips."""
        now = now or _utcnow()
        condition = self.find_condition(condition_type)
        if condition is None:
            self.conditions.append(Condition(
                type=condition_type,
                status=status,
                reason=reason.value,
                message=message,
                last_transition_time=now,
            ))
            return

        if condition.status != status or condition.last_transition_time is None:
            condition.last_transition_time = now
        condition.status = status
        condition.reason = reason.value
        condition.message = message

    def _set_exclusive(
        self,
        active: ConditionType,
        reason: ConditionReason,
        message: str,
    ) -> None:
        now = _utcnow()
        for condition_type in ConditionType:
            if condition_type == active:
                self.set_condition(condition_type, True, reason, message, now)
            else:
                self.set_condition(condition_type, False, reason, "", now)

    def set_progressing(self, message: str) -> None:
        self._set_exclusive(
            ConditionType.PROGRESSING, ConditionReason.CONFIGURATION_PROGRESSING, message
        )

    def set_failed_to_configure(self, message: str) -> None:
        self._set_exclusive(
            ConditionType.FAILING, ConditionReason.FAILED_TO_CONFIGURE, message
        )

    def set_success(self, message: str) -> None:
        self._set_exclusive(
            ConditionType.AVAILABLE, ConditionReason.SUCCESSFULLY_CONFIGURED, message
        )

    @property
    def active_condition(self) -> ConditionType | None:
        """The condition currently true, if any."""
        for condition in self.conditions:
            if condition.status:
                return condition.type
        return None
