"""Enactment status tracking.

An enactment records the outcome of applying one policy on one node as
three mutually exclusive conditions: Progressing, Failing and Available.
"""

from nmstate_agent.enactment.conditions import EnactmentStatusReporter
from nmstate_agent.enactment.models import (
    Condition,
    ConditionReason,
    ConditionType,
    Enactment,
)
from nmstate_agent.enactment.store import (
    ConflictError,
    EnactmentNotFound,
    EnactmentStore,
    MemoryEnactmentStore,
    RedisEnactmentStore,
    create_redis_client,
    update_with_retry,
)

__all__ = [
    # Reporting
    "EnactmentStatusReporter",
    # Records
    "Condition",
    "ConditionReason",
    "ConditionType",
    "Enactment",
    # Storage
    "ConflictError",
    "EnactmentNotFound",
    "EnactmentStore",
    "MemoryEnactmentStore",
    "RedisEnactmentStore",
    "create_redis_client",
    "update_with_retry",
]
