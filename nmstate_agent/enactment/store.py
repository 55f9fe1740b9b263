"""Storage for enactment records with optimistic concurrency.

Several controller replicas may write the same enactment. Instead of
locking, every write carries the ``resource_version`` it read; the store
rejects writes based on a stale version with :class:`ConflictError` and
:func:`update_with_retry` refetches and tries again.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import WatchError

from nmstate_agent.enactment.models import Enactment

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """The record changed since it was read."""


class EnactmentNotFound(LookupError):
    """The record to update does not exist."""


def create_redis_client(redis_url: str) -> redis.Redis:
    """Create the Redis client shared by the agent's stores."""
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5.0,
        socket_timeout=5.0,
    )


class EnactmentStore(ABC):
    """Abstract enactment storage."""

    @abstractmethod
    async def get(self, node: str, policy: str) -> Enactment | None:
        """Return the current record, or None if there is none."""
        ...

    @abstractmethod
    async def create(self, enactment: Enactment) -> Enactment:
        """Store a new record; ConflictError if one already exists."""
        ...

    @abstractmethod
    async def update(self, enactment: Enactment) -> Enactment:
        """Replace a record if its version is unchanged; ConflictError otherwise."""
        ...

    @abstractmethod
    async def delete(self, node: str, policy: str) -> bool:
        """Remove a record. Returns False if it did not exist."""
        ...


class MemoryEnactmentStore(EnactmentStore):
    """In-process store for single-replica or standalone agents."""

    def __init__(self):
        self._records: dict[tuple[str, str], Enactment] = {}

    async def get(self, node: str, policy: str) -> Enactment | None:
        record = self._records.get((node, policy))
        return record.model_copy(deep=True) if record else None

    async def create(self, enactment: Enactment) -> Enactment:
        key = (enactment.node, enactment.policy)
        if key in self._records:
            raise ConflictError(f"enactment {enactment.node}.{enactment.policy} already exists")
        stored = enactment.model_copy(deep=True, update={"resource_version": 1})
        self._records[key] = stored
        return stored.model_copy(deep=True)

    async def update(self, enactment: Enactment) -> Enactment:
        key = (enactment.node, enactment.policy)
        current = self._records.get(key)
        if current is None:
            raise EnactmentNotFound(f"{enactment.node}.{enactment.policy}")
        if current.resource_version != enactment.resource_version:
            raise ConflictError(
                f"enactment {enactment.node}.{enactment.policy} is at version "
                f"{current.resource_version}, write based on {enactment.resource_version}"
            )
        stored = enactment.model_copy(
            deep=True, update={"resource_version": current.resource_version + 1}
        )
        self._records[key] = stored
        return stored.model_copy(deep=True)

    async def delete(self, node: str, policy: str) -> bool:
        return self._records.pop((node, policy), None) is not None


class RedisEnactmentStore(EnactmentStore):
    """Enactments stored as JSON under ``enactment:<node>:<policy>``.

    Updates use WATCH/MULTI so that a concurrent write between our read
    and our write aborts the transaction instead of being overwritten.
    """

    def __init__(self, client: redis.Redis):
        self.redis = client

    def _key(self, node: str, policy: str) -> str:
        return f"enactment:{node}:{policy}"

    async def get(self, node: str, policy: str) -> Enactment | None:
        raw = await self.redis.get(self._key(node, policy))
        if raw is None:
            return None
        return Enactment.model_validate_json(raw)

    async def create(self, enactment: Enactment) -> Enactment:
        stored = enactment.model_copy(update={"resource_version": 1})
        created = await self.redis.set(
            self._key(enactment.node, enactment.policy),
            stored.model_dump_json(),
            nx=True,  # Only set if not exists
        )
        if not created:
            raise ConflictError(f"enactment {enactment.node}.{enactment.policy} already exists")
        return stored

    async def update(self, enactment: Enactment) -> Enactment:
        key = self._key(enactment.node, enactment.policy)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise EnactmentNotFound(f"{enactment.node}.{enactment.policy}")
                current = Enactment.model_validate_json(raw)
                if current.resource_version != enactment.resource_version:
                    raise ConflictError(
                        f"enactment {enactment.node}.{enactment.policy} is at version "
                        f"{current.resource_version}, write based on {enactment.resource_version}"
                    )
                stored = enactment.model_copy(
                    update={"resource_version": current.resource_version + 1}
                )
                pipe.multi()
                pipe.set(key, stored.model_dump_json())
                await pipe.execute()
            except WatchError as e:
                raise ConflictError(
                    f"enactment {enactment.node}.{enactment.policy} modified concurrently"
                ) from e
        return stored

    async def delete(self, node: str, policy: str) -> bool:
        deleted = await self.redis.delete(self._key(node, policy))
        return deleted > 0


async def update_with_retry(
    store: EnactmentStore,
    node: str,
    policy: str,
    mutate: Callable[[Enactment], None],
    max_attempts: int = 5,
    backoff: float = 0.01,
) -> Enactment:
    """Read-modify-write an enactment, retrying on conflicts only.

    The record is created on first use. Any error other than a conflict
    propagates immediately.

    Raises:
        ConflictError: still conflicting after ``max_attempts`` attempts
    """
    for attempt in range(1, max_attempts + 1):
        enactment = await store.get(node, policy)
        try:
            if enactment is None:
                enactment = Enactment(node=node, policy=policy)
                mutate(enactment)
                return await store.create(enactment)
            mutate(enactment)
            return await store.update(enactment)
        except (ConflictError, EnactmentNotFound) as e:
            logger.debug(
                f"Conflict updating enactment {node}.{policy} "
                f"(attempt {attempt}/{max_attempts}): {e}"
            )
            if attempt < max_attempts:
                await asyncio.sleep(backoff)

    raise ConflictError(
        f"enactment {node}.{policy} still conflicting after {max_attempts} attempts"
    )
