"""nmstate agent - per-node network configuration agent.

This agent runs on each node and handles:
- Applying desired network state as a verified nmstatectl transaction
- Reporting the outcome as enactment conditions
- Publishing the node's observed network state periodically
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial

from fastapi import FastAPI, HTTPException

from nmstate_agent.config import get_settings
from nmstate_agent.enactment import (
    EnactmentStatusReporter,
    EnactmentStore,
    MemoryEnactmentStore,
    RedisEnactmentStore,
    create_redis_client,
)
from nmstate_agent.errors import NetworkTransactionError, RollbackFailure
from nmstate_agent.logging_config import (
    generate_transaction_id,
    set_transaction_id,
    setup_agent_logging,
)
from nmstate_agent.node_state import (
    MemoryNodeNetworkStateStore,
    NodeNetworkStateReporter,
    NodeNetworkStateStore,
    RedisNodeNetworkStateStore,
)
from nmstate_agent.schemas import (
    AgentInfo,
    ApplyRequest,
    ApplyResponse,
    EnactmentResponse,
    NodeNetworkStateResponse,
)
from nmstate_agent.state import NetworkState
from nmstate_agent.transaction import StateTransactionEngine
from nmstate_agent.version import __version__

AGENT_STARTED_AT = datetime.now(timezone.utc)

# Configure structured logging
setup_agent_logging(get_settings())
logger = logging.getLogger(__name__)

# Lazily initialized collaborators
_redis = None
_enactment_store: EnactmentStore | None = None
_node_state_store: NodeNetworkStateStore | None = None
_engine: StateTransactionEngine | None = None
_refresh_task: asyncio.Task | None = None

# nmstatectl supports one outstanding checkpoint, so one apply at a time
_apply_lock = asyncio.Lock()
# Strong references to in-flight apply tasks
_apply_tasks: set[asyncio.Task] = set()


def get_redis():
    """Lazy-initialize the shared Redis client."""
    global _redis
    if _redis is None:
        _redis = create_redis_client(get_settings().redis_url)
    return _redis


def get_enactment_store() -> EnactmentStore:
    """Lazy-initialize the enactment store for the configured backend."""
    global _enactment_store
    if _enactment_store is None:
        if get_settings().status_backend == "memory":
            _enactment_store = MemoryEnactmentStore()
        else:
            _enactment_store = RedisEnactmentStore(get_redis())
    return _enactment_store


def get_node_state_store() -> NodeNetworkStateStore:
    """Lazy-initialize the node network state store."""
    global _node_state_store
    if _node_state_store is None:
        if get_settings().status_backend == "memory":
            _node_state_store = MemoryNodeNetworkStateStore()
        else:
            _node_state_store = RedisNodeNetworkStateStore(get_redis())
    return _node_state_store


def get_engine() -> StateTransactionEngine:
    """Lazy-initialize the transaction engine."""
    global _engine
    if _engine is None:
        _engine = StateTransactionEngine(get_settings())
    return _engine


def get_reporter(policy: str) -> EnactmentStatusReporter:
    """Build the enactment reporter for ``policy`` on this node."""
    settings = get_settings()
    return EnactmentStatusReporter(
        get_enactment_store(),
        node=settings.node_name,
        policy=policy,
        max_attempts=settings.status_update_max_attempts,
        backoff=settings.status_update_backoff,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - start state refresh, cleanup on shutdown."""
    global _refresh_task, _redis

    settings = get_settings()
    logger.info(f"Agent for node {settings.node_name} starting...")
    logger.info(f"Status backend: {settings.status_backend}")

    refresher = NodeNetworkStateReporter(get_node_state_store(), get_settings)
    _refresh_task = asyncio.create_task(refresher.run_refresh_loop())

    yield

    if _apply_tasks:
        logger.info(f"Waiting for {len(_apply_tasks)} in-flight transaction(s)")
        await asyncio.gather(*_apply_tasks, return_exceptions=True)

    if _refresh_task:
        _refresh_task.cancel()
        try:
            await _refresh_task
        except asyncio.CancelledError:
            pass

    if _redis is not None:
        await _redis.aclose()
        _redis = None

    logger.info(f"Agent for node {settings.node_name} shutting down")


# Create FastAPI app
app = FastAPI(
    title="nmstate agent",
    version=__version__,
    lifespan=lifespan,
)


# --- Health Endpoints ---

@app.get("/health")
def health():
    """Basic liveness check."""
    return {
        "status": "ok",
        "node": get_settings().node_name,
        "transaction_in_progress": _apply_lock.locked(),
    }


@app.get("/info")
def info() -> AgentInfo:
    settings = get_settings()
    return AgentInfo(
        node=settings.node_name,
        version=__version__,
        started_at=AGENT_STARTED_AT,
        status_backend=settings.status_backend,
    )


# --- Observed State ---

@app.get("/state")
async def current_state() -> NodeNetworkStateResponse:
    """Return the last published, filtered network state of this node."""
    node = get_settings().node_name
    state = await get_node_state_store().get(node)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No network state reported for node {node} yet")
    return NodeNetworkStateResponse(**state.model_dump())


# --- Policy Enactment ---

@app.post("/policies/{policy}/apply")
async def apply_policy(policy: str, request: ApplyRequest) -> ApplyResponse:
    """Apply a policy's desired state to this node.

    The enactment goes to Progressing before the transaction starts and to
    Available or Failing once it ends. Only one transaction runs at a time;
    a request arriving while one is in flight gets 409.
    """
    node = get_settings().node_name

    if _apply_lock.locked():
        raise HTTPException(
            status_code=409,
            detail=f"A network transaction is already in progress on node {node}, try again later",
        )

    # The transaction and its status report outlive a cancelled request;
    # the lock is released only once both are done.
    lock = _apply_lock
    await lock.acquire()
    task = asyncio.ensure_future(_run_apply(policy, node, request.desired_state))
    _apply_tasks.add(task)
    task.add_done_callback(partial(_finish_apply, lock))
    return await asyncio.shield(task)


async def _run_apply(policy: str, node: str, desired_state: str) -> ApplyResponse:
    """Apply one policy and report the outcome as an enactment condition."""
    set_transaction_id(generate_transaction_id())
    try:
        logger.info(f"Apply request: policy={policy}, node={node}")
        reporter = get_reporter(policy)
        await reporter.notify_progressing()

        try:
            output = await get_engine().apply(NetworkState.from_text(desired_state))
        except NetworkTransactionError as e:
            logger.error(f"Apply failed: policy={policy}: {e}")
            await reporter.notify_failed_to_configure(e)
            return ApplyResponse(
                policy=policy,
                node=node,
                success=False,
                output=e.output,
                error=str(e),
                rolled_back=isinstance(e, RollbackFailure) and e.rolled_back,
            )
        except Exception as e:
            logger.exception(f"Apply failed unexpectedly: policy={policy}")
            await reporter.notify_failed_to_configure(e)
            return ApplyResponse(policy=policy, node=node, success=False, error=str(e))

        logger.info(f"Apply finished: policy={policy}")
        await reporter.notify_success()
        return ApplyResponse(policy=policy, node=node, success=True, output=output)
    finally:
        set_transaction_id(None)


def _finish_apply(lock: asyncio.Lock, task: asyncio.Task) -> None:
    _apply_tasks.discard(task)
    lock.release()
    if task.cancelled():
        logger.error("Apply task was cancelled")
    elif task.exception() is not None:
        logger.error(f"Apply task failed: {task.exception()}")


@app.get("/policies/{policy}/enactment")
async def get_enactment(policy: str) -> EnactmentResponse:
    node = get_settings().node_name
    enactment = await get_enactment_store().get(node, policy)
    if enactment is None:
        raise HTTPException(status_code=404, detail=f"No enactment for policy {policy} on node {node}")
    return EnactmentResponse(enactment=enactment)


@app.delete("/policies/{policy}/enactment")
async def delete_enactment(policy: str) -> dict:
    """Forget a policy that no longer applies to this node."""
    removed = await get_reporter(policy).remove()
    return {"policy": policy, "removed": removed}


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "nmstate_agent.main:app",
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,
        timeout_keep_alive=300,  # Keep connections alive for long transactions
    )
