"""Agent HTTP API schemas.

These Pydantic models define the data exchanged between the agent and
whoever drives it (the reconciler or an operator).
"""

from datetime import datetime

from pydantic import BaseModel

from nmstate_agent.enactment.models import Enactment


class AgentInfo(BaseModel):
    """Identity of this agent."""
    node: str
    version: str
    started_at: datetime
    status_backend: str


class ApplyRequest(BaseModel):
    """Desired network state for one policy, as an nmstate YAML/JSON document."""
    desired_state: str = ""


class ApplyResponse(BaseModel):
    """Outcome of one apply transaction."""
    policy: str
    node: str
    success: bool
    output: str = ""
    error: str | None = None
    rolled_back: bool = False


class EnactmentResponse(BaseModel):
    """Current enactment of a policy on this node."""
    enactment: Enactment


class NodeNetworkStateResponse(BaseModel):
    """Last published observed state of this node."""
    node: str
    current_state: str
    last_successful_update_time: datetime | None = None
