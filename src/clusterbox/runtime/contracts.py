from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CommandType(str, Enum):
    """Command kinds accepted by POST /command."""

    DISPLAY = "display"
    STOP = "stop"
    SCALE_IN = "scale-in"
    SCALE_OUT = "scale-out"


class Command(BaseModel):
    """Wire request body. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    type: str
    service: Optional[str] = None
    count: Optional[int] = Field(default=None, ge=1)
    version: Optional[str] = None
    name: Optional[str] = None
    pid: Optional[int] = Field(default=None, gt=0)


class CommandReply(BaseModel):
    """Wire reply body."""

    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None

    def to_json(self) -> bytes:
        return (self.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


class DisplayItem(BaseModel):
    """One supervised service process as reported by the display command."""

    name: str
    service: str
    pid: int = 0
    status: str
    version: str = ""


class ControllerState(str, Enum):
    """Lifecycle states of an instance controller."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ControllerTransition(str, Enum):
    """Events that drive controller state transitions."""

    WORKERS_READY = "workers_ready"
    STOP = "stop"
    DRAINED = "drained"


def transition_controller_state(current: ControllerState, event: ControllerTransition) -> ControllerState:
    """Compute the next controller state for a given event.

    Stopping is allowed from any live state and repeated stops are no-ops.
    Invalid transitions raise ValueError.
    """

    if event == ControllerTransition.STOP:
        if current == ControllerState.STOPPED:
            return ControllerState.STOPPED
        return ControllerState.STOPPING

    if event == ControllerTransition.DRAINED:
        return ControllerState.STOPPED

    if current == ControllerState.STARTING:
        if event == ControllerTransition.WORKERS_READY:
            return ControllerState.RUNNING
        raise ValueError(f"Invalid controller transition: {current} -> {event}")

    raise ValueError(f"Invalid controller transition: {current} -> {event}")
