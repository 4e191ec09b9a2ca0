from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Stable discriminator of a progress event."""

    PRINT_LINES = "print_lines"
    # Internal barrier emitted by ProgressUI.sync(); never rendered or logged.
    SYNC = "sync"
    GROUP_ADD = "group_add"
    GROUP_CLOSE = "group_close"
    TASK_ADD = "task_add"
    TASK_UPDATE = "task_update"
    TASK_STATE = "task_state"


class TaskStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    CANCELED = "canceled"


class Event(BaseModel):
    """One append-only input to the progress engine, JSON-lines friendly."""

    model_config = ConfigDict(extra="ignore")

    type: EventType
    at: Optional[datetime] = None
    gid: int = 0
    tid: int = 0
    lines: List[str] = Field(default_factory=list)
    sync_id: int = 0
    title: Optional[str] = None
    meta: Optional[str] = None
    message: Optional[str] = None
    status: Optional[TaskStatus] = None

    def to_json_line(self) -> str:
        return self.model_dump_json(exclude_defaults=True) + "\n"


def decode_event(line: str | bytes) -> Event:
    """Decode a single JSON event line."""
    return Event.model_validate_json(line)
