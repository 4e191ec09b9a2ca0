from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, TextIO

from rich.console import Console
from rich.text import Text

from clusterbox.progress.events import Event, EventType, TaskStatus


@dataclass
class _GroupState:
    title: str
    closed: bool = False


@dataclass
class _TaskState:
    group: Optional[_GroupState]
    title: str
    status: TaskStatus = TaskStatus.RUNNING
    meta: Optional[str] = None
    message: Optional[str] = None


@dataclass
class EngineState:
    """Group/task state rebuilt from the event stream."""

    groups: Dict[int, _GroupState] = field(default_factory=dict)
    tasks: Dict[int, _TaskState] = field(default_factory=dict)

    def apply(self, event: Event) -> None:
        if event.type == EventType.GROUP_ADD:
            self.groups[event.gid] = _GroupState(title=event.title or "")
        elif event.type == EventType.GROUP_CLOSE:
            group = self.groups.get(event.gid)
            if group is not None:
                group.closed = True
        elif event.type == EventType.TASK_ADD:
            self.tasks[event.tid] = _TaskState(group=self.groups.get(event.gid), title=event.title or "")
        elif event.type == EventType.TASK_UPDATE:
            task = self.tasks.get(event.tid)
            if task is None:
                return
            if event.meta is not None:
                task.meta = event.meta
        elif event.type == EventType.TASK_STATE:
            task = self.tasks.get(event.tid)
            if task is None or event.status is None:
                return
            task.status = event.status
            if event.message is not None:
                task.message = event.message


class PlainRenderer:
    """Line-oriented renderer for logs, CI and daemon output files."""

    def __init__(self, out: TextIO) -> None:
        self.console = Console(file=out, highlight=False, soft_wrap=True, emoji=False)

    def _line(self, task: _TaskState, details: str) -> Text:
        title = task.title
        if task.meta:
            title = f"{title} {task.meta}"
        group_title = task.group.title if task.group is not None else ""
        if not group_title:
            return Text(f"{title}{details}")
        return Text.assemble((group_title, "bold magenta"), " | ", f"{title}{details}")

    def render(self, event: Event, state: EngineState) -> None:
        if event.type == EventType.PRINT_LINES:
            for line in event.lines:
                self.console.print(Text(line))
            return

        task = state.tasks.get(event.tid)
        if task is None:
            return

        if event.type == EventType.TASK_STATE:
            if event.status == TaskStatus.RUNNING:
                self.console.print(self._line(task, ""))
            elif event.status == TaskStatus.DONE:
                self.console.print(self._line(task, " ... done"))
            elif event.status == TaskStatus.ERROR:
                self.console.print(
                    Text.assemble(self._line(task, " ... "), ("ERR", "bold red"), f": {task.message or ''}")
                )
            elif event.status == TaskStatus.CANCELED:
                reason = f": {task.message}" if task.message else ""
                self.console.print(self._line(task, f" ... canceled{reason}"))
