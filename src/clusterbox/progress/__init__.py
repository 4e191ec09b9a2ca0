"""Progress reporting contract: groups, tasks, event log and sync barrier."""

from clusterbox.progress.events import Event, EventType, TaskStatus, decode_event
from clusterbox.progress.ui import Group, ProgressMode, ProgressUI, Task

__all__ = [
	"Event",
	"EventType",
	"Group",
	"ProgressMode",
	"ProgressUI",
	"Task",
	"TaskStatus",
	"decode_event",
]
