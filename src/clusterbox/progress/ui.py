from __future__ import annotations

import io
import itertools
import queue
import sys
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, TextIO

from clusterbox.progress.events import Event, EventType, TaskStatus
from clusterbox.progress.plain import EngineState, PlainRenderer


class ProgressMode(str, Enum):
    PLAIN = "plain"
    OFF = "off"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Task:
    """One line item in a group. Safe to use from any thread."""

    def __init__(self, ui: Optional["ProgressUI"], task_id: int, group_id: int, title: str) -> None:
        self._ui = ui
        self.id = task_id
        self.group_id = group_id
        self.title = title

    def _emit(self, **fields) -> None:
        if self._ui is not None:
            self._ui.emit(Event(tid=self.id, **fields))

    def start(self) -> None:
        self._emit(type=EventType.TASK_STATE, status=TaskStatus.RUNNING)

    def set_meta(self, meta: str) -> None:
        self._emit(type=EventType.TASK_UPDATE, meta=meta)

    def done(self) -> None:
        self._emit(type=EventType.TASK_STATE, status=TaskStatus.DONE)

    def error(self, message: str) -> None:
        self._emit(type=EventType.TASK_STATE, status=TaskStatus.ERROR, message=message)

    def cancel(self, reason: str = "") -> None:
        self._emit(type=EventType.TASK_STATE, status=TaskStatus.CANCELED, message=reason)


class Group:
    """A set of related tasks, usually one stage."""

    def __init__(self, ui: Optional["ProgressUI"], group_id: int, title: str) -> None:
        self._ui = ui
        self.id = group_id
        self.title = title

    def task(self, title: str) -> Task:
        if self._ui is None or self._ui.closed:
            return Task(None, 0, self.id, title)
        task_id = self._ui.next_id()
        self._ui.emit(Event(type=EventType.TASK_ADD, gid=self.id, tid=task_id, title=title))
        return Task(self._ui, task_id, self.id, title)

    def close(self) -> None:
        """Mark the group finished. Safe to call more than once."""
        if self._ui is not None:
            self._ui.emit(Event(type=EventType.GROUP_CLOSE, gid=self.id))


class _LineWriter(io.TextIOBase):
    """Text stream that turns complete lines into print_lines events."""

    def __init__(self, ui: "ProgressUI") -> None:
        self._ui = ui
        self._lock = threading.Lock()
        self._buffer = ""

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if self._ui.closed or self._ui.mode == ProgressMode.OFF:
            return len(text)
        with self._lock:
            self._buffer += text
            *lines, self._buffer = self._buffer.split("\n")
        lines = [line.rstrip("\r") for line in lines]
        if lines:
            self._ui.emit(Event(type=EventType.PRINT_LINES, lines=lines))
        return len(text)

    def drain(self) -> str:
        with self._lock:
            line, self._buffer = self._buffer, ""
        return line.rstrip("\r")


_CLOSE = object()


class ProgressUI:
    """
    Progress display for logs, CI and daemon mode.

    Events are rendered on one engine thread in emission order. When an event
    log is attached every event except sync barriers is appended to it as a
    JSON line before it is rendered.
    """

    def __init__(
        self,
        mode: ProgressMode = ProgressMode.PLAIN,
        out: Optional[TextIO] = None,
        event_log: Optional[TextIO] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.mode = mode
        self.out = out if out is not None else sys.stderr
        self.event_log = event_log
        self.now = now or _utc_now

        self._ids = itertools.count(1)
        self._closed = threading.Event()
        self._done = threading.Event()
        self._events: "queue.Queue[object]" = queue.Queue()
        self._sync_lock = threading.Lock()
        self._sync_waiters: Dict[int, threading.Event] = {}
        self._writer = _LineWriter(self)
        self._thread: Optional[threading.Thread] = None

        if mode == ProgressMode.OFF:
            self._done.set()
        else:
            self._thread = threading.Thread(target=self._run, name="progress-ui", daemon=True)
            self._thread.start()

    @classmethod
    def disabled(cls) -> "ProgressUI":
        return cls(mode=ProgressMode.OFF)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def next_id(self) -> int:
        return next(self._ids)

    def writer(self) -> TextIO:
        """Text stream whose complete lines are printed through the UI."""
        return self._writer  # type: ignore[return-value]

    def group(self, title: str) -> Group:
        if self.closed:
            return Group(None, 0, title)
        group_id = self.next_id()
        self.emit(Event(type=EventType.GROUP_ADD, gid=group_id, title=title))
        return Group(self, group_id, title)

    def print_lines(self, lines: List[str]) -> None:
        pending = self._writer.drain()
        out_lines = ([pending] if pending else []) + list(lines)
        if out_lines:
            self.emit(Event(type=EventType.PRINT_LINES, lines=out_lines))

    def emit(self, event: Event) -> None:
        if self.closed or self.mode == ProgressMode.OFF:
            return
        self._put(event)

    def _put(self, event: Event) -> None:
        if event.at is None:
            event.at = self.now()
        self._events.put(event)

    def sync(self) -> None:
        """
        Block until every previously emitted event has been rendered and
        written to the event log.
        """
        if self.closed or self.mode == ProgressMode.OFF:
            return

        pending = self._writer.drain()
        if pending:
            self.emit(Event(type=EventType.PRINT_LINES, lines=[pending]))

        sync_id = self.next_id()
        waiter = threading.Event()
        with self._sync_lock:
            self._sync_waiters[sync_id] = waiter
        try:
            self._put(Event(type=EventType.SYNC, sync_id=sync_id))
            while not waiter.wait(0.05):
                if self._done.is_set():
                    return
        finally:
            with self._sync_lock:
                self._sync_waiters.pop(sync_id, None)

    def close(self) -> None:
        """Flush pending output and stop the engine thread. Idempotent."""
        if self.closed:
            return
        pending = self._writer.drain()
        if pending and self.mode != ProgressMode.OFF:
            self._put(Event(type=EventType.PRINT_LINES, lines=[pending]))
        self._closed.set()
        if self._thread is not None:
            self._events.put(_CLOSE)
            self._thread.join()

    def __enter__(self) -> "ProgressUI":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _fulfill_sync(self, sync_id: int) -> None:
        with self._sync_lock:
            waiter = self._sync_waiters.pop(sync_id, None)
        if waiter is not None:
            waiter.set()

    def _run(self) -> None:
        state = EngineState()
        renderer = PlainRenderer(self.out)
        try:
            while True:
                item = self._events.get()
                if item is _CLOSE:
                    return
                event: Event = item  # type: ignore[assignment]
                if event.type == EventType.SYNC:
                    self._fulfill_sync(event.sync_id)
                    continue
                if self.event_log is not None:
                    self.event_log.write(event.to_json_line())
                    self.event_log.flush()
                state.apply(event)
                renderer.render(event, state)
        finally:
            self._done.set()
