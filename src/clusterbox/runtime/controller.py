from __future__ import annotations

import json
import queue
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from clusterbox.config.models import SERVICE_START_ORDER, ServiceKind, TopologySpec
from clusterbox.progress import Group, ProgressUI
from clusterbox.runtime.contracts import (
    Command,
    CommandReply,
    CommandType,
    ControllerState,
    ControllerTransition,
    DisplayItem,
    transition_controller_state,
)
from clusterbox.runtime.services import ServiceLauncher, ServiceProcess
from clusterbox.utils.errors import ClusterboxError

STOPPING_ERROR = "instance is stopping"
ALREADY_STOPPING_MESSAGE = "instance is already stopping\n"
INBOX_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class CommandRequest:
    """A command awaiting a reply from the controller thread."""

    command: Command
    reply: "Future[CommandReply]" = field(default_factory=Future)


@dataclass(frozen=True)
class StopRequested:
    """Internal lifecycle event: begin an orderly shutdown."""

    reason: str = ""


@dataclass(frozen=True)
class ServiceExited:
    """Internal lifecycle event: a supervised process has exited."""

    name: str
    returncode: Optional[int]


ControllerMessage = Union[CommandRequest, StopRequested, ServiceExited]


@dataclass
class _ServiceEntry:
    process: ServiceProcess
    status: str = "running"
    scaling_in: bool = False


class Controller:
    """Single owner of all mutable instance state.

    Commands and lifecycle events arrive through one FIFO inbox and are
    handled on the controller thread only. Other threads talk to it through
    ``submit`` and ``post`` and observe it through the ``ready``,
    ``stopping`` and ``done`` signals.
    """

    def __init__(
        self,
        version: str = "",
        topology: Optional[TopologySpec] = None,
        launcher: Optional[ServiceLauncher] = None,
        progress: Optional[ProgressUI] = None,
    ) -> None:
        self.version = version
        self.topology = topology
        self.launcher = launcher
        self.progress = progress or ProgressUI.disabled()

        self.ready = threading.Event()
        self.stopping = threading.Event()
        self.done = threading.Event()

        self._inbox: "queue.Queue[ControllerMessage]" = queue.Queue()
        # Touched only on the controller thread.
        self._state = ControllerState.STARTING
        self._services: Dict[str, _ServiceEntry] = {}
        self._next_index: Dict[ServiceKind, int] = {}
        self.boot_error: Optional[ClusterboxError] = None

    @property
    def state(self) -> ControllerState:
        """Last known state, for diagnostics only."""
        return self._state

    def post(self, message: ControllerMessage) -> None:
        """Enqueue an internal lifecycle event."""
        self._inbox.put(message)

    def request_stop(self, reason: str = "") -> None:
        self.post(StopRequested(reason=reason))

    def submit(self, command: Command, timeout: Optional[float] = None) -> CommandReply:
        """Send a command to the controller thread and wait for its reply."""
        if self.done.is_set():
            return _stopping_reply(command)

        request = CommandRequest(command=command)
        self._inbox.put(request)

        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            try:
                return request.reply.result(timeout=INBOX_POLL_SECONDS)
            except FutureTimeoutError:
                pass
            if self.done.is_set() and not request.reply.done():
                return _stopping_reply(command)
            if deadline is not None and time.monotonic() >= deadline:
                return CommandReply(ok=False, error=f"command {command.type!r} timed out")

    def run(self, cancel: threading.Event) -> None:
        """Controller loop; runs as a process group worker until cancelled."""
        try:
            if not cancel.is_set():
                self._boot()
            self.ready.set()

            while not cancel.is_set():
                try:
                    message = self._inbox.get(timeout=INBOX_POLL_SECONDS)
                except queue.Empty:
                    continue
                self._handle(message)

            # Anything enqueued before cancellation was observed is still handled once.
            self._begin_stop("")
            while True:
                try:
                    message = self._inbox.get_nowait()
                except queue.Empty:
                    break
                self._handle(message)
        finally:
            self._transition(ControllerTransition.STOP)
            self._transition(ControllerTransition.DRAINED)
            self.ready.set()
            self.stopping.set()
            self.done.set()

    def _transition(self, event: ControllerTransition) -> None:
        self._state = transition_controller_state(self._state, event)

    def _boot(self) -> None:
        if self.topology is None or self.launcher is None:
            self._transition(ControllerTransition.WORKERS_READY)
            return

        group = self.progress.group("Start instances")
        try:
            for spec in self.topology.ordered():
                for _ in range(spec.count):
                    self._launch(spec.kind, self.version, group)
        except ClusterboxError as exc:
            self.boot_error = exc
            self.progress.print_lines([f"Failed to start instance: {exc}"])
            self._begin_stop(f"startup failed: {exc}")
            return
        finally:
            group.close()

        self._transition(ControllerTransition.WORKERS_READY)
        self.progress.print_lines(
            [f"Instance started with {len(self._services)} service process(es)."]
        )

    def _launch(self, kind: ServiceKind, version: str, group: Group) -> ServiceProcess:
        if self.launcher is None:
            raise ClusterboxError("this instance cannot launch services")
        index = self._next_index.get(kind, 0)
        self._next_index[kind] = index + 1
        process = self.launcher.launch(kind, version, index, group, on_exit=self._on_service_exit)
        self._services[process.name] = _ServiceEntry(process=process)
        return process

    def _on_service_exit(self, name: str, returncode: Optional[int]) -> None:
        self.post(ServiceExited(name=name, returncode=returncode))

    def _begin_stop(self, reason: str) -> None:
        if self._state in {ControllerState.STOPPING, ControllerState.STOPPED}:
            return
        self._transition(ControllerTransition.STOP)
        if reason:
            self.progress.print_lines([f"Stopping instance: {reason}"])
        self.stopping.set()

    def _handle(self, message: ControllerMessage) -> None:
        if isinstance(message, StopRequested):
            self._begin_stop(message.reason)
        elif isinstance(message, ServiceExited):
            self._handle_service_exit(message)
        elif isinstance(message, CommandRequest):
            if message.reply.set_running_or_notify_cancel():
                try:
                    reply = self._handle_command(message.command)
                except ClusterboxError as exc:
                    reply = CommandReply(ok=False, error=str(exc))
                message.reply.set_result(reply)

    def _handle_service_exit(self, event: ServiceExited) -> None:
        entry = self._services.get(event.name)
        if entry is None:
            return
        if entry.scaling_in:
            del self._services[event.name]
            return
        entry.status = f"exited ({event.returncode})" if event.returncode is not None else "exited"
        if self._state == ControllerState.RUNNING:
            self.progress.print_lines([f"{event.name} exited unexpectedly (code {event.returncode})."])

    def _handle_command(self, command: Command) -> CommandReply:
        if command.type == CommandType.DISPLAY.value:
            return CommandReply(ok=True, message=json.dumps([item.model_dump() for item in self._display_items()]))

        if command.type == CommandType.STOP.value and self.stopping.is_set():
            return _stopping_reply(command)

        if self._state != ControllerState.RUNNING:
            return CommandReply(ok=False, error=STOPPING_ERROR if self.stopping.is_set() else "instance is starting")

        if command.type == CommandType.STOP.value:
            self.post(StopRequested(reason="stop command received"))
            return CommandReply(ok=True, message="Stopping clusterbox instance...\n")

        if command.type == CommandType.SCALE_OUT.value:
            return self._scale_out(command)

        if command.type == CommandType.SCALE_IN.value:
            return self._scale_in(command)

        return CommandReply(ok=False, error=f"unknown command type {command.type!r}")

    def _display_items(self) -> List[DisplayItem]:
        order = {kind.value: position for position, kind in enumerate(SERVICE_START_ORDER)}
        entries = sorted(
            self._services.values(),
            key=lambda entry: (order.get(entry.process.kind.value, len(order)), entry.process.name),
        )
        return [
            DisplayItem(
                name=entry.process.name,
                service=entry.process.kind.value,
                pid=entry.process.pid or 0,
                status="stopping" if entry.scaling_in else entry.status,
                version=entry.process.version,
            )
            for entry in entries
        ]

    def _scale_out(self, command: Command) -> CommandReply:
        if not command.service:
            return CommandReply(ok=False, error="scale-out requires a service")
        try:
            kind = ServiceKind(command.service)
        except ValueError:
            return CommandReply(ok=False, error=f"unknown service {command.service!r}")
        if self.launcher is None:
            return CommandReply(ok=False, error="this instance cannot launch services")

        group = self.progress.group(f"Scale out {kind.value}")
        started: List[str] = []
        try:
            for _ in range(command.count or 1):
                started.append(self._launch(kind, command.version or self.version, group).name)
        finally:
            group.close()
        return CommandReply(ok=True, message=f"Scaled out: {', '.join(started)}\n")

    def _scale_in(self, command: Command) -> CommandReply:
        if not command.name and not command.pid:
            return CommandReply(ok=False, error="scale-in requires a name or a pid")

        for name, entry in self._services.items():
            if entry.scaling_in:
                continue
            if (command.name and name == command.name) or (command.pid and entry.process.pid == command.pid):
                entry.scaling_in = True
                entry.process.request_stop()
                return CommandReply(ok=True, message=f"Scaling in {name} (pid={entry.process.pid})\n")

        target = command.name or f"pid {command.pid}"
        return CommandReply(ok=False, error=f"no running service matches {target}")


def _stopping_reply(command: Command) -> CommandReply:
    # A repeated stop succeeds so callers can go on to wait for the exit.
    if command.type == CommandType.STOP.value:
        return CommandReply(ok=True, message=ALREADY_STOPPING_MESSAGE)
    return CommandReply(ok=False, error=STOPPING_ERROR)
