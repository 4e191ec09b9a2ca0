from __future__ import annotations

import os
import signal
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from clusterbox.utils.errors import ProcessGroupClosedError

Worker = Callable[[threading.Event], None]


def kill_process_or_group(pid: int, sig: int = signal.SIGTERM) -> None:
    """Signal a spawned process and, when it leads its own group, its descendants.

    Services are started in a new session, so pgid == pid and signalling the
    group also reaches children forked by shell wrappers. For any other
    process only the pid itself is signalled. On platforms without
    os.killpg this is a no-op.
    """
    if pid <= 0 or sig == 0:
        return
    if not hasattr(os, "killpg"):
        return

    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return

    if pgid == pid:
        os.killpg(pid, sig)
    else:
        os.kill(pid, sig)


@dataclass
class _Member:
    label: str
    thread: threading.Thread
    error: Optional[BaseException] = None


class ProcessGroup:
    """Supervises named workers as one unit with coordinated shutdown.

    Each worker runs on its own thread and receives the group's stop event;
    it must return promptly once the event is set.
    """

    def __init__(self) -> None:
        self.stop_event = threading.Event()
        self._members: Dict[str, _Member] = {}
        self._order: List[str] = []
        self._lock = threading.Lock()
        self._first_error: Optional[BaseException] = None

    @property
    def closing(self) -> bool:
        return self.stop_event.is_set()

    def labels(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def add(self, label: str, worker: Worker) -> None:
        """Start a worker. Raises ProcessGroupClosedError once the group is closing."""
        with self._lock:
            if self.closing:
                raise ProcessGroupClosedError(f"process group is closing, cannot add {label!r}")
            if label in self._members:
                raise ValueError(f"duplicate process group member {label!r}")

            thread = threading.Thread(target=self._run, args=(label, worker), name=label, daemon=True)
            self._members[label] = _Member(label=label, thread=thread)
            self._order.append(label)
            thread.start()

    def _run(self, label: str, worker: Worker) -> None:
        try:
            worker(self.stop_event)
        except BaseException as exc:  # surfaced through wait()
            with self._lock:
                self._members[label].error = exc
                if self._first_error is None:
                    self._first_error = exc

    def close(self) -> None:
        """Signal every worker to stop and wait for all of them. Idempotent."""
        self.stop_event.set()
        self._join_all()

    def wait(self) -> Optional[BaseException]:
        """Block until every worker has exited; return the first worker error, if any."""
        self._join_all()
        return self._first_error

    def _join_all(self) -> None:
        joined: set[str] = set()
        current = threading.current_thread()
        while True:
            with self._lock:
                pending = [self._members[label] for label in self._order if label not in joined]
            if not pending:
                return
            for member in pending:
                if member.thread is not current:
                    member.thread.join()
                joined.add(member.label)
